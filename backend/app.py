"""FastAPI WebRTC Media Relay Signaling Server.

이 모듈은 단일 룸 WebRTC 미디어 릴레이를 위한 시그널링 서버를 제공합니다.
브라우저 클라이언트는 WebSocket(/server)으로 transport 생성/연결,
produce/consume/resume 요청을 보내고, 서버는 미디어 엔진(aiortc)을 통해
한 클라이언트의 미디어를 다른 클라이언트에게 전달합니다.

주요 기능:
    - 미디어 워커/라우터 생성 및 수명주기 관리 (lifespan)
    - WebSocket 시그널링 (newProducer / producerClosed 알림 포함)
    - 정적 파일 서빙 (프로세스 작업 디렉토리)
    - 세션 상태 / 헬스 체크 API

Architecture:
    - Worker → Router: 프로세스당 하나, 시작 시 생성
    - SignalingCoordinator: 세션 상태와 엔진 호출 순서를 관리
    - SignalingChannel: 클라이언트 WebSocket 하나당 하나
"""
import logging
import asyncio
from contextlib import asynccontextmanager
import os
from datetime import datetime, timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from relay.config import server_config, worker_config, router_config, transport_config
from relay.engine import Worker, create_worker
from relay.session import SignalingCoordinator
from routes import health_router, signaling_router, init_coordinator, register_error_handlers


# 로그 설정
os.makedirs(server_config.LOG_DIR, exist_ok=True)
log_filename = server_config.LOG_DIR / f"server_{datetime.now().strftime('%Y%m%d')}.log"


def cleanup_old_logs(log_dir: str = str(server_config.LOG_DIR),
                     retention_days: int = server_config.LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")

            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, server_config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={server_config.LOG_LEVEL}")


def _exit_process() -> None:
    logging.shutdown()
    os._exit(1)


def watch_worker(worker: Worker, exit_delay: float = server_config.WORKER_DIED_EXIT_DELAY) -> None:
    """워커 died 이벤트에 프로세스 종료를 연결합니다.

    워커가 죽으면 복구하지 않고, 로그가 기록될 시간(exit_delay초)을 둔 뒤
    프로세스를 종료 코드 1로 끝냅니다.
    """
    loop = asyncio.get_running_loop()

    @worker.on("died")
    def on_worker_died(error):
        logger.error(
            f"[MediaEngine] 워커가 죽었습니다. {exit_delay}초 후 종료합니다 [pid:{worker.pid}]: {error!r}"
        )
        loop.call_later(exit_delay, _exit_process)


# 글로벌 엔진 참조 (lifespan에서 생성)
media_worker: Optional[Worker] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    서버 시작 시 미디어 워커와 라우터를 만들고 시그널링 코디네이터를 연결하며,
    종료 시 모든 채널과 엔진 리소스를 정리합니다.

    Args:
        app (FastAPI): FastAPI 애플리케이션 인스턴스

    Yields:
        None: 앱이 실행되는 동안 제어를 반환

    Note:
        - 시작: 오래된 로그 정리, 워커/라우터 생성, 코디네이터 초기화
        - 종료: 채널 정리, 워커 종료 (라우터/transport 연쇄 종료)
    """
    global media_worker

    logger.info("미디어 릴레이 시그널링 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({server_config.LOG_RETENTION_DAYS}일 이상)")

    media_worker = await create_worker(
        log_level=worker_config.LOG_LEVEL,
        log_tags=worker_config.LOG_TAGS,
        rtc_min_port=worker_config.RTC_MIN_PORT,
        rtc_max_port=worker_config.RTC_MAX_PORT,
    )
    watch_worker(media_worker)

    media_router = await media_worker.create_router(router_config.media_codecs)
    coordinator = SignalingCoordinator(media_router, transport_config=transport_config)
    init_coordinator(coordinator)
    logger.info("미디어 워커/라우터 준비 완료")

    yield

    logger.info("서버 종료 중...")
    init_coordinator(None)
    await coordinator.close()
    media_worker.close()
    logger.info("미디어 워커 종료됨")


app = FastAPI(title="WebRTC Media Relay Signaling Server", lifespan=lifespan)

# CORS - 개발 환경에서는 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# 정적 파일은 마지막에 마운트 (API / WebSocket 경로 우선)
app.mount("/", StaticFiles(directory=server_config.STATIC_DIR, html=True), name="static")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=server_config.LISTEN_IP, port=server_config.LISTEN_PORT, log_level="info")
