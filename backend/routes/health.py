"""Health Check / 세션 상태 API 라우터.

서비스 상태와 현재 시그널링 세션 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter

from .signaling import get_coordinator

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check():
    """미디어 워커/라우터 상태를 확인합니다.

    Returns:
        dict: 서비스 상태 정보
    """
    coordinator = get_coordinator()
    if coordinator is None:
        return {"status": "not_initialized", "services": {"worker": "not_initialized", "router": "not_initialized"}}

    media_router = coordinator.router
    worker = media_router.worker
    worker_status = "ok"
    if worker is None:
        worker_status = "not_initialized"
    elif worker.died:
        worker_status = "died"
    elif worker.closed:
        worker_status = "closed"
    router_status = "closed" if media_router.closed else "ok"

    overall = "ok" if worker_status == "ok" and router_status == "ok" else "degraded"
    return {
        "status": overall,
        "services": {
            "worker": worker_status,
            "router": router_status,
        },
    }


@router.get("/session")
async def session_status():
    """현재 세션 상태(producer/consumer/transport ID, 연결 수)를 조회합니다."""
    coordinator = get_coordinator()
    if coordinator is None:
        return {"status": "not_initialized"}
    return {"status": "ok", "session": coordinator.snapshot()}
