"""시그널링 서버 / 미디어 엔진 설정.

환경변수(config/.env) 기반 설정을 frozen dataclass로 제공합니다.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


DEFAULT_MEDIA_CODECS: Tuple[Dict[str, Any], ...] = (
    {
        "kind": "audio",
        "mimeType": "audio/opus",
        "clockRate": 48000,
        "channels": 2,
    },
    {
        "kind": "video",
        "mimeType": "video/VP8",
        "clockRate": 90000,
        "parameters": {"x-google-start-bitrate": 1000},
    },
    {
        "kind": "video",
        "mimeType": "video/H264",
        "clockRate": 90000,
        "parameters": {
            "packetization-mode": 1,
            "profile-level-id": "42e01f",
            "level-asymmetry-allowed": 1,
        },
    },
)


def _media_codecs_env() -> Tuple[Dict[str, Any], ...]:
    value = os.getenv("MEDIA_CODECS")
    if not value:
        return DEFAULT_MEDIA_CODECS
    try:
        codecs = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"MEDIA_CODECS is not valid JSON: {e}") from e
    if not isinstance(codecs, list):
        raise ValueError("MEDIA_CODECS must be a JSON list")
    return tuple(codecs)


# ============================================================
# HTTP / 시그널링 서버
# ============================================================

@dataclass(frozen=True)
class ServerConfig:
    """HTTP + 시그널링 리스너 설정."""

    LISTEN_IP: str = os.getenv("LISTEN_IP", "0.0.0.0")
    LISTEN_PORT: int = _int_env("LISTEN_PORT", 3000)

    # 정적 파일 루트 (기본: 프로세스 작업 디렉토리)
    STATIC_DIR: Path = Path(os.getenv("STATIC_DIR", "."))

    # 로그
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_DIR: Path = Path(os.getenv("LOG_DIR", "logs"))
    LOG_RETENTION_DAYS: int = _int_env("LOG_RETENTION_DAYS", 60)

    # 워커 died 후 프로세스 종료까지 대기 (초)
    WORKER_DIED_EXIT_DELAY: float = 2.0


# ============================================================
# 미디어 엔진
# ============================================================

@dataclass(frozen=True)
class WorkerConfig:
    """미디어 워커 설정."""

    LOG_LEVEL: str = os.getenv("MEDIA_LOG_LEVEL", "warn")
    LOG_TAGS: Tuple[str, ...] = _list_env("MEDIA_LOG_TAGS", ("info", "ice", "dtls", "rtp", "srtp", "rtcp"))
    RTC_MIN_PORT: int = _int_env("RTC_MIN_PORT", 10000)
    RTC_MAX_PORT: int = _int_env("RTC_MAX_PORT", 10100)


@dataclass(frozen=True)
class RouterConfig:
    """라우터 미디어 코덱 설정."""

    MEDIA_CODECS: Tuple[Dict[str, Any], ...] = _media_codecs_env()

    @property
    def media_codecs(self) -> List[Dict[str, Any]]:
        return json.loads(json.dumps(list(self.MEDIA_CODECS)))


@dataclass(frozen=True)
class WebRtcTransportConfig:
    """WebRTC transport 생성 설정."""

    LISTEN_IP: str = os.getenv("WEBRTC_LISTEN_IP", "127.0.0.1")
    ANNOUNCED_IP: Optional[str] = os.getenv("WEBRTC_ANNOUNCED_IP") or None

    ENABLE_UDP: bool = True
    ENABLE_TCP: bool = True
    PREFER_UDP: bool = True

    # 0이면 수신 비트레이트 상한을 설정하지 않음
    MAX_INCOMING_BITRATE: int = _int_env("WEBRTC_MAX_INCOMING_BITRATE", 1500000)
    INITIAL_AVAILABLE_OUTGOING_BITRATE: int = _int_env("WEBRTC_INITIAL_OUTGOING_BITRATE", 1000000)

    @property
    def listen_ips(self) -> List[Dict[str, Optional[str]]]:
        return [{"ip": self.LISTEN_IP, "announcedIp": self.ANNOUNCED_IP}]


# ============================================================
# 싱글톤 인스턴스
# ============================================================

server_config = ServerConfig()
worker_config = WorkerConfig()
router_config = RouterConfig()
transport_config = WebRtcTransportConfig()


logger.info(f"[Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[Config] 리슨 주소: {server_config.LISTEN_IP}:{server_config.LISTEN_PORT}")
logger.info(
    f"[Config] WebRTC listen IP: {transport_config.LISTEN_IP} "
    f"(announced: {transport_config.ANNOUNCED_IP or '없음'})"
)
