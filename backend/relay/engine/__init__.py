"""미디어 엔진 바인딩 모듈.

Worker / Router / WebRtcTransport / Producer / Consumer 계약과
aiortc 기반 구현, RTP capability 협상 유틸리티를 제공합니다.

Classes:
    Worker, Router, WebRtcTransport, Producer, Consumer: 엔진 계약 (추상 클래스)
    AiortcWorker: aiortc 기반 워커 구현
    MediaEngineError: 엔진 호출 실패

Functions:
    create_worker: aiortc 워커 생성
"""

from .base import (
    Consumer,
    MediaEngineError,
    Producer,
    Router,
    WebRtcTransport,
    Worker,
)
from .aiortc_engine import AiortcWorker, create_worker

__all__ = [
    # Contract
    "Worker",
    "Router",
    "WebRtcTransport",
    "Producer",
    "Consumer",
    "MediaEngineError",
    # aiortc binding
    "AiortcWorker",
    "create_worker",
]
