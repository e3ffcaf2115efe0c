"""시그널링 세션 모듈.

Classes:
    SignalingCoordinator: 시그널링 이벤트 → 미디어 엔진 호출 상태 머신
    SessionState: 현재 producer/consumer/transport 기록
    SignalingChannel: 클라이언트 연결 하나의 송신 채널
    ChannelRegistry: 연결된 채널 목록
    SignalingError, FailureKind: 구조화된 실패 응답
"""

from .errors import FailureKind, SignalingError
from .state import Owned, Released, SessionState, TransportSlot
from .channel import SignalingChannel
from .registry import ChannelRegistry
from .coordinator import SignalingCoordinator

__all__ = [
    "SignalingCoordinator",
    "SessionState",
    "Owned",
    "TransportSlot",
    "Released",
    "SignalingChannel",
    "ChannelRegistry",
    "SignalingError",
    "FailureKind",
]
