"""시그널링 에러 타입."""

from enum import Enum
from typing import Any, Dict


class FailureKind(str, Enum):
    """시그널링 응답 실패 종류."""

    PRECONDITION_VIOLATION = "PreconditionViolation"
    CANNOT_CONSUME = "CannotConsume"
    ENGINE_ERROR = "EngineError"
    INVALID_REQUEST = "InvalidRequest"
    UNKNOWN_EVENT = "UnknownEvent"
    INTERNAL_ERROR = "InternalError"


class SignalingError(Exception):
    """클라이언트에게 구조화된 실패 응답으로 전달되는 에러.

    Attributes:
        kind (FailureKind): 실패 종류
        message (str): 사람이 읽을 수 있는 설명
    """

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"SignalingError({self.kind.value}, {self.message!r})"


def precondition(message: str) -> SignalingError:
    return SignalingError(FailureKind.PRECONDITION_VIOLATION, message)
