"""Shared DTOs used by the signaling route and the coordinator.

Only lightweight pydantic models should live here. Do not place engine or
session logic in this package.
"""

from .dto import (
    ConnectTransportRequest,
    ConsumeRequest,
    ConsumerInfo,
    DtlsParameters,
    IceParameters,
    ProduceReply,
    ProduceRequest,
    ResumeRequest,
    SignalingRequest,
    TransportInfo,
)

__all__ = [
    "SignalingRequest",
    "DtlsParameters",
    "IceParameters",
    "ConnectTransportRequest",
    "ProduceRequest",
    "ConsumeRequest",
    "ResumeRequest",
    "TransportInfo",
    "ProduceReply",
    "ConsumerInfo",
]
