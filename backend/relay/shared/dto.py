"""Signaling payload DTOs.

Field names follow the camelCase keys the browser client sends and expects.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SignalingRequest(BaseModel):
    """One inbound signaling frame."""

    id: Optional[Union[int, str]] = None
    type: str = Field(min_length=1)
    data: Optional[Dict[str, Any]] = None


class DtlsFingerprint(BaseModel):
    algorithm: str
    value: str


class DtlsParameters(BaseModel):
    """클라이언트 DTLS 파라미터 (role + 인증서 fingerprint)."""

    role: Literal["auto", "client", "server"] = "auto"
    fingerprints: List[DtlsFingerprint] = Field(min_length=1)


class IceParameters(BaseModel):
    model_config = ConfigDict(extra="allow")

    usernameFragment: str
    password: str
    iceLite: bool = False


class ConnectTransportRequest(BaseModel):
    """connectProducerTransport / connectConsumerTransport 요청."""

    dtlsParameters: DtlsParameters
    iceParameters: Optional[IceParameters] = None
    iceCandidates: Optional[List[Dict[str, Any]]] = None


class ProduceRequest(BaseModel):
    kind: Literal["audio", "video"]
    rtpParameters: Dict[str, Any]


class ConsumeRequest(BaseModel):
    rtpCapabilities: Dict[str, Any]


class ResumeRequest(BaseModel):
    pass


class TransportInfo(BaseModel):
    """transport 생성 응답."""

    id: str
    iceParameters: Dict[str, Any]
    iceCandidates: List[Dict[str, Any]]
    dtlsParameters: Dict[str, Any]


class ProduceReply(BaseModel):
    id: str


class ConsumerInfo(BaseModel):
    """consume 응답.

    producerPaused는 클라이언트 관점에서 미디어가 흐르지 않는 상태(consumer 또는
    producer 일시정지)를 나타내고, paused는 consumer 자체의 일시정지 여부입니다.
    """

    producerId: str
    id: str
    kind: Literal["audio", "video"]
    rtpParameters: Dict[str, Any]
    type: Literal["simple", "simulcast"]
    producerPaused: bool
    paused: bool
