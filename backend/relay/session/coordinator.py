"""시그널링 코디네이터 모듈.

클라이언트 시그널링 이벤트를 받아 세션 상태의 전제 조건을 검사하고,
미디어 엔진(Router/Transport/Producer/Consumer)을 올바른 순서로 호출한 뒤
세션 상태를 갱신하고 응답/알림을 만들어냅니다.

Event flow (한 연결 기준):
    connected → getRouterRtpCapabilities → create*Transport
    → connect*Transport → produce | consume → resume

Concurrency:
    - 모든 명령과 연결 open/close 처리는 하나의 asyncio.Lock 안에서 실행됨
    - 한 명령의 상태 전이가 끝나기 전에 다른 명령이 세션 상태를 바꿀 수 없음
    - newProducer / producerClosed 알림은 채널 송신 큐에 넣기만 함 (전달을 기다리지 않음)

Examples:
    >>> coordinator = SignalingCoordinator(router)
    >>> await coordinator.open_channel(channel)
    >>> caps = await coordinator.handle(channel, "getRouterRtpCapabilities", {})
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..config import WebRtcTransportConfig, transport_config as default_transport_config
from ..engine import Consumer, MediaEngineError, Producer, Router, WebRtcTransport
from ..shared.dto import (
    ConnectTransportRequest,
    ConsumeRequest,
    ConsumerInfo,
    ProduceReply,
    ProduceRequest,
    ResumeRequest,
    TransportInfo,
)
from .channel import SignalingChannel
from .errors import FailureKind, SignalingError, precondition
from .registry import ChannelRegistry
from .state import SessionState, TransportSlot

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# simulcast consumer는 항상 가장 높은 레이어 쌍을 선호
PREFERRED_SPATIAL_LAYER = 2
PREFERRED_TEMPORAL_LAYER = 2


def _parse(model: Type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data if data is not None else {})
    except ValidationError as e:
        raise SignalingError(FailureKind.INVALID_REQUEST, str(e)) from e


class SignalingCoordinator:
    """단일 룸 시그널링 상태 머신.

    Attributes:
        router (Router): 룸의 라우터 (수명주기는 app lifespan이 관리)
        state (SessionState): 현재 producer/consumer/transport 기록
        registry (ChannelRegistry): 연결된 채널 목록 (브로드캐스트 대상)
        transport_config (WebRtcTransportConfig): transport 생성 옵션
    """

    def __init__(
        self,
        router: Router,
        state: Optional[SessionState] = None,
        registry: Optional[ChannelRegistry] = None,
        transport_config: Optional[WebRtcTransportConfig] = None,
    ):
        self.router = router
        self.state = state or SessionState()
        self.registry = registry or ChannelRegistry()
        self.transport_config = transport_config or default_transport_config
        self._gate = asyncio.Lock()

        self._handlers: Dict[str, Callable[[SignalingChannel, Dict[str, Any]], Awaitable[Any]]] = {
            "getRouterRtpCapabilities": self._get_router_rtp_capabilities,
            "createProducerTransport": self._create_producer_transport,
            "createConsumerTransport": self._create_consumer_transport,
            "connectProducerTransport": self._connect_producer_transport,
            "connectConsumerTransport": self._connect_consumer_transport,
            "produce": self._produce,
            "consume": self._consume,
            "resume": self._resume,
        }

    # ------------------------------------------------------------
    # 연결 수명주기
    # ------------------------------------------------------------

    async def open_channel(self, channel: SignalingChannel) -> None:
        """새 연결을 등록합니다. producer가 이미 있으면 newProducer를 보냅니다."""
        async with self._gate:
            self.registry.add(channel)
            self.state.discard_closed()
            if self.state.producer is not None:
                channel.notify("newProducer")
                logger.info(f"[Signaling] 늦게 들어온 채널 {channel.channel_id[:8]}에 newProducer 전송")

    async def close_channel(self, channel_id: str) -> None:
        """연결 종료를 처리합니다.

        채널이 소유한 세션 슬롯을 비우고, 채널이 만든 transport를 엔진에서 닫습니다.
        현재 producer가 해제되면 다른 채널에 producerClosed를 보냅니다.
        """
        async with self._gate:
            channel = self.registry.remove(channel_id)
            if channel is not None:
                channel.close()

            released = self.state.release_owner(channel_id)
            for transport in released.transports:
                transport.close()
            if released.producer is not None:
                released.producer.close()
                self.registry.broadcast("producerClosed")
            if released.consumer is not None:
                released.consumer.close()
            self.state.discard_closed()

            if not released.empty:
                logger.info(
                    f"[Signaling] 채널 {channel_id[:8]} 리소스 해제: "
                    f"transport {len(released.transports)}개, "
                    f"producer={'있음' if released.producer else '없음'}, "
                    f"consumer={'있음' if released.consumer else '없음'}"
                )

    async def handle(self, channel: SignalingChannel, event: str, data: Optional[Dict[str, Any]]) -> Any:
        """시그널링 이벤트 하나를 처리하고 응답 페이로드를 돌려줍니다.

        Args:
            channel: 요청을 보낸 채널
            event: 이벤트 이름
            data: 요청 데이터

        Returns:
            Any: 성공 응답 페이로드

        Raises:
            SignalingError: 알 수 없는 이벤트, 잘못된 요청, 전제 조건 위반,
                소비 불가, 엔진 실패
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(f"[Signaling] 알 수 없는 이벤트: {event}")
            raise SignalingError(FailureKind.UNKNOWN_EVENT, f"unknown event: {event}")

        async with self._gate:
            self.state.discard_closed()
            logger.debug(f"[Signaling] {channel} → {event}")
            try:
                return await handler(channel, data or {})
            except MediaEngineError as e:
                logger.error(f"[Signaling] {event} 엔진 호출 실패 ({channel}): {e}")
                raise SignalingError(FailureKind.ENGINE_ERROR, str(e)) from e

    def snapshot(self) -> Dict[str, Any]:
        return {**self.state.snapshot(), "channels": self.registry.count()}

    async def close(self) -> None:
        """모든 채널을 닫습니다 (서버 종료 시)."""
        for channel_id in list(self.registry.channels):
            await self.close_channel(channel_id)

    # ------------------------------------------------------------
    # 이벤트 핸들러
    # ------------------------------------------------------------

    async def _get_router_rtp_capabilities(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.router.rtp_capabilities

    async def _create_producer_transport(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create_transport(channel, "producer")

    async def _create_consumer_transport(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create_transport(channel, "consumer")

    async def _create_transport(self, channel: SignalingChannel, side: str) -> Dict[str, Any]:
        config = self.transport_config
        transport = await self.router.create_webrtc_transport(
            listen_ips=config.listen_ips,
            enable_udp=config.ENABLE_UDP,
            enable_tcp=config.ENABLE_TCP,
            prefer_udp=config.PREFER_UDP,
            initial_available_outgoing_bitrate=config.INITIAL_AVAILABLE_OUTGOING_BITRATE,
        )

        if config.MAX_INCOMING_BITRATE:
            try:
                await transport.set_max_incoming_bitrate(config.MAX_INCOMING_BITRATE)
            except MediaEngineError as e:
                logger.debug(f"[Signaling] max incoming bitrate 설정 실패 (무시): {e}")

        self.state.set_transport(side, transport, channel.channel_id)
        logger.info(f"[Signaling] {side} transport 생성: {transport.id} ({channel})")

        return TransportInfo(
            id=transport.id,
            iceParameters=transport.ice_parameters,
            iceCandidates=transport.ice_candidates,
            dtlsParameters=transport.dtls_parameters,
        ).model_dump()

    async def _connect_producer_transport(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._connect_transport(channel, "producer", data)

    async def _connect_consumer_transport(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._connect_transport(channel, "consumer", data)

    async def _connect_transport(self, channel: SignalingChannel, side: str, data: Dict[str, Any]) -> Dict[str, Any]:
        request = _parse(ConnectTransportRequest, data)
        slot = self._owned_transport(channel, side)
        if slot.connected:
            raise precondition(f"{side} transport {slot.id} is already connected")

        await slot.resource.connect(
            request.dtlsParameters.model_dump(),
            ice_parameters=request.iceParameters.model_dump() if request.iceParameters else None,
            ice_candidates=request.iceCandidates,
        )
        slot.connected = True
        logger.info(f"[Signaling] {side} transport 연결: {slot.id} ({channel})")
        return {}

    async def _produce(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        request = _parse(ProduceRequest, data)
        transport = self._connected_transport(channel, "producer")

        producer = await transport.produce(request.kind, request.rtpParameters)
        self.state.set_producer(producer, channel.channel_id)
        notified = self.registry.broadcast("newProducer", exclude=channel.channel_id)
        logger.info(
            f"[Signaling] producer 생성: {producer.id} ({producer.kind}, {channel}), "
            f"newProducer → {notified}개 채널"
        )
        return ProduceReply(id=producer.id).model_dump()

    async def _consume(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        request = _parse(ConsumeRequest, data)
        if self.state.producer is None:
            raise precondition("no producer to consume")
        transport = self._connected_transport(channel, "consumer")
        return await self._create_consumer(channel, transport, self.state.producer.resource, request.rtpCapabilities)

    async def _create_consumer(
        self,
        channel: SignalingChannel,
        transport: WebRtcTransport,
        producer: Producer,
        rtp_capabilities: Dict[str, Any],
    ) -> Dict[str, Any]:
        if not self.router.can_consume(producer.id, rtp_capabilities):
            logger.warning(f"[Signaling] producer {producer.id}를 소비할 수 없음 ({channel})")
            raise SignalingError(FailureKind.CANNOT_CONSUME, f"cannot consume producer {producer.id}")

        consumer: Consumer = await transport.consume(
            producer.id, rtp_capabilities, paused=producer.kind == "video"
        )
        if consumer.type == "simulcast":
            try:
                await consumer.set_preferred_layers(PREFERRED_SPATIAL_LAYER, PREFERRED_TEMPORAL_LAYER)
            except MediaEngineError:
                consumer.close()
                raise

        previous = self.state.consumer
        if previous is not None and previous.owner == channel.channel_id:
            previous.resource.close()
            logger.info(f"[Signaling] 이전 consumer 종료: {previous.id} ({channel})")
        self.state.set_consumer(consumer, channel.channel_id)
        logger.info(
            f"[Signaling] consumer 생성: {consumer.id} ← producer {producer.id} "
            f"({consumer.kind}, {consumer.type}, paused={consumer.paused})"
        )
        return ConsumerInfo(
            producerId=producer.id,
            id=consumer.id,
            kind=consumer.kind,
            rtpParameters=consumer.rtp_parameters,
            type=consumer.type,
            producerPaused=consumer.paused or consumer.producer_paused,
            paused=consumer.paused,
        ).model_dump()

    async def _resume(self, channel: SignalingChannel, data: Dict[str, Any]) -> Dict[str, Any]:
        _parse(ResumeRequest, data)
        slot = self.state.consumer
        if slot is None:
            raise precondition("no consumer to resume")
        if slot.owner != channel.channel_id:
            raise precondition(f"consumer {slot.id} belongs to another connection")

        await slot.resource.resume()
        logger.info(f"[Signaling] consumer 재개: {slot.id} ({channel})")
        return {}

    # ------------------------------------------------------------
    # 전제 조건 검사
    # ------------------------------------------------------------

    def _owned_transport(self, channel: SignalingChannel, side: str) -> TransportSlot:
        slot = self.state.get_transport(side)
        if slot is None:
            raise precondition(f"{side} transport does not exist")
        if slot.owner != channel.channel_id:
            raise precondition(f"{side} transport {slot.id} belongs to another connection")
        return slot

    def _connected_transport(self, channel: SignalingChannel, side: str) -> WebRtcTransport:
        slot = self._owned_transport(channel, side)
        if not slot.connected:
            raise precondition(f"{side} transport {slot.id} is not connected")
        return slot.resource
