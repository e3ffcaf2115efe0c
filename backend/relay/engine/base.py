"""미디어 엔진 바인딩 계약 모듈.

시그널링 코디네이터가 사용하는 Worker / Router / WebRtcTransport /
Producer / Consumer 추상화를 정의합니다. 실제 미디어 처리(ICE, DTLS,
RTP 포워딩)는 구현 클래스가 담당하고, 이 모듈은 공통 수명주기와
capability 협상 규칙을 제공합니다.

Architecture:
    Worker ─┬─ Router ─┬─ WebRtcTransport ─┬─ Producer
            │          │                   └─ Consumer (Producer에서 파생)
            │          └─ (producer 레지스트리: can_consume 판단용)
            └─ 백그라운드 태스크 감시 (예상치 못한 실패 시 "died")

Events (pyee):
    Worker: "died"(error), "close"
    Router / WebRtcTransport / Producer: "close"
    Consumer: "close", "producerclose"

Note:
    - close()는 동기 메서드이며 하위 리소스를 연쇄적으로 닫음
    - 엔진 호출 실패는 MediaEngineError로 통일
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, List, Optional, Set

from pyee.asyncio import AsyncIOEventEmitter

from . import rtp

logger = logging.getLogger(__name__)


class MediaEngineError(Exception):
    """미디어 엔진 호출 실패."""


class Producer(AsyncIOEventEmitter, ABC):
    """클라이언트가 보내는 인바운드 미디어 스트림.

    Attributes:
        id (str): producer 식별자
        kind (str): "audio" 또는 "video"
        rtp_parameters (dict): 클라이언트가 보낸 RTP 파라미터
        type (str): "simple" 또는 "simulcast"
        paused (bool): producer 일시정지 여부
        closed (bool): 종료 여부
    """

    def __init__(self, producer_id: str, kind: str, rtp_parameters: Dict[str, Any]):
        super().__init__()
        self.id = producer_id
        self.kind = kind
        self.rtp_parameters = rtp_parameters
        self.type = rtp.get_consumer_type(rtp_parameters)
        self.paused = False
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close()
        self.emit("close")

    def _on_close(self) -> None:
        pass


class Consumer(AsyncIOEventEmitter, ABC):
    """하나의 Producer에서 파생된 아웃바운드 미디어 스트림.

    Attributes:
        id (str): consumer 식별자
        producer_id (str): 원본 producer ID
        kind (str): 미디어 종류
        rtp_parameters (dict): consumer RTP 파라미터
        type (str): "simple" 또는 "simulcast"
        paused (bool): consumer 일시정지 여부
        producer_paused (bool): 생성 시점의 producer 일시정지 여부
        preferred_layers (Optional[dict]): simulcast 선호 레이어
    """

    def __init__(
        self,
        consumer_id: str,
        producer: Producer,
        rtp_parameters: Dict[str, Any],
        consumer_type: str,
        paused: bool,
    ):
        super().__init__()
        self.id = consumer_id
        self.producer_id = producer.id
        self.kind = producer.kind
        self.rtp_parameters = rtp_parameters
        self.type = consumer_type
        self.paused = paused
        self.producer_paused = producer.paused
        self.preferred_layers: Optional[Dict[str, int]] = None
        self.closed = False

    async def resume(self) -> None:
        """일시정지된 consumer의 전송을 시작합니다.

        Raises:
            MediaEngineError: 이미 종료된 consumer인 경우
        """
        if self.closed:
            raise MediaEngineError(f"consumer {self.id} is closed")
        if not self.paused:
            return
        await self._resume()
        self.paused = False

    async def set_preferred_layers(self, spatial_layer: int, temporal_layer: int) -> None:
        """simulcast consumer의 선호 spatial/temporal 레이어를 지정합니다.

        Raises:
            MediaEngineError: simulcast consumer가 아니거나 종료된 경우
        """
        if self.closed:
            raise MediaEngineError(f"consumer {self.id} is closed")
        if self.type != "simulcast":
            raise MediaEngineError("preferred layers are only valid for simulcast consumers")
        self.preferred_layers = {"spatialLayer": spatial_layer, "temporalLayer": temporal_layer}
        await self._set_preferred_layers(spatial_layer, temporal_layer)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close()
        self.emit("close")

    def _on_producer_close(self) -> None:
        if self.closed:
            return
        self.close()
        self.emit("producerclose")

    @abstractmethod
    async def _resume(self) -> None:
        ...

    async def _set_preferred_layers(self, spatial_layer: int, temporal_layer: int) -> None:
        pass

    def _on_close(self) -> None:
        pass


class WebRtcTransport(AsyncIOEventEmitter, ABC):
    """클라이언트 한 명의 미디어 경로에 바인딩되는 WebRTC 전송.

    Attributes:
        id (str): transport 식별자
        router (Router): 소속 라우터
        ice_parameters (dict): 로컬 ICE usernameFragment/password
        ice_candidates (List[dict]): 로컬 ICE 후보 목록
        dtls_parameters (dict): 로컬 DTLS role/fingerprints
        dtls_state (str): "new" → "connecting" → "connected" | "failed" | "closed"
        producers (Dict[str, Producer]): 이 transport에서 생성된 producer
        consumers (Dict[str, Consumer]): 이 transport에서 생성된 consumer
    """

    def __init__(
        self,
        router: "Router",
        transport_id: str,
        ice_parameters: Dict[str, Any],
        ice_candidates: List[Dict[str, Any]],
        dtls_parameters: Dict[str, Any],
    ):
        super().__init__()
        self.id = transport_id
        self.router = router
        self.ice_parameters = ice_parameters
        self.ice_candidates = ice_candidates
        self.dtls_parameters = dtls_parameters
        self.dtls_state = "new"
        self.closed = False
        self.producers: Dict[str, Producer] = {}
        self.consumers: Dict[str, Consumer] = {}

    async def connect(
        self,
        dtls_parameters: Dict[str, Any],
        ice_parameters: Optional[Dict[str, Any]] = None,
        ice_candidates: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """클라이언트의 DTLS 파라미터로 transport를 연결합니다.

        transport당 한 번만 호출할 수 있습니다.

        Args:
            dtls_parameters: 원격 DTLS role/fingerprints
            ice_parameters: 원격 ICE 파라미터 (full ICE 구현에서만 필요)
            ice_candidates: 원격 ICE 후보 (선택)

        Raises:
            MediaEngineError: 종료된 transport, 중복 호출, 잘못된 파라미터
        """
        if self.closed:
            raise MediaEngineError(f"transport {self.id} is closed")
        if self.dtls_state != "new":
            raise MediaEngineError("connect() already called")
        if not isinstance(dtls_parameters, dict) or not dtls_parameters.get("fingerprints"):
            raise MediaEngineError("missing dtlsParameters.fingerprints")

        self.dtls_state = "connecting"
        try:
            await self._connect(dtls_parameters, ice_parameters, ice_candidates)
        except Exception:
            self.dtls_state = "new"
            raise

    async def produce(self, kind: str, rtp_parameters: Dict[str, Any]) -> Producer:
        """클라이언트 미디어를 수신하는 Producer를 생성합니다.

        Raises:
            MediaEngineError: 종료된 transport, 잘못된 kind/rtpParameters, 라우터가 지원하지 않는 코덱
        """
        if self.closed:
            raise MediaEngineError(f"transport {self.id} is closed")
        if kind not in rtp.MEDIA_KINDS:
            raise MediaEngineError(f"invalid kind: {kind!r}")
        try:
            rtp.validate_rtp_parameters(rtp_parameters)
            rtp.check_producer_codecs(kind, rtp_parameters, self.router._rtp_capabilities)
        except ValueError as e:
            raise MediaEngineError(str(e)) from e

        producer = await self._produce(kind, copy.deepcopy(rtp_parameters))
        self.producers[producer.id] = producer
        self.router._add_producer(producer)

        @producer.once("close")
        def on_producer_close():
            self.producers.pop(producer.id, None)
            self.router._remove_producer(producer.id)

        return producer

    async def consume(
        self,
        producer_id: str,
        rtp_capabilities: Dict[str, Any],
        paused: bool = False,
    ) -> Consumer:
        """producer를 수신하는 Consumer를 생성합니다.

        router.can_consume()이 참이어야 합니다.

        Raises:
            MediaEngineError: 소비 불가능하거나 transport가 종료된 경우
        """
        if self.closed:
            raise MediaEngineError(f"transport {self.id} is closed")
        if not self.router.can_consume(producer_id, rtp_capabilities):
            raise MediaEngineError(f"cannot consume producer {producer_id}")

        producer = self.router.get_producer(producer_id)
        try:
            rtp_parameters = rtp.get_consumer_rtp_parameters(producer.rtp_parameters, rtp_capabilities)
        except (KeyError, TypeError, ValueError) as e:
            raise MediaEngineError(str(e)) from e
        consumer_type = rtp.get_consumer_type(producer.rtp_parameters)

        consumer = await self._consume(producer, rtp_parameters, consumer_type, paused)
        self.consumers[consumer.id] = consumer
        producer.once("close", consumer._on_producer_close)
        consumer.once("close", lambda: self.consumers.pop(consumer.id, None))
        return consumer

    def close(self) -> None:
        """transport와 그 위의 모든 producer/consumer를 닫습니다."""
        if self.closed:
            return
        self.closed = True
        self.dtls_state = "closed"
        for consumer in list(self.consumers.values()):
            consumer.close()
        for producer in list(self.producers.values()):
            producer.close()
        self._on_close()
        self.emit("close")

    @abstractmethod
    async def set_max_incoming_bitrate(self, bitrate: int) -> None:
        ...

    @abstractmethod
    async def _connect(
        self,
        dtls_parameters: Dict[str, Any],
        ice_parameters: Optional[Dict[str, Any]],
        ice_candidates: Optional[List[Dict[str, Any]]],
    ) -> None:
        ...

    @abstractmethod
    async def _produce(self, kind: str, rtp_parameters: Dict[str, Any]) -> Producer:
        ...

    @abstractmethod
    async def _consume(
        self,
        producer: Producer,
        rtp_parameters: Dict[str, Any],
        consumer_type: str,
        paused: bool,
    ) -> Consumer:
        ...

    def _on_close(self) -> None:
        pass


class Router(AsyncIOEventEmitter, ABC):
    """룸 하나의 라우팅 컨텍스트.

    RTP capabilities는 생성 시 한 번 계산되며 이후 바뀌지 않습니다.

    Attributes:
        id (str): 라우터 식별자
        worker (Optional[Worker]): 소속 워커
        closed (bool): 종료 여부
    """

    def __init__(self, router_id: str, rtp_capabilities: Dict[str, Any], worker: Optional["Worker"] = None):
        super().__init__()
        self.id = router_id
        self.worker = worker
        self.closed = False
        self._rtp_capabilities = rtp_capabilities
        self._producers: Dict[str, Producer] = {}
        self._transports: Dict[str, WebRtcTransport] = {}

    @property
    def rtp_capabilities(self) -> Dict[str, Any]:
        """라우터 RTP capabilities (호출마다 사본 반환)."""
        return copy.deepcopy(self._rtp_capabilities)

    def get_producer(self, producer_id: str) -> Optional[Producer]:
        return self._producers.get(producer_id)

    def can_consume(self, producer_id: str, rtp_capabilities: Dict[str, Any]) -> bool:
        """rtp_capabilities로 producer를 소비할 수 있는지 확인합니다.

        Returns:
            bool: producer가 존재하고 코덱이 호환되면 True
        """
        producer = self._producers.get(producer_id)
        if producer is None:
            logger.error(f"[MediaEngine] can_consume: producer {producer_id} 없음")
            return False
        try:
            return rtp.can_consume(producer.rtp_parameters, rtp_capabilities)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.error(f"[MediaEngine] can_consume: 잘못된 rtp_capabilities: {e}")
            return False

    async def create_webrtc_transport(
        self,
        listen_ips: List[Dict[str, Any]],
        enable_udp: bool = True,
        enable_tcp: bool = False,
        prefer_udp: bool = False,
        initial_available_outgoing_bitrate: Optional[int] = None,
    ) -> WebRtcTransport:
        """WebRTC transport를 생성합니다.

        Args:
            listen_ips: [{"ip": "...", "announcedIp": "..."}] 형식의 리슨 주소
            enable_udp: UDP 후보 사용 여부
            enable_tcp: TCP 후보 사용 여부
            prefer_udp: UDP 후보 우선 여부
            initial_available_outgoing_bitrate: 초기 송신 비트레이트 (bps)

        Raises:
            MediaEngineError: 라우터 종료 또는 잘못된 listen_ips
        """
        if self.closed:
            raise MediaEngineError(f"router {self.id} is closed")
        if not listen_ips:
            raise MediaEngineError("listen_ips must not be empty")
        if not enable_udp and not enable_tcp:
            raise MediaEngineError("at least one of enable_udp / enable_tcp is required")

        transport = await self._create_webrtc_transport(
            listen_ips, enable_udp, enable_tcp, prefer_udp, initial_available_outgoing_bitrate
        )
        self._transports[transport.id] = transport
        transport.once("close", lambda: self._transports.pop(transport.id, None))
        return transport

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for transport in list(self._transports.values()):
            transport.close()
        self.emit("close")

    def _add_producer(self, producer: Producer) -> None:
        self._producers[producer.id] = producer

    def _remove_producer(self, producer_id: str) -> None:
        self._producers.pop(producer_id, None)

    @abstractmethod
    async def _create_webrtc_transport(
        self,
        listen_ips: List[Dict[str, Any]],
        enable_udp: bool,
        enable_tcp: bool,
        prefer_udp: bool,
        initial_available_outgoing_bitrate: Optional[int],
    ) -> WebRtcTransport:
        ...


class Worker(AsyncIOEventEmitter, ABC):
    """미디어 처리 단위. 라우터를 소유하고 엔진 백그라운드 태스크를 감시합니다.

    감시 중인 태스크가 예상치 못한 예외로 끝나면 워커는 죽은 것으로 간주되어
    "died" 이벤트를 발생시킵니다. ConnectionError와 MediaEngineError는
    개별 연결의 실패로 보고 로그만 남깁니다.

    Attributes:
        pid (int): 워커 프로세스 ID
        closed (bool): 종료 여부
        died (bool): 비정상 종료 여부
    """

    def __init__(self, pid: int):
        super().__init__()
        self.pid = pid
        self.closed = False
        self.died = False
        self._routers: Dict[str, Router] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def create_router(self, media_codecs: List[Dict[str, Any]]) -> Router:
        """설정된 미디어 코덱으로 라우터를 생성합니다.

        Raises:
            MediaEngineError: 워커 종료 또는 코덱 설정 오류
        """
        if self.closed:
            raise MediaEngineError("worker is closed")
        try:
            rtp_capabilities = rtp.generate_router_rtp_capabilities(media_codecs)
        except ValueError as e:
            raise MediaEngineError(str(e)) from e

        router = await self._create_router(str(uuid.uuid4()), rtp_capabilities)
        self._routers[router.id] = router
        router.once("close", lambda: self._routers.pop(router.id, None))
        return router

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        """워커가 감시하는 백그라운드 태스크를 시작합니다."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._shutdown()
        self.emit("close")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if isinstance(error, (ConnectionError, MediaEngineError)):
            logger.warning(f"[MediaEngine] 엔진 태스크 실패 ({task.get_name()}): {error}")
            return
        self._die(error)

    def _die(self, error: BaseException) -> None:
        if self.closed:
            return
        logger.error(f"[MediaEngine] 워커 비정상 종료 [pid:{self.pid}]: {error!r}")
        self.closed = True
        self.died = True
        self._shutdown()
        self.emit("died", error)

    def _shutdown(self) -> None:
        # 라우터 종료가 새로 띄우는 정리 태스크는 취소하지 않음
        running = list(self._tasks)
        for router in list(self._routers.values()):
            router.close()
        for task in running:
            task.cancel()

    @abstractmethod
    async def _create_router(self, router_id: str, rtp_capabilities: Dict[str, Any]) -> Router:
        ...
