"""세션 상태 모듈.

단일 룸의 현재 producer / consumer / producer-side transport /
consumer-side transport를 기록합니다. 각 슬롯은 리소스와 함께 그것을
만든 시그널링 채널(소유자)을 기억하므로, 연결이 끊어질 때 해당 채널이
소유한 리소스만 정확히 해제할 수 있습니다.

Architecture:
    - producer / consumer: Optional[Owned]
    - producer_transport / consumer_transport: Optional[TransportSlot]
    - transports_by_owner: Dict[str, List[WebRtcTransport]] - 채널이 만든 모든 transport
      (슬롯이 교체되어도 연결 종료 시 닫아야 하므로 별도로 추적)

Note:
    - 모든 변경은 SignalingCoordinator의 락 안에서만 일어남
    - 이 클래스는 엔진 리소스를 닫지 않음 (해제된 리소스를 돌려줄 뿐)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..engine import Consumer, Producer, WebRtcTransport

logger = logging.getLogger(__name__)


@dataclass
class Owned:
    """소유 채널이 기록된 엔진 리소스."""

    resource: Any
    owner: str

    @property
    def id(self) -> str:
        return self.resource.id


@dataclass
class TransportSlot(Owned):
    """transport 슬롯. connect 성공 여부를 함께 기록합니다."""

    connected: bool = False


@dataclass
class Released:
    """release_owner()가 돌려주는 해제된 리소스 묶음."""

    producer: Optional[Producer] = None
    consumer: Optional[Consumer] = None
    transports: List[WebRtcTransport] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.producer is None and self.consumer is None and not self.transports


class SessionState:
    """프로세스 전역 세션 상태 (단일 producer / 단일 consumer).

    Attributes:
        producer (Optional[Owned]): 현재 producer
        consumer (Optional[Owned]): 현재 consumer
        producer_transport (Optional[TransportSlot]): 현재 producer-side transport
        consumer_transport (Optional[TransportSlot]): 현재 consumer-side transport
    """

    def __init__(self):
        self.producer: Optional[Owned] = None
        self.consumer: Optional[Owned] = None
        self.producer_transport: Optional[TransportSlot] = None
        self.consumer_transport: Optional[TransportSlot] = None

        # channel_id -> 그 채널이 만든 transport 목록
        self.transports_by_owner: Dict[str, List[WebRtcTransport]] = {}

    def set_transport(self, side: str, transport: WebRtcTransport, owner: str) -> TransportSlot:
        """side("producer" | "consumer") 슬롯에 transport를 저장합니다.

        이전 참조는 교체되며, transport는 owner 채널 소유로 기록됩니다.
        """
        slot = TransportSlot(resource=transport, owner=owner)
        setattr(self, f"{side}_transport", slot)
        self.transports_by_owner.setdefault(owner, []).append(transport)
        return slot

    def get_transport(self, side: str) -> Optional[TransportSlot]:
        return getattr(self, f"{side}_transport")

    def set_producer(self, producer: Producer, owner: str) -> None:
        if self.producer is not None:
            logger.warning(
                f"[Session] 기존 producer {self.producer.id} 참조를 새 producer {producer.id}로 교체"
            )
        self.producer = Owned(resource=producer, owner=owner)

    def set_consumer(self, consumer: Consumer, owner: str) -> None:
        self.consumer = Owned(resource=consumer, owner=owner)

    def release_owner(self, channel_id: str) -> Released:
        """채널이 소유한 모든 슬롯을 비우고 해제된 리소스를 돌려줍니다.

        Args:
            channel_id: 연결이 끊어진 채널 ID

        Returns:
            Released: 비워진 producer/consumer와 채널이 만든 transport 목록
        """
        released = Released(transports=self.transports_by_owner.pop(channel_id, []))

        if self.producer is not None and self.producer.owner == channel_id:
            released.producer = self.producer.resource
            self.producer = None
        if self.consumer is not None and self.consumer.owner == channel_id:
            released.consumer = self.consumer.resource
            self.consumer = None
        for side in ("producer", "consumer"):
            slot = self.get_transport(side)
            if slot is not None and slot.owner == channel_id:
                setattr(self, f"{side}_transport", None)

        return released

    def discard_closed(self) -> None:
        """엔진에서 이미 닫힌 리소스를 슬롯에서 제거합니다."""
        if self.producer is not None and self.producer.resource.closed:
            self.producer = None
        if self.consumer is not None and self.consumer.resource.closed:
            self.consumer = None
        for side in ("producer", "consumer"):
            slot = self.get_transport(side)
            if slot is not None and slot.resource.closed:
                setattr(self, f"{side}_transport", None)

    def snapshot(self) -> Dict[str, Any]:
        """현재 상태의 ID 요약 (상태 조회 API용)."""

        def slot_id(slot: Optional[Owned]) -> Optional[str]:
            return slot.id if slot is not None else None

        return {
            "producerId": slot_id(self.producer),
            "consumerId": slot_id(self.consumer),
            "consumerPaused": self.consumer.resource.paused if self.consumer is not None else None,
            "producerTransportId": slot_id(self.producer_transport),
            "consumerTransportId": slot_id(self.consumer_transport),
        }
