"""연결된 시그널링 채널 레지스트리.

단일 룸이므로 연결된 모든 채널이 곧 룸의 참가자이며 브로드캐스트 대상입니다.

Examples:
    >>> registry = ChannelRegistry()
    >>> registry.add(channel_a)
    >>> registry.add(channel_b)
    >>> registry.broadcast("newProducer", exclude=channel_a.channel_id)
    1
"""

import logging
from typing import Dict, List, Optional

from .channel import SignalingChannel

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """채널 ID → SignalingChannel 맵."""

    def __init__(self):
        self.channels: Dict[str, SignalingChannel] = {}

    def add(self, channel: SignalingChannel) -> None:
        self.channels[channel.channel_id] = channel
        logger.info(f"[Signaling] 채널 {channel.channel_id[:8]} 등록. 연결 수: {len(self.channels)}")

    def remove(self, channel_id: str) -> Optional[SignalingChannel]:
        """채널을 제거합니다.

        Returns:
            Optional[SignalingChannel]: 제거된 채널. 등록되지 않은 ID면 None
        """
        channel = self.channels.pop(channel_id, None)
        if channel is not None:
            logger.info(f"[Signaling] 채널 {channel_id[:8]} 제거. 연결 수: {len(self.channels)}")
        return channel

    def get(self, channel_id: str) -> Optional[SignalingChannel]:
        return self.channels.get(channel_id)

    def get_others(self, exclude_channel_id: str) -> List[SignalingChannel]:
        return [
            channel for channel in self.channels.values()
            if channel.channel_id != exclude_channel_id
        ]

    def broadcast(self, event: str, data: Optional[dict] = None, exclude: Optional[str] = None) -> int:
        """exclude를 제외한 모든 채널에 알림을 보냅니다.

        Returns:
            int: 알림을 큐에 넣은 채널 수
        """
        targets = self.get_others(exclude) if exclude else list(self.channels.values())
        for channel in targets:
            channel.notify(event, data)
        if targets:
            logger.debug(f"[Signaling] '{event}' 알림 → {len(targets)}개 채널")
        return len(targets)

    def count(self) -> int:
        return len(self.channels)
