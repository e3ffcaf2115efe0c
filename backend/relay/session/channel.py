"""시그널링 채널 모듈.

클라이언트 연결 하나당 하나의 SignalingChannel이 만들어집니다.
응답(reply)과 서버 알림(notification)은 모두 채널의 송신 큐에 쌓이고,
채널마다 하나의 writer 태스크가 큐를 순서대로 WebSocket에 씁니다.

Message format:
    - 요청: {"id": ..., "type": <event>, "data": {...}}
    - 응답: {"id": ..., "type": "response", "data": {...}}
    - 실패 응답: {"id": ..., "type": "response", "error": {"kind", "message"}, "data": {"error": msg}}
    - 알림: {"type": "newProducer", "data": {}}
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket

from .errors import SignalingError

logger = logging.getLogger(__name__)

_CLOSE = object()


class SignalingChannel:
    """클라이언트 하나와의 양방향 시그널링 채널.

    Attributes:
        channel_id (str): 채널 식별자 (UUID)
        websocket (WebSocket): 클라이언트 WebSocket 연결
        closed (bool): 종료 여부. 종료 후 보내는 메시지는 버려짐
    """

    def __init__(self, channel_id: str, websocket: WebSocket):
        self.channel_id = channel_id
        self.websocket = websocket
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue()

    def send(self, message: Dict[str, Any]) -> None:
        """메시지를 송신 큐에 넣습니다 (전달을 기다리지 않음)."""
        if self.closed:
            logger.debug(f"[Signaling] 종료된 채널 {self.channel_id[:8]}로의 메시지 무시: {message.get('type')}")
            return
        self._outbox.put_nowait(message)

    def notify(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.send({"type": event, "data": data or {}})

    def reply(self, request_id: Any, data: Any) -> None:
        self.send({"id": request_id, "type": "response", "data": data})

    def reply_error(self, request_id: Any, error: SignalingError) -> None:
        self.send({
            "id": request_id,
            "type": "response",
            "error": error.to_payload(),
            "data": {"error": error.message},
        })

    async def run_writer(self) -> None:
        """송신 큐를 비우며 WebSocket에 씁니다. close() 또는 전송 실패 시 종료합니다."""
        while True:
            message = await self._outbox.get()
            if message is _CLOSE:
                return
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"[Signaling] 채널 {self.channel_id[:8]} 전송 실패: {e}")
                self.closed = True
                return

    def close(self) -> None:
        """채널을 닫습니다. 이미 큐에 있는 메시지는 writer가 모두 보낸 뒤 종료합니다."""
        if self.closed:
            return
        self.closed = True
        self._outbox.put_nowait(_CLOSE)

    def __repr__(self) -> str:
        return f"SignalingChannel({self.channel_id[:8]})"
