"""WebRTC 시그널링 WebSocket 라우터.

클라이언트 WebSocket 하나를 SignalingChannel 하나에 묶고, 들어오는 요청
프레임을 SignalingCoordinator로 전달해 결과를 응답으로 돌려줍니다.
"""

import json
import logging
import uuid
import asyncio
from typing import Any, Optional, TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from relay.session import FailureKind, SignalingChannel, SignalingError
from relay.shared import SignalingRequest

if TYPE_CHECKING:
    from relay.session import SignalingCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 코디네이터 참조 (app.py lifespan에서 설정됨)
_coordinator: Optional["SignalingCoordinator"] = None


def init_coordinator(coordinator: Optional["SignalingCoordinator"]):
    """코디네이터 인스턴스를 설정합니다.

    app.py lifespan에서 호출하여 글로벌 참조를 설정합니다 (종료 시 None).

    Args:
        coordinator: SignalingCoordinator 인스턴스
    """
    global _coordinator
    _coordinator = coordinator
    if coordinator is not None:
        logger.info("[Signaling] 시그널링 라우터 코디네이터 초기화 완료")


def get_coordinator() -> Optional["SignalingCoordinator"]:
    return _coordinator


def _request_id(raw: Any) -> Any:
    if isinstance(raw, dict):
        request_id = raw.get("id")
        if isinstance(request_id, (int, str)):
            return request_id
    return None


async def _handle_frame(coordinator: "SignalingCoordinator", channel: SignalingChannel, text: str) -> None:
    """요청 프레임 하나를 처리하고 정확히 하나의 응답을 채널에 넣습니다."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        channel.reply_error(None, SignalingError(FailureKind.INVALID_REQUEST, f"invalid JSON: {e}"))
        return

    request_id = _request_id(raw)
    try:
        request = SignalingRequest.model_validate(raw)
    except ValidationError as e:
        channel.reply_error(request_id, SignalingError(FailureKind.INVALID_REQUEST, str(e)))
        return

    try:
        result = await coordinator.handle(channel, request.type, request.data)
    except SignalingError as e:
        logger.info(f"[Signaling] {request.type} 실패 ({channel}): {e.kind.value}: {e.message}")
        channel.reply_error(request.id, e)
    except Exception as e:
        logger.error(f"[Signaling] {request.type} 처리 중 오류 ({channel}): {e}", exc_info=True)
        channel.reply_error(request.id, SignalingError(FailureKind.INTERNAL_ERROR, str(e)))
    else:
        channel.reply(request.id, result)


@router.websocket("/server")
async def signaling_endpoint(websocket: WebSocket):
    """미디어 릴레이 시그널링 WebSocket 엔드포인트.

    처리하는 이벤트:
        - getRouterRtpCapabilities
        - createProducerTransport / createConsumerTransport
        - connectProducerTransport / connectConsumerTransport
        - produce / consume / resume

    서버 알림:
        - newProducer: producer가 생겼을 때 (늦게 들어온 클라이언트 포함)
        - producerClosed: producer를 가진 클라이언트가 나갔을 때

    Args:
        websocket: FastAPI WebSocket 연결 객체
    """
    coordinator = _coordinator
    if coordinator is None:
        logger.error("[Signaling] 코디네이터가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    channel = SignalingChannel(str(uuid.uuid4()), websocket)
    writer = asyncio.create_task(channel.run_writer())
    logger.info(f"[Signaling] 클라이언트 연결됨: {channel.channel_id}")

    try:
        await coordinator.open_channel(channel)

        while True:
            text = await websocket.receive_text()
            await _handle_frame(coordinator, channel, text)

    except WebSocketDisconnect:
        logger.info(f"[Signaling] 클라이언트 연결 끊김: {channel.channel_id}")
    except Exception as e:
        logger.error(f"[Signaling] 채널 {channel.channel_id}의 WebSocket 연결 중 오류: {e}")
    finally:
        await coordinator.close_channel(channel.channel_id)
        channel.close()
        await writer
        logger.info(f"[Signaling] 채널 {channel.channel_id} 정리 완료")
