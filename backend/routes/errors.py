"""HTTP 에러 핸들러.

처리되지 않은 예외를 상태 코드와 평문 메시지로 변환합니다.
TypeError(타입 불일치)는 400, 그 밖의 예외는 500입니다.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

logger = logging.getLogger(__name__)


async def unhandled_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    status_code = 400 if isinstance(exc, TypeError) else 500
    logger.warning(f"[HTTP] {request.method} {request.url.path} → {status_code}: {exc!r}")
    return PlainTextResponse(str(exc), status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Exception, unhandled_exception_handler)
