"""Request body size limit.

A pure ASGI middleware, so it sees every ``http.request`` message as it
arrives. Bodies announced with a large ``Content-Length`` are rejected before
anything is read; chunked bodies are counted as they stream in and rejected
as soon as the running total passes the limit.
"""

import logging
import time

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)


class RequestBodyTooLarge(HTTPException):
    """Raised from ``receive`` once a request body passes the size limit."""

    def __init__(self, max_body_size: int):
        super().__init__(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body exceeds {max_body_size} bytes"
        )


def request_elapsed_ms(scope: Scope) -> int:
    """Milliseconds since the request entered the app."""
    started_at = scope.get("state", {}).get("started_at")
    if started_at is None:
        return 0
    return int((time.perf_counter() - started_at) * 1000)


def payload_too_large(scope: Scope, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        content={
            'success': False,
            'error': "Payload too large",
            'message': message,
            'processingTimeMs': request_elapsed_ms(scope)
        }
    )


class BodySizeLimitMiddleware:

    def __init__(self, app: ASGIApp, max_body_size: int):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope.setdefault("state", {})["started_at"] = time.perf_counter()

        content_length = Headers(scope=scope).get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_body_size:
            logger.warning(f"Rejected {scope['method']} {scope['path']}: body of {content_length} bytes")
            response = payload_too_large(scope, f"Request body exceeds {self.max_body_size} bytes")
            await response(scope, receive, send)
            return

        received = 0
        response_started = False

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_size:
                    logger.warning(
                        f"Rejected {scope['method']} {scope['path']}: streamed body passed "
                        f"{self.max_body_size} bytes"
                    )
                    raise RequestBodyTooLarge(self.max_body_size)
            return message

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracking_send)
        except RequestBodyTooLarge as e:
            # Normally turned into a response by the exception handlers
            if response_started:
                raise
            await payload_too_large(scope, e.detail)(scope, receive, send)
