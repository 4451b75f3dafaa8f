"""Face comparison API routes.

This module provides the HTTP endpoints of the service: health reporting,
two-image face comparison and single-image face detection.

Comparison and detection run under a per-request deadline. When the deadline
passes first, a 408 is sent straight away and the work carries on in the
background; its eventual response is dropped by the request's
``ResponseGuard``.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from ..config import Settings
from ..core.comparison import ComparisonService, ImageAcquisitionFailed, ValidationError
from ..core.embedding import ModelNotReady
from ..models.types import CompareRequest, DetectRequest, ErrorResponse, HealthResponse
from ..utils.image import InvalidUrlFormat

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter()


class ResponseGuard:
    """Tracks whether a response has already been produced for a request."""

    def __init__(self, started_at: Optional[float] = None):
        self.started_at = time.perf_counter() if started_at is None else started_at
        self._sent = False

    @property
    def headers_sent(self) -> bool:
        return self._sent

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)

    def send(self, status_code: int, content: Dict[str, Any]) -> Optional[JSONResponse]:
        """Build the response, or return None if one was already sent."""
        if self._sent:
            logger.debug(f"Response already sent, dropping {status_code}")
            return None
        self._sent = True
        return JSONResponse(status_code=status_code, content=content)

    def error(self, status_code: int, error: str, message: str) -> Optional[JSONResponse]:
        body: ErrorResponse = {
            'success': False,
            'error': error,
            'message': message,
            'processingTimeMs': self.elapsed_ms()
        }
        return self.send(status_code, body)


def get_service(request: Request) -> ComparisonService:
    return request.app.state.service


def settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def _report_late_completion(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Request failed after timing out: {error}")
    else:
        logger.warning("Request completed after timing out; response discarded")


async def run_with_deadline(
    guard: ResponseGuard,
    handler: Callable[[ResponseGuard], Awaitable[Optional[JSONResponse]]],
    timeout: float
) -> JSONResponse:
    """Run ``handler`` and answer 408 if it has not finished in ``timeout``.

    The handler is not cancelled on timeout; it is left to settle on its own.
    """
    task = asyncio.ensure_future(handler(guard))
    done, _ = await asyncio.wait({task}, timeout=timeout)

    if task in done:
        response = task.result()
        if response is not None:
            return response

    response = guard.error(
        status.HTTP_408_REQUEST_TIMEOUT,
        "Request timeout",
        f"Request did not complete within {int(timeout * 1000)}ms"
    )
    if not task.done():
        logger.warning(f"Request timed out after {guard.elapsed_ms()}ms")
        task.add_done_callback(_report_late_completion)
    return response


def handle_failure(guard: ResponseGuard, e: Exception) -> Optional[JSONResponse]:
    """Map an exception from the comparison service to an error response."""
    if isinstance(e, ModelNotReady):
        return guard.error(status.HTTP_503_SERVICE_UNAVAILABLE, "Model not ready", str(e))
    if isinstance(e, (ValidationError, InvalidUrlFormat)):
        logger.warning(f"Validation error: {str(e)}")
        return guard.error(status.HTTP_400_BAD_REQUEST, "Invalid request", str(e))
    if isinstance(e, ImageAcquisitionFailed):
        return guard.error(status.HTTP_500_INTERNAL_SERVER_ERROR, e.kind, str(e))

    logger.error("Unexpected error", exc_info=e)
    return guard.error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", str(e))


@router.get("/health")
async def health(request: Request) -> HealthResponse:
    """Report whether the face models are loaded.

    Returns:
        Dictionary containing:
            - status: "ready" or "loading"
            - timestamp: Current time, ISO 8601 in UTC
            - uptime: Seconds since the app was created
    """
    embedder = request.app.state.embedder
    now = datetime.now(timezone.utc)
    return {
        'status': 'ready' if embedder.is_ready else 'loading',
        'timestamp': now.isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
        'uptime': int(time.monotonic() - request.app.state.started_at)
    }


@router.post("/compare")
async def compare_faces(
    request_data: CompareRequest,
    service: ComparisonService = Depends(get_service),
    settings: Settings = Depends(settings_from_app)
) -> JSONResponse:
    """Compare the face in a remote image with the face in an inline image.

    Args:
        request_data: Dictionary containing:
            - imageUrl: http(s) URL of the first image
            - base64Image: Base64 string of the second image, with or
              without a data URL prefix

    Returns:
        200 with the comparison result, including "no face detected"
        outcomes. 400 for missing fields or a non-http(s) URL, 503 while the
        models are loading, 500 when an image cannot be fetched or decoded,
        408 when the request deadline passes.
    """
    guard = ResponseGuard()

    async def handler(guard: ResponseGuard) -> Optional[JSONResponse]:
        try:
            result = await service.compare(
                request_data.get('imageUrl'),
                request_data.get('base64Image'),
                started_at=guard.started_at
            )
        except Exception as e:
            return handle_failure(guard, e)
        return guard.send(status.HTTP_200_OK, result)

    return await run_with_deadline(guard, handler, settings.request_timeout)


@router.post("/detect")
async def detect_face(
    request_data: DetectRequest,
    service: ComparisonService = Depends(get_service),
    settings: Settings = Depends(settings_from_app)
) -> JSONResponse:
    """Check whether an inline image contains a face.

    Args:
        request_data: Dictionary containing:
            - base64Image: Base64 string of the image

    Returns:
        Dictionary containing faceFound and processingTimeMs.
    """
    guard = ResponseGuard()

    async def handler(guard: ResponseGuard) -> Optional[JSONResponse]:
        try:
            result = await service.detect(
                request_data.get('base64Image'),
                started_at=guard.started_at
            )
        except Exception as e:
            return handle_failure(guard, e)
        return guard.send(status.HTTP_200_OK, result)

    return await run_with_deadline(guard, handler, settings.request_timeout)
