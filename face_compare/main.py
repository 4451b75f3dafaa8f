import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.middleware import BodySizeLimitMiddleware, RequestBodyTooLarge, payload_too_large, request_elapsed_ms
from .api.routes import router
from .config import Settings, get_settings
from .core.comparison import ComparisonService
from .core.embedding import FaceEmbedder
from .utils.image import ImageAcquirer

logger = logging.getLogger(__name__)


async def load_models(embedder: FaceEmbedder) -> None:
    """Load the face models in a worker thread; exit the process on failure."""
    started_at = time.perf_counter()
    try:
        await asyncio.to_thread(embedder.load)
    except Exception:
        logger.critical("Failed to load face models, shutting down", exc_info=True)
        os._exit(1)
    logger.info(f"Face models ready in {time.perf_counter() - started_at:.2f}s")


def create_app(
    settings: Optional[Settings] = None,
    embedder: Optional[FaceEmbedder] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """Build the application.

    Args:
        settings: Defaults to the environment-derived settings.
        embedder: Face embedder to use; a new, unloaded one by default.
        transport: httpx transport for image downloads.
    """
    settings = settings or get_settings()
    embedder = embedder or FaceEmbedder(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        load_task = None
        if settings.load_model_on_startup and not embedder.is_ready:
            load_task = asyncio.create_task(load_models(embedder))
        yield
        if load_task is not None and not load_task.done():
            load_task.cancel()

    # Initialize FastAPI app
    app = FastAPI(title="Face Compare", lifespan=lifespan)
    app.state.settings = settings
    app.state.embedder = embedder
    app.state.service = ComparisonService(settings, embedder, ImageAcquirer(settings, transport))
    app.state.started_at = time.monotonic()

    # Enable CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)

        process_time = time.perf_counter() - start_time
        logger.info(f"{request.method} {request.url.path} - {response.status_code} - {process_time:.3f}s")
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc, RequestBodyTooLarge):
            return payload_too_large(request.scope, exc.detail)
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={
                    'error': "Not Found",
                    'path': request.url.path,
                    'message': f"Route {request.method} {request.url.path} not found"
                }
            )
        return JSONResponse(status_code=exc.status_code, content={'error': exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Malformed request body: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={
                'success': False,
                'error': "Invalid request",
                'message': "Request body must be a JSON object with string fields",
                'processingTimeMs': request_elapsed_ms(request.scope)
            }
        )

    # Outermost, so the request start time and byte count cover everything
    app.add_middleware(BodySizeLimitMiddleware, max_body_size=settings.max_body_size)

    # Mount routes
    app.include_router(router)

    return app


def run() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    import uvicorn
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    run()
