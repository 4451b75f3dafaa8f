"""
pytest configuration and shared fixtures
"""
import base64
from typing import Callable, Dict, Optional, Tuple

import cv2
import httpx
import numpy as np
import pytest
from fastapi.testclient import TestClient

from face_compare.config import Settings
from face_compare.core.embedding import FaceEmbedder
from face_compare.main import create_app
from face_compare.models.types import NormalizedImage

# Solid BGR colours stand in for faces: the fake embedder maps the colour of
# the top-left pixel to a descriptor.
RED = (0, 0, 255)
ORANGE = (0, 128, 255)
BLUE = (255, 0, 0)
GRAY = (128, 128, 128)
BLACK = (0, 0, 0)


def descriptor(offset: float = 0.0) -> np.ndarray:
    vector = np.zeros(128)
    vector[0] = offset
    return vector


DESCRIPTORS: Dict[Tuple[int, int, int], np.ndarray] = {
    RED: descriptor(0.0),
    ORANGE: descriptor(0.3),
    BLUE: descriptor(0.6),
    GRAY: descriptor(0.8),
}


def make_png(color=RED, width: int = 64, height: int = 64) -> bytes:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :] = color
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


def make_base64(color=RED, width: int = 64, height: int = 64, prefix: bool = False) -> str:
    payload = base64.b64encode(make_png(color, width, height)).decode("ascii")
    return f"data:image/png;base64,{payload}" if prefix else payload


class FakeEmbedder(FaceEmbedder):
    """Embedder that looks up descriptors by colour instead of running models."""

    def __init__(self, settings: Settings, ready: bool = True):
        super().__init__(settings)
        self.calls = 0
        if ready:
            self.handle.publish(object())

    def load(self) -> None:
        self.handle.publish(object())

    def detect(self, image: NormalizedImage) -> Optional[np.ndarray]:
        self.handle.get()
        self.calls += 1
        color = tuple(int(v) for v in image.pixels[0, 0])
        found = DESCRIPTORS.get(color)
        return None if found is None else found.copy()


class ImageHost:
    """Stand-in for remote image servers, served through httpx.MockTransport."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests = []

    def serve(self, url: str, content: bytes = b"", status_code: int = 200) -> None:
        self.routes[url] = lambda request: httpx.Response(status_code, content=content)

    def serve_handler(self, url: str, handler) -> None:
        self.routes[url] = handler

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404)
        response = handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        load_model_on_startup=False,
        fetch_timeout=2.0,
        decode_timeout=2.0,
        request_timeout=10.0,
    )


@pytest.fixture
def embedder(settings):
    return FakeEmbedder(settings)


@pytest.fixture
def image_host():
    return ImageHost()


@pytest.fixture
def app(settings, embedder, image_host):
    return create_app(settings=settings, embedder=embedder, transport=image_host.transport)


@pytest.fixture
def client(app):
    return TestClient(app)
