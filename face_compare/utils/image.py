"""Image acquisition and normalization utilities.

This module turns an image source (remote URL or inline base64) into a
decoded OpenCV image and downsamples it onto a small square canvas so that
face inference stays cheap.

Every step that can stall is deadline-bounded. Fetching is cancelled for real
when its deadline passes. Decoding runs in a worker thread and only the wait
is bounded: a slow ``cv2.imdecode`` keeps running after the caller has given
up on it.
"""

import asyncio
import base64
import logging
import re
import string
from typing import Optional

import cv2
import httpx
import numpy as np

from ..config import Settings
from ..models.types import ImageSource, InlineBase64, NormalizedImage, RemoteUrl

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,", re.IGNORECASE)
ALLOWED_SCHEMES = ("http://", "https://")

# Standard and URL-safe alphabets, both accepted when decoding.
_B64_ALPHABET = (string.ascii_letters + string.digits + "+/-_").encode("ascii")
_NOT_B64 = bytes(b for b in range(256) if b not in _B64_ALPHABET)
_URLSAFE_TO_STANDARD = bytes.maketrans(b"-_", b"+/")


class ImageProcessingError(Exception):
    """Base exception for image acquisition errors."""
    pass


class InvalidUrlFormat(ImageProcessingError, ValueError):
    """Exception raised when an image URL is not http(s)."""
    pass


class FetchTimeout(ImageProcessingError):
    """Exception raised when downloading an image exceeds its deadline."""
    pass


class FetchError(ImageProcessingError):
    """Exception raised when downloading an image fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DecodeTimeout(ImageProcessingError):
    """Exception raised when image decoding exceeds its deadline."""
    pass


class DecodeError(ImageProcessingError):
    """Exception raised when bytes cannot be read as an image."""
    pass


def validate_image_url(url: str) -> str:
    """Reject anything that is not an http:// or https:// URL.

    Raises:
        InvalidUrlFormat: If the scheme is missing or unsupported.
    """
    if not url.startswith(ALLOWED_SCHEMES):
        raise InvalidUrlFormat("Invalid URL format. URL must start with http:// or https://")
    return url


def strip_data_url_prefix(base64_string: str) -> str:
    """Remove a leading ``data:image/<type>;base64,`` prefix if present."""
    return DATA_URL_PREFIX.sub("", base64_string, count=1)


def lenient_b64decode(base64_string: str) -> bytes:
    """Decode base64 without ever raising.

    Characters outside the base64 alphabets are skipped, decoding stops at the
    first padding character and a dangling partial quantum is dropped. Garbage
    in gives garbage bytes out; the image decoder rejects them later.
    """
    # Whole-buffer C passes; no per-character Python loop
    raw = base64_string.encode("ascii", "ignore")
    head = raw.partition(b"=")[0]
    cleaned = head.translate(_URLSAFE_TO_STANDARD, _NOT_B64)

    remainder = len(cleaned) % 4
    if remainder == 1:
        cleaned = cleaned[:-1]
    elif remainder:
        cleaned += b"=" * (4 - remainder)

    return base64.b64decode(cleaned)


def decode_base64_payload(base64_string: str) -> bytes:
    """Strip an optional data URL prefix and decode the rest permissively.

    Example formats:
        - "data:image/jpeg;base64,/9j/4AAQSkZ..."
        - "/9j/4AAQSkZ..." (without prefix)
    """
    return lenient_b64decode(strip_data_url_prefix(base64_string))


def decode_image_bytes(image_bytes: bytes) -> np.ndarray:
    """Decode raw bytes to an OpenCV image in BGR format.

    Raises:
        DecodeError: If the data cannot be read as an image.
    """
    if not image_bytes:
        raise DecodeError("Failed to decode image data: empty buffer")

    nparr = np.frombuffer(image_bytes, np.uint8)
    try:
        image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise DecodeError(f"Failed to decode image data: {str(e)}")
    if image is None or image.size == 0:
        raise DecodeError("Failed to decode image data")
    return image


def resize_image(image: np.ndarray, max_size: int = 128) -> NormalizedImage:
    """Scale an image onto a ``max_size`` x ``max_size`` canvas.

    The uniform factor ``min(max_size / width, max_size / height)`` keeps the
    aspect ratio. Content is drawn at the top-left corner and the remainder
    of the canvas stays black.

    Note:
        Uses nearest-neighbour interpolation. Quality is traded for speed.
    """
    height, width = image.shape[:2]
    if width <= 0 or height <= 0:
        raise ValueError("Cannot resize an image with a zero dimension")

    scale = min(max_size / width, max_size / height)
    # Integer floor of dimension * scale; the limiting axis lands exactly on max_size
    if width >= height:
        new_width, new_height = max_size, max(1, height * max_size // width)
    else:
        new_width, new_height = max(1, width * max_size // height), max_size

    resized = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_NEAREST)

    canvas = np.zeros((max_size, max_size) + image.shape[2:], dtype=image.dtype)
    canvas[:new_height, :new_width] = resized

    return NormalizedImage(pixels=canvas, width=new_width, height=new_height, scale=scale)


class ImageAcquirer:
    """Resolves image sources to decoded, normalized images.

    Args:
        settings: Timeouts and normalization size.
        transport: Optional httpx transport, used to stub remote hosts.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    async def fetch(self, url: str) -> bytes:
        """Download ``url`` and return the response body.

        Raises:
            InvalidUrlFormat: If the URL scheme is not http(s).
            FetchTimeout: If the download exceeds ``fetch_timeout``.
            FetchError: On transport errors, non-2xx responses and bodies
                larger than ``max_image_bytes``.
        """
        validate_image_url(url)

        async with httpx.AsyncClient(
            transport=self.transport,
            follow_redirects=True,
            timeout=None,
        ) as client:
            try:
                # Cancelling the download task closes its connection.
                return await asyncio.wait_for(
                    self._download(client, url),
                    timeout=self.settings.fetch_timeout
                )
            except asyncio.TimeoutError:
                raise FetchTimeout(
                    f"Image fetch timed out after {int(self.settings.fetch_timeout * 1000)}ms"
                )
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise FetchError(f"Failed to fetch image: {str(e)}")

    async def _download(self, client: httpx.AsyncClient, url: str) -> bytes:
        """Stream the body, giving up once it passes ``max_image_bytes``."""
        limit = self.settings.max_image_bytes
        too_large = f"Failed to fetch image: body exceeds {limit} bytes"

        async with client.stream("GET", url) as response:
            if not response.is_success:
                raise FetchError(
                    f"Failed to fetch image: HTTP {response.status_code}",
                    status=response.status_code
                )

            content_length = response.headers.get("content-length", "")
            if content_length.isdigit() and int(content_length) > limit:
                raise FetchError(too_large, status=response.status_code)

            chunks = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > limit:
                    raise FetchError(too_large, status=response.status_code)
                chunks.append(chunk)

        return b"".join(chunks)

    async def decode(self, image_bytes: bytes) -> np.ndarray:
        """Decode image bytes off the event loop, bounded by ``decode_timeout``.

        Raises:
            DecodeTimeout: If decoding exceeds its deadline. The worker thread
                is not interrupted and finishes in the background.
            DecodeError: If the bytes are not a readable image.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(decode_image_bytes, image_bytes),
                timeout=self.settings.decode_timeout
            )
        except asyncio.TimeoutError:
            raise DecodeTimeout(
                f"Image decode timed out after {int(self.settings.decode_timeout * 1000)}ms"
            )

    async def acquire(self, source: ImageSource) -> np.ndarray:
        """Resolve a source into a decoded BGR image."""
        if isinstance(source, RemoteUrl):
            image_bytes = await self.fetch(source.url)
        elif isinstance(source, InlineBase64):
            image_bytes = await asyncio.to_thread(decode_base64_payload, source.data)
        else:
            raise TypeError(f"Unsupported image source: {type(source).__name__}")

        return await self.decode(image_bytes)

    async def load(self, source: ImageSource) -> NormalizedImage:
        """Acquire a source and normalize it straight away."""
        image = await self.acquire(source)
        logger.debug(f"Decoded image {image.shape[1]}x{image.shape[0]}")
        return resize_image(image, self.settings.max_image_size)
