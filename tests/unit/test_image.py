"""
Image acquisition and normalization tests
"""
import asyncio
import base64
import time
from unittest.mock import patch

import httpx
import numpy as np
import pytest

from face_compare.models.types import InlineBase64, RemoteUrl
from face_compare.utils.image import (
    DecodeError,
    DecodeTimeout,
    FetchError,
    FetchTimeout,
    ImageAcquirer,
    InvalidUrlFormat,
    decode_base64_payload,
    decode_image_bytes,
    lenient_b64decode,
    resize_image,
    strip_data_url_prefix,
    validate_image_url,
)
from tests.conftest import BLUE, RED, make_base64, make_png


class TestBase64Decoding:

    def test_strip_prefix(self):
        assert strip_data_url_prefix("data:image/png;base64,iVBORw0KG==") == "iVBORw0KG=="
        assert strip_data_url_prefix("data:image/jpeg;base64,/9j/4AAQSkZJRg==") == "/9j/4AAQSkZJRg=="

    def test_strip_prefix_case_insensitive(self):
        assert strip_data_url_prefix("data:image/PNG;base64,abcd") == "abcd"

    def test_strip_prefix_only_at_start(self):
        assert strip_data_url_prefix("abcd") == "abcd"

    def test_plain_decode(self):
        assert lenient_b64decode("aGVsbG8gd29ybGQ=") == b"hello world"

    def test_missing_padding(self):
        assert lenient_b64decode("aGVsbG8gd29ybGQ") == b"hello world"

    def test_whitespace_ignored(self):
        assert lenient_b64decode("aGVs\nbG8g d29y\tbGQ=") == b"hello world"

    def test_non_ascii_ignored(self):
        assert lenient_b64decode("aGVs\u00e9bG8g\u2603d29ybGQ=") == b"hello world"

    def test_urlsafe_alphabet(self):
        assert lenient_b64decode("-_8") == base64.b64decode("+/8=")

    @pytest.mark.parametrize("garbage", ["!!!invalid!!!", "", "=", "a", "%%%%", "ab=cd"])
    def test_never_raises(self, garbage):
        assert isinstance(lenient_b64decode(garbage), bytes)

    def test_prefixed_payload_decodes_identically(self):
        prefixed = make_base64(RED, prefix=True)
        plain = make_base64(RED)
        assert decode_base64_payload(prefixed) == decode_base64_payload(plain)
        assert decode_base64_payload(plain) == make_png(RED)


class TestImageDecoding:

    def test_decode_png(self):
        image = decode_image_bytes(make_png(BLUE, width=30, height=20))
        assert image.shape == (20, 30, 3)
        assert tuple(image[0, 0]) == BLUE

    def test_decode_garbage(self):
        with pytest.raises(DecodeError):
            decode_image_bytes(lenient_b64decode("!!!invalid!!!"))

    def test_decode_empty(self):
        with pytest.raises(DecodeError):
            decode_image_bytes(b"")


class TestResize:

    @pytest.mark.parametrize("width,height,expected", [
        (400, 200, (128, 64)),
        (200, 400, (64, 128)),
        (128, 128, (128, 128)),
        (50, 25, (128, 64)),
        (1000, 750, (128, 96)),
    ])
    def test_dimensions(self, width, height, expected):
        image = np.zeros((height, width, 3), dtype=np.uint8)
        normalized = resize_image(image, 128)
        assert (normalized.width, normalized.height) == expected
        assert normalized.pixels.shape == (128, 128, 3)

    @pytest.mark.parametrize("width,height", [(640, 480), (300, 1000), (1000, 500), (1920, 1080)])
    def test_bounds_and_aspect(self, width, height):
        image = np.zeros((height, width, 3), dtype=np.uint8)
        normalized = resize_image(image, 128)
        assert normalized.width <= 128 and normalized.height <= 128
        assert max(normalized.width, normalized.height) == 128
        assert round(normalized.width / normalized.height, 2) == round(width / height, 2)

    def test_content_at_origin(self):
        image = np.full((100, 200, 3), 255, dtype=np.uint8)
        normalized = resize_image(image, 128)
        assert normalized.pixels[:64, :128].min() == 255
        assert normalized.pixels[64:, :].max() == 0

    def test_zero_dimension(self):
        with pytest.raises(ValueError):
            resize_image(np.zeros((0, 10, 3), dtype=np.uint8))


class TestUrlValidation:

    def test_accepts_http_and_https(self):
        assert validate_image_url("http://example.com/image.jpg")
        assert validate_image_url("https://example.com/image.jpg")

    @pytest.mark.parametrize("url", ["ftp://example.com/image.jpg", "example.com/a.jpg", "file:///etc/passwd", ""])
    def test_rejects_other_schemes(self, url):
        with pytest.raises(InvalidUrlFormat):
            validate_image_url(url)


class TestImageAcquirer:

    def test_fetch_success(self, settings, image_host):
        image_host.serve("https://img.test/a.png", make_png(RED))
        acquirer = ImageAcquirer(settings, image_host.transport)

        normalized = asyncio.run(acquirer.load(RemoteUrl("https://img.test/a.png")))

        assert tuple(normalized.pixels[0, 0]) == RED
        assert (normalized.width, normalized.height) == (128, 128)

    def test_fetch_non_2xx(self, settings, image_host):
        image_host.serve("https://img.test/missing.png", status_code=404)
        acquirer = ImageAcquirer(settings, image_host.transport)

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(acquirer.fetch("https://img.test/missing.png"))
        assert exc_info.value.status == 404

    def test_fetch_transport_error(self, settings, image_host):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        image_host.serve_handler("https://img.test/down.png", refuse)
        acquirer = ImageAcquirer(settings, image_host.transport)

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(acquirer.fetch("https://img.test/down.png"))
        assert exc_info.value.status is None

    def test_fetch_timeout_cancels_request(self, settings, image_host):
        state = {'cancelled': False}

        async def hang(request):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                state['cancelled'] = True
                raise
            return httpx.Response(200)

        image_host.serve_handler("https://img.test/slow.png", hang)
        settings.fetch_timeout = 0.05
        acquirer = ImageAcquirer(settings, image_host.transport)

        started = time.perf_counter()
        with pytest.raises(FetchTimeout):
            asyncio.run(acquirer.fetch("https://img.test/slow.png"))
        assert time.perf_counter() - started < 2
        assert state['cancelled']

    def test_invalid_scheme_makes_no_request(self, settings, image_host):
        acquirer = ImageAcquirer(settings, image_host.transport)

        with pytest.raises(InvalidUrlFormat):
            asyncio.run(acquirer.fetch("ftp://img.test/a.png"))
        assert image_host.requests == []

    def test_inline_garbage_fails_at_decode(self, settings):
        acquirer = ImageAcquirer(settings)

        with pytest.raises(DecodeError):
            asyncio.run(acquirer.acquire(InlineBase64("!!!invalid!!!")))

    def test_inline_with_prefix(self, settings):
        acquirer = ImageAcquirer(settings)

        image = asyncio.run(acquirer.acquire(InlineBase64(make_base64(BLUE, 40, 20, prefix=True))))
        assert image.shape == (20, 40, 3)

    def test_decode_timeout(self, settings):
        settings.decode_timeout = 0.05
        acquirer = ImageAcquirer(settings)

        def slow_decode(image_bytes):
            time.sleep(0.3)
            return np.zeros((10, 10, 3), dtype=np.uint8)

        with patch("face_compare.utils.image.decode_image_bytes", side_effect=slow_decode):
            with pytest.raises(DecodeTimeout):
                asyncio.run(acquirer.decode(b"anything"))

    def test_unknown_source(self, settings):
        acquirer = ImageAcquirer(settings)

        with pytest.raises(TypeError):
            asyncio.run(acquirer.acquire("https://img.test/a.png"))

    def test_fetch_rejects_large_declared_body(self, settings, image_host):
        image_host.serve("https://img.test/huge.png", b"\x00" * 4096)
        settings.max_image_bytes = 1024
        acquirer = ImageAcquirer(settings, image_host.transport)

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(acquirer.fetch("https://img.test/huge.png"))
        assert "exceeds 1024 bytes" in str(exc_info.value)

    def test_fetch_stops_streamed_body_at_limit(self, settings, image_host):
        sent = []

        async def body():
            for _ in range(100):
                sent.append(1)
                yield b"\x00" * 512

        image_host.serve_handler("https://img.test/stream.png", lambda request: httpx.Response(200, content=body()))
        settings.max_image_bytes = 1024
        acquirer = ImageAcquirer(settings, image_host.transport)

        with pytest.raises(FetchError) as exc_info:
            asyncio.run(acquirer.fetch("https://img.test/stream.png"))
        assert "exceeds 1024 bytes" in str(exc_info.value)
        assert len(sent) < 100

    def test_inline_decode_keeps_loop_responsive(self, settings):
        payload = "QUJD" * 2_500_000
        acquirer = ImageAcquirer(settings)

        async def scenario():
            gaps = []
            stop = asyncio.Event()

            async def ticker():
                last = time.perf_counter()
                while not stop.is_set():
                    await asyncio.sleep(0.01)
                    now = time.perf_counter()
                    gaps.append(now - last)
                    last = now

            task = asyncio.ensure_future(ticker())
            await asyncio.sleep(0.02)
            with pytest.raises(DecodeError):
                await acquirer.acquire(InlineBase64(payload))
            stop.set()
            await task
            return max(gaps)

        assert asyncio.run(scenario()) < 0.25
