"""Comparison orchestration.

Drives a comparison through its stages: model check, validation, concurrent
acquisition of both images, concurrent detection, and descriptor comparison.
Both sides of a stage are always allowed to settle before the next stage
starts, even when one of them has already failed.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

import numpy as np

from ..config import Settings
from ..models.types import (
    ComparisonResult,
    DetectResult,
    InlineBase64,
    NormalizedImage,
    RemoteUrl,
)
from ..utils.image import ImageAcquirer, ImageProcessingError, validate_image_url
from .embedding import FaceEmbedder
from .matching import compare_descriptors

logger = logging.getLogger(__name__)

URL_SIDE = "url"
BASE64_SIDE = "base64"

SIDE_LABELS = {
    URL_SIDE: "URL image",
    BASE64_SIDE: "base64 image",
}


class ValidationError(ValueError):
    """Exception raised when a request is missing fields or malformed."""
    pass


class ImageAcquisitionFailed(ImageProcessingError):
    """Exception raised when one or both images could not be loaded.

    Attributes:
        failures: Map of side ("url", "base64") to the error it raised.
    """

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        message = "; ".join(
            f"{SIDE_LABELS[side]}: {error}" for side, error in failures.items()
        )
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Class name of the first failure."""
        return type(next(iter(self.failures.values()))).__name__


def elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


def no_face_message(url_found: bool, base64_found: bool) -> str:
    if not url_found and not base64_found:
        return "No face detected in both images"
    if not url_found:
        return "No face detected in URL image"
    return "No face detected in base64 image"


class ComparisonService:
    """Compares the face in a remote image with the face in an inline image."""

    def __init__(self, settings: Settings, embedder: FaceEmbedder, acquirer: ImageAcquirer):
        self.settings = settings
        self.embedder = embedder
        self.acquirer = acquirer

    def validate_compare_request(self, image_url: Optional[str], base64_image: Optional[str]) -> None:
        """Check both fields are present and the URL is http(s).

        Raises:
            ValidationError: If a field is missing or empty.
            InvalidUrlFormat: If the URL scheme is not accepted.
        """
        if not image_url or not base64_image:
            raise ValidationError("Both imageUrl and base64Image are required")
        validate_image_url(image_url)

    async def load_both(self, image_url: str, base64_image: str) -> Tuple[NormalizedImage, NormalizedImage]:
        """Fetch, decode and normalize both images concurrently.

        Raises:
            ImageAcquisitionFailed: If either side failed, after both settled.
        """
        results = await asyncio.gather(
            self.acquirer.load(RemoteUrl(image_url)),
            self.acquirer.load(InlineBase64(base64_image)),
            return_exceptions=True
        )

        failures = {}
        for side, result in zip((URL_SIDE, BASE64_SIDE), results):
            if isinstance(result, ImageProcessingError):
                logger.warning(f"Failed to load {SIDE_LABELS[side]}: {result}")
                failures[side] = result
            elif isinstance(result, BaseException):
                raise result

        if failures:
            raise ImageAcquisitionFailed(failures)
        return results[0], results[1]

    async def compare(self, image_url: Optional[str], base64_image: Optional[str],
                      started_at: Optional[float] = None) -> ComparisonResult:
        """Run a full comparison.

        Args:
            image_url: http(s) URL of the first image.
            base64_image: Base64 payload of the second image, optionally with
                a data URL prefix.
            started_at: ``time.perf_counter()`` at request entry.

        Returns:
            A successful comparison result. "No face" outcomes are results
            with ``match`` false and a message naming the side(s).

        Raises:
            ModelNotReady: If the detector is still loading.
            ValidationError: If a field is missing.
            InvalidUrlFormat: If the URL is not http(s).
            ImageAcquisitionFailed: If either image could not be loaded.
        """
        if started_at is None:
            started_at = time.perf_counter()
        threshold = self.settings.match_threshold

        self.embedder.ensure_ready()
        self.validate_compare_request(image_url, base64_image)

        stage_started = time.perf_counter()
        url_image, base64_image_data = await self.load_both(image_url, base64_image)
        acquire_ms = elapsed_ms(stage_started)

        stage_started = time.perf_counter()
        descriptors = await asyncio.gather(
            self.embedder.detect_async(url_image),
            self.embedder.detect_async(base64_image_data),
            return_exceptions=True
        )
        detect_ms = elapsed_ms(stage_started)
        for descriptor in descriptors:
            if isinstance(descriptor, BaseException):
                raise descriptor
        url_descriptor, base64_descriptor = descriptors

        if url_descriptor is None or base64_descriptor is None:
            logger.info(
                f"No face found (url={url_descriptor is not None}, "
                f"base64={base64_descriptor is not None}); "
                f"acquireMs={acquire_ms} detectMs={detect_ms}"
            )
            return {
                'success': True,
                'match': False,
                'threshold': threshold,
                'message': no_face_message(url_descriptor is not None, base64_descriptor is not None),
                'processingTimeMs': elapsed_ms(started_at)
            }

        stage_started = time.perf_counter()
        result = compare_descriptors(
            url_descriptor,
            base64_descriptor,
            threshold=threshold,
            medium_distance=self.settings.medium_confidence_distance
        )
        compare_ms = elapsed_ms(stage_started)

        logger.info(
            f"Comparison done: distance={result['distance']} match={result['match']}; "
            f"acquireMs={acquire_ms} detectMs={detect_ms} compareMs={compare_ms}"
        )

        return {
            'success': True,
            'match': result['match'],
            'distance': result['distance'],
            'similarity': result['similarity'],
            'threshold': threshold,
            'confidence': result['confidence'],
            'processingTimeMs': elapsed_ms(started_at)
        }

    async def detect(self, base64_image: Optional[str], started_at: Optional[float] = None) -> DetectResult:
        """Report whether an inline image contains a face.

        Raises:
            ModelNotReady: If the detector is still loading.
            ValidationError: If ``base64_image`` is missing.
            ImageAcquisitionFailed: If the image could not be decoded.
        """
        if started_at is None:
            started_at = time.perf_counter()

        self.embedder.ensure_ready()
        if not base64_image:
            raise ValidationError("base64Image is required")

        try:
            image = await self.acquirer.load(InlineBase64(base64_image))
        except ImageProcessingError as e:
            logger.warning(f"Failed to load {SIDE_LABELS[BASE64_SIDE]}: {e}")
            raise ImageAcquisitionFailed({BASE64_SIDE: e})

        descriptor: Optional[np.ndarray] = await self.embedder.detect_async(image)
        return {
            'faceFound': descriptor is not None,
            'processingTimeMs': elapsed_ms(started_at)
        }
