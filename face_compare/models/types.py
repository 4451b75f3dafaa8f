"""Data models and type definitions"""
from dataclasses import dataclass
from typing import Literal, Optional, Union

import numpy as np
from typing_extensions import NotRequired, TypedDict

Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class RemoteUrl:
    url: str


@dataclass(frozen=True)
class InlineBase64:
    data: str


ImageSource = Union[RemoteUrl, InlineBase64]


@dataclass
class NormalizedImage:
    """Image drawn at the top-left of a ``max_size`` x ``max_size`` canvas.

    ``width`` and ``height`` are the dimensions of the scaled content; the rest
    of the canvas is zero-filled.
    """
    pixels: np.ndarray
    width: int
    height: int
    scale: float


class Match(TypedDict):
    distance: float
    similarity: float
    match: bool
    confidence: Confidence


class CompareRequest(TypedDict, total=False):
    imageUrl: Optional[str]
    base64Image: Optional[str]


class DetectRequest(TypedDict, total=False):
    base64Image: Optional[str]


class ComparisonResult(TypedDict):
    success: bool
    match: bool
    threshold: float
    processingTimeMs: int
    distance: NotRequired[float]
    similarity: NotRequired[float]
    confidence: NotRequired[Confidence]
    message: NotRequired[str]


class DetectResult(TypedDict):
    faceFound: bool
    processingTimeMs: int


class ErrorResponse(TypedDict):
    success: bool
    error: str
    message: str
    processingTimeMs: int


class HealthResponse(TypedDict):
    status: Literal["ready", "loading"]
    timestamp: str
    uptime: int
