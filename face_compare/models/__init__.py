"""Data models and type definitions"""
from .types import (
    Confidence,
    RemoteUrl,
    InlineBase64,
    ImageSource,
    NormalizedImage,
    Match,
    CompareRequest,
    DetectRequest,
    ComparisonResult,
    DetectResult,
    ErrorResponse,
    HealthResponse
)

__all__ = [
    'Confidence',
    'RemoteUrl',
    'InlineBase64',
    'ImageSource',
    'NormalizedImage',
    'Match',
    'CompareRequest',
    'DetectRequest',
    'ComparisonResult',
    'DetectResult',
    'ErrorResponse',
    'HealthResponse'
]
