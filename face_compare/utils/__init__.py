"""Utility functions for image processing"""
from .image import (
    ImageAcquirer,
    ImageProcessingError,
    InvalidUrlFormat,
    FetchTimeout,
    FetchError,
    DecodeTimeout,
    DecodeError,
    decode_base64_payload,
    decode_image_bytes,
    resize_image,
    validate_image_url
)

__all__ = [
    'ImageAcquirer',
    'ImageProcessingError',
    'InvalidUrlFormat',
    'FetchTimeout',
    'FetchError',
    'DecodeTimeout',
    'DecodeError',
    'decode_base64_payload',
    'decode_image_bytes',
    'resize_image',
    'validate_image_url'
]
