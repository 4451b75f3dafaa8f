"""Core face detection and matching functionality"""
from .embedding import FaceEmbedder, ModelHandle, ModelNotReady
from .matching import compare_descriptors, confidence_band, similarity_from_distance
from .comparison import ComparisonService, ImageAcquisitionFailed, ValidationError

__all__ = [
    'FaceEmbedder',
    'ModelHandle',
    'ModelNotReady',
    'compare_descriptors',
    'confidence_band',
    'similarity_from_distance',
    'ComparisonService',
    'ImageAcquisitionFailed',
    'ValidationError'
]
