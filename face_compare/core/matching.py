"""Descriptor distance and match classification."""

from typing import Sequence, Union

import numpy as np

from ..models.types import Confidence, Match

Descriptor = Union[np.ndarray, Sequence[float]]

MATCH_THRESHOLD = 0.5
MEDIUM_CONFIDENCE_DISTANCE = 0.7


def euclidean_distance(descriptor1: Descriptor, descriptor2: Descriptor) -> float:
    """Euclidean distance between two descriptors of equal length."""
    a = np.asarray(descriptor1, dtype=np.float64)
    b = np.asarray(descriptor2, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


def similarity_from_distance(distance: float) -> float:
    """Map a distance to a 0-100 percentage, ``(1 - distance) * 100``.

    This is a linear heuristic, not a calibrated probability. It is only
    meaningful for the roughly 0-1.2 range the face encoder produces.
    """
    return round(max(0.0, min(100.0, (1 - distance) * 100)), 2)


def confidence_band(distance: float,
                    threshold: float = MATCH_THRESHOLD,
                    medium_distance: float = MEDIUM_CONFIDENCE_DISTANCE) -> Confidence:
    """Classify a distance as high, medium or low confidence."""
    if distance < threshold:
        return "high"
    if distance < medium_distance:
        return "medium"
    return "low"


def compare_descriptors(descriptor1: Descriptor,
                        descriptor2: Descriptor,
                        threshold: float = MATCH_THRESHOLD,
                        medium_distance: float = MEDIUM_CONFIDENCE_DISTANCE) -> Match:
    """Compare two face descriptors.

    Args:
        descriptor1: First face descriptor.
        descriptor2: Second face descriptor.
        threshold: Distances strictly below this are a match.
        medium_distance: Non-matching distances below this are "medium".

    Returns:
        Distance (4 decimals), similarity percentage (2 decimals), match flag
        and confidence band.
    """
    distance = round(euclidean_distance(descriptor1, descriptor2), 4)
    match = distance < threshold

    return {
        'distance': distance,
        'similarity': similarity_from_distance(distance),
        'match': bool(match),
        'confidence': confidence_band(distance, threshold, medium_distance)
    }
