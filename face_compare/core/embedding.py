"""Face detection and descriptor extraction.

This module wraps the models behind the comparison service: an OpenCV DNN
SSD face detector, loaded once from the model directory, and the
``face_recognition`` (dlib) encoder that turns a detected face into a
128-dimensional descriptor.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Optional, Tuple

import cv2
import numpy as np

from ..config import Settings
from ..models.types import NormalizedImage

logger = logging.getLogger(__name__)

PROTOTXT_FILE = "deploy.prototxt"
CAFFEMODEL_FILE = "res10_300x300_ssd_iter_140000.caffemodel"

# BGR channel means the SSD detector was trained with
MEAN_VALUES = (104.0, 177.0, 123.0)


class EmbeddingError(Exception):
    """Base exception for face embedding errors."""
    pass


class ModelNotReady(EmbeddingError):
    """Exception raised when the detection model has not been loaded yet."""
    pass


class ModelHandle:
    """Write-once holder for a loaded model.

    ``publish`` stores the model and then sets an event, so any thread or
    event loop turn that sees ``is_ready()`` also sees the model.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._model: Any = None

    def publish(self, model: Any) -> None:
        with self._lock:
            if self._ready.is_set():
                raise RuntimeError("Model has already been published")
            self._model = model
            self._ready.set()

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def get(self) -> Any:
        """Return the model or raise ``ModelNotReady``."""
        if not self._ready.is_set():
            raise ModelNotReady("Face detection models are still loading")
        return self._model


class FaceEmbedder:
    """Detects at most one face per image and returns its descriptor."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.handle = ModelHandle()
        # cv2.dnn.Net keeps per-call state between setInput and forward
        self._net_lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self.handle.is_ready()

    def ensure_ready(self) -> None:
        """Raise ``ModelNotReady`` unless the model is loaded."""
        self.handle.get()

    def load(self) -> None:
        """Load the SSD detector from ``settings.model_dir`` and the face encoder.

        Blocking; call it from a worker thread.

        Raises:
            FileNotFoundError: If the model files are missing.
        """
        model_dir = Path(self.settings.model_dir)
        prototxt = model_dir / PROTOTXT_FILE
        caffemodel = model_dir / CAFFEMODEL_FILE
        for path in (prototxt, caffemodel):
            if not path.is_file():
                raise FileNotFoundError(f"Model file not found: {path}")

        logger.info(f"Loading face detector from {model_dir}")
        net = cv2.dnn.readNetFromCaffe(str(prototxt), str(caffemodel))

        # Importing face_recognition loads the dlib landmark and encoder models.
        import face_recognition  # noqa: F401
        self.handle.publish(net)
        logger.info("Face detector and encoder loaded")

    def locate_face(self, image: np.ndarray) -> Optional[Tuple[int, int, int, int]]:
        """Find the first face the detector reports above the score threshold.

        Args:
            image: Input image in BGR format.

        Returns:
            Face location as (top, right, bottom, left), or None.
        """
        net = self.handle.get()
        size = self.settings.detector_input_size
        height, width = image.shape[:2]

        blob = cv2.dnn.blobFromImage(image, 1.0, (size, size), MEAN_VALUES)
        with self._net_lock:
            net.setInput(blob)
            detections = net.forward()

        # Rows come back sorted by the detector's own confidence.
        for i in range(detections.shape[2]):
            confidence = float(detections[0, 0, i, 2])
            if confidence < self.settings.detector_score_threshold:
                continue

            box = detections[0, 0, i, 3:7] * np.array([width, height, width, height])
            left, top, right, bottom = box.astype(int)
            left, top = max(0, left), max(0, top)
            right, bottom = min(width, right), min(height, bottom)
            if right <= left or bottom <= top:
                continue

            return (int(top), int(right), int(bottom), int(left))

        return None

    def detect(self, image: NormalizedImage) -> Optional[np.ndarray]:
        """Return the descriptor of the best face in ``image``, or None.

        Raises:
            ModelNotReady: If the detector is not loaded.
        """
        location = self.locate_face(image.pixels)
        if location is None:
            return None

        import face_recognition

        # face_recognition expects RGB
        rgb_image = cv2.cvtColor(image.pixels, cv2.COLOR_BGR2RGB)
        encodings = face_recognition.face_encodings(
            rgb_image,
            known_face_locations=[location],
            model="large"
        )
        if not encodings:
            return None
        return encodings[0]

    async def detect_async(self, image: NormalizedImage) -> Optional[np.ndarray]:
        """Run ``detect`` in a worker thread."""
        return await asyncio.to_thread(self.detect, image)
