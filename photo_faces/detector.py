"""
Face detection with UltraFace.

The detection model sees a fixed 320x240 view of the photo and scores a grid
of anchors; anchors above the confidence threshold are mapped back to pixel
coordinates of the original image and de-duplicated with non-maximum
suppression.  In full mode every surviving face is also cropped and passed
through the :class:`~photo_faces.embedders.FaceEmbedder`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from .config import FaceConfig
from .embedders import FaceEmbedder
from .errors import InferenceError
from .geometry import BoundingBox, crop_face, nms
from .images import load_image
from .models import ModelRegistry
from .similarity import EMBEDDING_DIM

logger = logging.getLogger(__name__)

INPUT_WIDTH = 320
INPUT_HEIGHT = 240
OUTPUT_NAMES = ["scores", "boxes"]


@dataclass
class DetectedFace:
    """A face found in one image.

    ``embedding`` is empty when detection ran without embeddings.
    """
    bbox: BoundingBox
    embedding: np.ndarray
    confidence: float

    @property
    def has_embedding(self) -> bool:
        return self.embedding.size > 0


def preprocess_image(image: np.ndarray) -> np.ndarray:
    """Resize to 320x240 and normalise to a ``1x3x240x320`` float32 blob."""
    resized = cv2.resize(image, (INPUT_WIDTH, INPUT_HEIGHT), interpolation=cv2.INTER_AREA)
    blob = (resized.astype(np.float32) - 127.0) / 128.0
    return np.ascontiguousarray(blob.transpose(2, 0, 1)[np.newaxis])


def _as_rgb(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2RGB)
    return image


class FaceDetector:
    """Detect faces and optionally embed them.

    Parameters
    ----------
    registry: ModelRegistry
        Supplies the detection session.
    embedder: FaceEmbedder, optional
        Used in full mode; built from ``registry`` when omitted.
    confidence_threshold: float
        Anchors must score strictly above this value.
    nms_threshold: float
        IoU above which a lower scoring box is suppressed.
    padding: float
        Crop padding used before embedding.
    """

    def __init__(self, registry: ModelRegistry, embedder: Optional[FaceEmbedder] = None,
                 confidence_threshold: float = 0.7, nms_threshold: float = 0.3,
                 padding: float = 0.2) -> None:
        self.registry = registry
        self.embedder = embedder or FaceEmbedder(registry, padding=padding)
        self.confidence_threshold = confidence_threshold
        self.nms_threshold = nms_threshold
        self.padding = padding

    @classmethod
    def from_config(cls, registry: ModelRegistry, config: FaceConfig) -> "FaceDetector":
        return cls(
            registry,
            FaceEmbedder(registry, padding=config.crop_padding),
            confidence_threshold=config.confidence_threshold,
            nms_threshold=config.nms_threshold,
            padding=config.crop_padding,
        )

    def load(self, with_embeddings: bool = True) -> None:
        """Load the detection model, and the embedding model in full mode."""
        self.registry.detection_session()
        if with_embeddings:
            self.embedder.load()

    def _run_detection(self, image: np.ndarray) -> List[Tuple[BoundingBox, float]]:
        img_height, img_width = image.shape[:2]
        session = self.registry.detection_session()
        blob = preprocess_image(image)
        try:
            scores, boxes = session.run({session.input_name: blob}, OUTPUT_NAMES)
        except Exception as exc:
            raise InferenceError(f"Detection inference failed: {exc}") from exc
        scores = np.asarray(scores, dtype=np.float32).reshape(-1, 2)
        boxes = np.asarray(boxes, dtype=np.float32).reshape(-1, 4)
        if len(scores) != len(boxes):
            raise InferenceError(f"Detector returned {len(scores)} scores for {len(boxes)} boxes")

        candidates: List[Tuple[BoundingBox, float]] = []
        for idx in np.flatnonzero(scores[:, 1] > self.confidence_threshold):
            x1, y1, x2, y2 = boxes[idx]
            bbox = BoundingBox.from_corners(
                int(x1 * img_width), int(y1 * img_height),
                int(x2 * img_width), int(y2 * img_height),
            )
            if bbox.is_degenerate:
                continue
            candidates.append((bbox, float(scores[idx, 1])))
        return nms(candidates, self.nms_threshold)

    def detect(self, image: np.ndarray, with_embeddings: bool = True) -> List[DetectedFace]:
        """Detect faces in an ``HxWx3`` RGB image.

        Parameters
        ----------
        image: numpy.ndarray
            Decoded image, as returned by :func:`photo_faces.images.load_image`.
        with_embeddings: bool
            Embed every face (full mode).  A face whose embedding fails gets
            an all-zero vector so it is still stored.

        Returns
        -------
        list of DetectedFace
            Ordered by descending confidence.
        """
        image = _as_rgb(image)
        detections = self._run_detection(image)
        results: List[DetectedFace] = []
        for bbox, confidence in detections:
            embedding = np.empty(0, dtype=np.float32)
            if with_embeddings:
                try:
                    embedding = self.embedder.embed(crop_face(image, bbox, self.padding))
                except InferenceError as exc:
                    logger.warning("Embedding failed for face at %s, storing zero vector: %s", bbox, exc)
                    embedding = np.zeros(EMBEDDING_DIM, dtype=np.float32)
            results.append(DetectedFace(bbox=bbox, embedding=embedding, confidence=confidence))
        return results

    def detect_path(self, path: Union[str, Path], with_embeddings: bool = True) -> List[DetectedFace]:
        """Load an image file and detect faces in it."""
        return self.detect(load_image(path), with_embeddings=with_embeddings)
