"""
Face embedding with ArcFace.

:class:`FaceEmbedder` turns an RGB face crop into a 512-dimensional,
L2-normalised identity vector using the embedding session of a
:class:`~photo_faces.models.ModelRegistry`.  Faces of the same person have a
high cosine similarity between their vectors.
"""

from __future__ import annotations

import cv2
import numpy as np

from .errors import InferenceError
from .geometry import BoundingBox, crop_face
from .models import ModelRegistry
from .similarity import EMBEDDING_DIM, l2_normalize

INPUT_SIZE = 112


def preprocess_face(crop: np.ndarray) -> np.ndarray:
    """Resize to 112x112 and scale to ``[-1, 1]`` as a ``1x3x112x112`` float32 blob."""
    resized = cv2.resize(crop, (INPUT_SIZE, INPUT_SIZE), interpolation=cv2.INTER_LINEAR)
    blob = (resized.astype(np.float32) - 127.5) / 127.5
    return np.ascontiguousarray(blob.transpose(2, 0, 1)[np.newaxis])


class FaceEmbedder:
    """Wrapper around the ArcFace embedding session.

    Parameters
    ----------
    registry: ModelRegistry
        Supplies the embedding session; loaded on first use.
    padding: float
        Fraction of the box size added on each side by :meth:`embed_face`.
    """

    def __init__(self, registry: ModelRegistry, padding: float = 0.2) -> None:
        self.registry = registry
        self.padding = padding

    def load(self) -> None:
        """Make sure the embedding model is available; raises ``ModelLoadError``."""
        self.registry.embedding_session()

    def embed(self, crop: np.ndarray) -> np.ndarray:
        """Compute the identity embedding of an ``HxWx3`` RGB face crop.

        Returns
        -------
        numpy.ndarray
            float32 vector of length 512, L2-normalised unless all zeros.

        Raises
        ------
        InferenceError
            If the crop is empty, inference fails or the output has the
            wrong length.
        ModelLoadError
            If the model cannot be loaded.
        """
        if crop.ndim != 3 or crop.shape[0] == 0 or crop.shape[1] == 0:
            raise InferenceError(f"Empty face crop of shape {crop.shape}")
        session = self.registry.embedding_session()
        blob = preprocess_face(crop)
        try:
            outputs = session.run({session.input_name: blob})
        except Exception as exc:
            raise InferenceError(f"Embedding inference failed: {exc}") from exc
        vector = np.asarray(outputs[0], dtype=np.float32).ravel()
        if vector.size != EMBEDDING_DIM:
            raise InferenceError(f"Unexpected embedding length {vector.size}, expected {EMBEDDING_DIM}")
        return l2_normalize(vector)

    def embed_face(self, image: np.ndarray, bbox: BoundingBox) -> np.ndarray:
        """Crop ``bbox`` with padding out of a full image and embed it."""
        return self.embed(crop_face(image, bbox, self.padding))
