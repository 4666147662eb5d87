from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest
from PIL import Image

from photo_faces.db import FaceStore
from photo_faces.models import DETECTION, EMBEDDING, ModelRegistry


class _DummyInput:
    def __init__(self, name: str) -> None:
        self.name = name


class _DummyDetectionSession:
    """Stands in for an UltraFace session.

    ``anchors`` is a list of ``(score, x1, y1, x2, y2)`` with normalised
    coordinates; the same anchors are returned for every image.
    """

    def __init__(self, anchors: Sequence[Tuple[float, float, float, float, float]]) -> None:
        self.anchors = list(anchors)
        self.feeds: List[dict] = []

    def get_inputs(self):
        return [_DummyInput("input")]

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        n = len(self.anchors)
        scores = np.zeros((1, n, 2), dtype=np.float32)
        boxes = np.zeros((1, n, 4), dtype=np.float32)
        for i, (score, x1, y1, x2, y2) in enumerate(self.anchors):
            scores[0, i] = (1.0 - score, score)
            boxes[0, i] = (x1, y1, x2, y2)
        return [scores, boxes]


class _DummyEmbeddingSession:
    """Stands in for an ArcFace session; ``make_output(blob)`` builds the raw output."""

    def __init__(self, make_output: Optional[Callable[[np.ndarray], np.ndarray]] = None) -> None:
        self.make_output = make_output or (lambda blob: np.full(512, 2.0, dtype=np.float32))
        self.calls = 0

    def get_inputs(self):
        return [_DummyInput("data")]

    def run(self, output_names, feeds):
        self.calls += 1
        return [np.asarray(self.make_output(feeds["data"]), dtype=np.float32)[np.newaxis]]


class _FailingSession:
    def get_inputs(self):
        return [_DummyInput("data")]

    def run(self, output_names, feeds):
        raise RuntimeError("inference exploded")


class _DummyEmbedder:
    """Embedder returning preset vectors in call order, then a constant vector."""

    def __init__(self, vectors: Sequence[np.ndarray] = ()) -> None:
        self.vectors = list(vectors)
        self.loaded = False
        self.calls = 0

    def load(self) -> None:
        self.loaded = True

    def embed_face(self, image, bbox):
        self.calls += 1
        if self.vectors:
            return self.vectors.pop(0)
        return basis(0)


def basis(i: int, dim: int = 512) -> np.ndarray:
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v


def write_image(path: Path, size: Tuple[int, int] = (64, 48), color=(120, 90, 60)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


@pytest.fixture
def store(tmp_path: Path) -> FaceStore:
    store = FaceStore.open(tmp_path / "faces.sqlite")
    yield store
    store.engine.dispose()


@pytest.fixture
def make_registry(tmp_path: Path):
    def _make(detection=None, embedding=None) -> ModelRegistry:
        registry = ModelRegistry(tmp_path / "models")
        if detection is not None:
            registry.register_session(DETECTION, detection)
        if embedding is not None:
            registry.register_session(EMBEDDING, embedding)
        return registry
    return _make
