"""
High-level orchestration of face detection over a batch of photos.

:class:`FaceProcessor` ties together the detector and the store: it detects
faces in each photo, saves them and records that the photo has been scanned.
A batch reports its progress through status objects (see
:mod:`photo_faces.status`) and stops cleanly when its cancel token is set.
Failures on individual photos are reported and skipped; only a model that
cannot be loaded ends the batch early.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .config import FaceConfig
from .db import FaceStore
from .detector import FaceDetector
from .errors import FaceError, ModelLoadError
from .images import iter_image_paths
from .models import DETECTION, EMBEDDING, ModelRegistry
from .status import (
    CancelToken, Cancelled, DetectionCompleted, Error, Failed, FoundFaces,
    InitializingModels, Processing, Starting,
)

logger = logging.getLogger(__name__)


def register_photos(store: FaceStore, root: Path) -> int:
    """Add every image file under ``root`` to the photos table; return how many were seen."""
    count = 0
    for path in iter_image_paths(root):
        store.add_photo(str(path.resolve()))
        count += 1
    logger.info("Registered %d photos under %s", count, root)
    return count


class FaceProcessor:
    """Detect and store faces for photos.

    Parameters
    ----------
    store: FaceStore
        Destination for detected faces and scan records.
    detector: FaceDetector
        Detector used for every photo.
    with_embeddings: bool
        Full mode (embed while detecting) when ``True``; fast mode leaves
        embeddings to the backfill that runs before clustering.
    """

    def __init__(self, store: FaceStore, detector: FaceDetector, with_embeddings: bool = True) -> None:
        self.store = store
        self.detector = detector
        self.with_embeddings = with_embeddings

    @classmethod
    def from_config(cls, store: FaceStore, registry: ModelRegistry, config: FaceConfig) -> "FaceProcessor":
        return cls(store, FaceDetector.from_config(registry, config), config.with_embeddings)

    def models_ready(self) -> bool:
        registry = self.detector.registry
        if not registry.is_loaded(DETECTION):
            return False
        return not self.with_embeddings or registry.is_loaded(EMBEDDING)

    def init_models(self) -> None:
        """Load the models this processor needs; raises ``ModelLoadError``."""
        self.detector.load(with_embeddings=self.with_embeddings)

    def process_image(self, photo_id: int, path: str) -> int:
        """Detect faces in one photo, store them and mark the photo scanned.

        Returns
        -------
        int
            Number of faces stored.  A photo without faces is still marked
            as scanned so it is not picked up again.  Faces and the scan
            record are written together, so a failed write leaves the photo
            untouched for the next run.
        """
        detected = self.detector.detect_path(path, with_embeddings=self.with_embeddings)
        stored = self.store.store_photo_faces(photo_id, [
            (face.bbox, face.embedding if face.has_embedding else None, face.confidence)
            for face in detected
        ])
        return len(stored)

    def process_batch(self, photos: Sequence[Tuple[int, str]], updates,
                      cancel: Optional[CancelToken] = None) -> None:
        """Process ``(photo_id, path)`` pairs, reporting status to ``updates``.

        Parameters
        ----------
        photos: sequence of (int, str)
            Photos to scan, usually from ``get_photos_without_face_scan``.
        updates:
            Any object with a ``put`` method, normally a
            :class:`queue.SimpleQueue`.
        cancel: CancelToken, optional
            Checked before each photo.  Faces stored before cancellation are
            kept.
        """
        total = len(photos)
        updates.put(Starting(total_photos=total))

        if not self.models_ready():
            updates.put(InitializingModels())
            try:
                self.init_models()
            except ModelLoadError as exc:
                logger.error("Failed to initialize face models: %s", exc)
                updates.put(Failed(error=f"Failed to initialize face models: {exc}"))
                return

        photos_processed = 0
        faces_found = 0
        for current, (photo_id, path) in enumerate(photos, start=1):
            if cancel is not None and cancel.is_cancelled():
                logger.info("Face detection cancelled after %d photos", current - 1)
                updates.put(Cancelled())
                return
            updates.put(Processing(current=current, total=total, path=path))

            if not Path(path).exists():
                logger.debug("Skipping missing file %s", path)
                continue
            try:
                count = self.process_image(photo_id, path)
            except ModelLoadError as exc:
                logger.error("Face models became unavailable: %s", exc)
                updates.put(Failed(error=str(exc)))
                return
            except (FaceError, SQLAlchemyError, OSError) as exc:
                logger.error("Face detection failed for %s: %s", path, exc)
                updates.put(Error(message=f"{Path(path).name}: {exc}"))
                continue
            photos_processed += 1
            faces_found += count
            if count > 0:
                updates.put(FoundFaces(path=path, count=count))

        logger.info("Face detection done: %d photos, %d faces", photos_processed, faces_found)
        updates.put(DetectionCompleted(photos_processed=photos_processed, faces_found=faces_found))
