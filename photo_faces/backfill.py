"""
Embedding backfill.

Fast detection stores faces without embeddings.  Before faces can be
clustered those embeddings are generated here: every face lacking one is
re-cropped from its photo using the stored bounding box and run through the
embedder.  Individual failures are counted and never stop the batch; a face
that fails stays without an embedding and is retried on the next run.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, List, Optional

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from .db import FaceStore
from .embedders import FaceEmbedder
from .errors import ImageLoadError, InferenceError
from .images import load_image

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10_000
MAX_RECENT_ERRORS = 10

ProgressCallback = Callable[[int, int], None]


@dataclass
class BackfillResult:
    """Outcome of one backfill pass.

    ``recent_errors`` keeps the last ten error messages, oldest first;
    ``last_error`` is the newest of them.
    """
    generated: int = 0
    failed: int = 0
    total: int = 0
    cancelled: bool = False
    recent_errors: Deque[str] = field(default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS))

    @property
    def last_error(self) -> Optional[str]:
        return self.recent_errors[-1] if self.recent_errors else None

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.recent_errors.append(message)
        logger.warning(message)

    def errors(self) -> List[str]:
        return list(self.recent_errors)


def generate_missing_embeddings(store: FaceStore, embedder: FaceEmbedder,
                                limit: int = DEFAULT_LIMIT,
                                cancel=None,
                                progress: Optional[ProgressCallback] = None) -> BackfillResult:
    """Generate embeddings for faces that do not have one yet.

    Parameters
    ----------
    store: FaceStore
        Storage to read faces from and write embeddings to.
    embedder: FaceEmbedder
        Loaded before the first face; a load failure propagates as
        ``ModelLoadError``.
    limit: int
        Maximum number of faces handled in this pass.
    cancel: CancelToken, optional
        Checked before each face; the pass stops early with
        ``cancelled=True``.
    progress: callable, optional
        Called as ``progress(current, total)`` after each face.

    Returns
    -------
    BackfillResult
    """
    pending = store.get_faces_without_embeddings(limit)
    result = BackfillResult(total=len(pending))
    if not pending:
        return result
    embedder.load()
    logger.info("Generating embeddings for %d faces", len(pending))

    cached_path: Optional[str] = None
    cached_image: Optional[np.ndarray] = None
    for current, (face_id, photo_id, bbox) in enumerate(pending, start=1):
        if cancel is not None and cancel.is_cancelled():
            result.cancelled = True
            logger.info("Embedding backfill cancelled after %d faces", current - 1)
            break
        try:
            path = store.get_photo_path(photo_id)
            if path is None:
                result.record_failure(f"Face {face_id}: photo {photo_id} not found")
            elif not Path(path).is_file():
                result.record_failure(f"Face {face_id}: file missing: {path}")
            else:
                # Faces are ordered by id, so faces of one photo are usually adjacent
                if path != cached_path:
                    cached_image = load_image(path)
                    cached_path = path
                embedding = embedder.embed_face(cached_image, bbox)
                store.update_face_embedding(face_id, embedding)
                result.generated += 1
        except (ImageLoadError, InferenceError) as exc:
            result.record_failure(f"Face {face_id}: {exc}")
        except SQLAlchemyError as exc:
            result.record_failure(f"Face {face_id}: failed to save embedding: {exc}")
        if progress is not None:
            progress(current, result.total)

    logger.info("Embedding backfill done: %d generated, %d failed", result.generated, result.failed)
    return result
