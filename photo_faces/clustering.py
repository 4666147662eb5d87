"""
Grouping of face embeddings into person clusters.

Clusters are rebuilt from scratch on every run.  The algorithm is a greedy
single pass over faces in ID order: the first face not yet assigned becomes
the representative of a new cluster "Person N", and every later unassigned
face whose cosine similarity with the representative reaches the threshold
joins it.  The outcome depends on the order of the faces and is therefore
deterministic for a fixed database and threshold.

Clusters are only suggestions; :func:`merge_clusters` and
:meth:`FaceStore.cluster_to_person` turn them into named people.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .backfill import DEFAULT_LIMIT, generate_missing_embeddings
from .db import FaceStore
from .embedders import FaceEmbedder
from .similarity import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.55
DEFAULT_MERGED_NAME = "Merged Person"

ClusterProgress = Callable[[int, int, str], None]


@dataclass
class FaceClusteringResult:
    clusters_created: int = 0
    faces_clustered: int = 0
    faces_skipped: int = 0
    embeddings_generated: int = 0
    embeddings_failed: int = 0
    total_faces: int = 0
    last_error: Optional[str] = None
    cancelled: bool = False

    def summary(self) -> str:
        """Human readable one-line summary of the run."""
        text = f"Created {self.clusters_created} clusters from {self.faces_clustered} faces"
        if self.embeddings_generated > 0:
            text += f" ({self.embeddings_generated} embeddings generated)"
        if self.embeddings_failed > 0:
            text += f" ({self.embeddings_failed} failed)"
        return text


def _similarity_rows(embeddings: Sequence[np.ndarray]):
    """Return ``row(i)`` giving cosine similarities of face ``i`` with all faces."""
    lengths = {len(e) for e in embeddings}
    if len(lengths) == 1 and 0 not in lengths:
        matrix = np.vstack(embeddings).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        # Zero vectors stay zero and compare as dissimilar to everything
        matrix = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
        return lambda i: matrix @ matrix[i]
    return lambda i: np.array([cosine_similarity(embeddings[i], e) for e in embeddings])


def iter_greedy_clusters(embeddings: Sequence[np.ndarray],
                         threshold: float) -> Iterator[List[Tuple[int, float]]]:
    """Yield clusters as lists of ``(index, similarity)``, representative first.

    Parameters
    ----------
    embeddings: sequence of ndarray
        Face embeddings in a stable order.
    threshold: float
        Minimum cosine similarity with the representative for a face to join
        its cluster.

    Yields
    ------
    list of (int, float)
        One cluster at a time.  The representative has similarity ``1.0``.
        Every index appears in exactly one cluster.
    """
    n = len(embeddings)
    row = _similarity_rows(embeddings)
    clustered = np.zeros(n, dtype=bool)
    for i in range(n):
        if clustered[i]:
            continue
        clustered[i] = True
        members = [(i, 1.0)]
        sims = row(i)
        for j in range(i + 1, n):
            if not clustered[j] and sims[j] >= threshold:
                clustered[j] = True
                members.append((j, float(sims[j])))
        yield members


def cluster_faces(store: FaceStore, embedder: Optional[FaceEmbedder] = None,
                  similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
                  cancel=None, progress: Optional[ClusterProgress] = None,
                  backfill_limit: int = DEFAULT_LIMIT) -> FaceClusteringResult:
    """Recompute all face clusters.

    Parameters
    ----------
    store: FaceStore
        Source of embeddings and destination of the clusters.
    embedder: FaceEmbedder, optional
        When given, faces lacking an embedding are embedded first.  A model
        load failure propagates as ``ModelLoadError``.
    similarity_threshold: float
        Cosine similarity needed to join a cluster.
    cancel: CancelToken, optional
        Checked before each new cluster and during the backfill.  Clusters
        written before cancellation are kept.
    progress: callable, optional
        ``progress(current, total, message)``.
    backfill_limit: int
        Maximum number of embeddings generated before clustering.

    Returns
    -------
    FaceClusteringResult
    """
    result = FaceClusteringResult()
    store.clear_face_clusters()

    missing = store.count_faces_without_embeddings()
    if missing > 0 and embedder is not None:
        logger.info("%d faces lack embeddings; generating them first", missing)
        backfill_progress = None
        if progress is not None:
            def backfill_progress(current: int, total: int) -> None:
                progress(current, total, f"Generating embeddings ({current}/{total})")
        backfill = generate_missing_embeddings(store, embedder, limit=backfill_limit,
                                               cancel=cancel, progress=backfill_progress)
        result.embeddings_generated = backfill.generated
        result.embeddings_failed = backfill.failed
        result.last_error = backfill.last_error
        if backfill.cancelled:
            result.cancelled = True
            result.total_faces = store.count_faces()
            result.faces_skipped = result.total_faces
            return result

    pairs = store.get_all_face_embeddings()
    result.total_faces = store.count_faces()
    face_ids = [face_id for face_id, _ in pairs]
    embeddings = [embedding for _, embedding in pairs]
    logger.info("Clustering %d faces with threshold %.2f", len(pairs), similarity_threshold)

    for members in iter_greedy_clusters(embeddings, similarity_threshold):
        if cancel is not None and cancel.is_cancelled():
            result.cancelled = True
            logger.info("Clustering cancelled after %d clusters", result.clusters_created)
            break
        representative = face_ids[members[0][0]]
        cluster_id = store.create_face_cluster(representative, f"Person {result.clusters_created + 1}")
        store.add_faces_to_cluster(cluster_id, [(face_ids[index], similarity) for index, similarity in members])
        result.clusters_created += 1
        result.faces_clustered += len(members)
        if progress is not None:
            progress(result.faces_clustered, len(pairs),
                     f"Clustered {result.faces_clustered} of {len(pairs)} faces")

    result.faces_skipped = result.total_faces - result.faces_clustered
    logger.info(result.summary())
    return result


def merge_clusters(store: FaceStore, cluster_ids: Sequence[int], name: Optional[str] = None) -> int:
    """Merge clusters into a single new person and return the person ID.

    The members of every cluster are assigned to the person and the clusters
    are deleted, all in one transaction.  ``name`` defaults to
    ``"Merged Person"``.  Raises ``ValueError`` for an empty list or an
    unknown cluster.
    """
    if not cluster_ids:
        raise ValueError("No clusters to merge")
    if name is None:
        name = DEFAULT_MERGED_NAME
    person_id = store.merge_face_clusters(cluster_ids, name)
    logger.info("Merged clusters %s into person %d (%s)", list(cluster_ids), person_id, name)
    return person_id
