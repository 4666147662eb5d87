from __future__ import annotations

import math

import numpy as np
import pytest

from photo_faces.clustering import (
    FaceClusteringResult, cluster_faces, iter_greedy_clusters, merge_clusters,
)
from photo_faces.geometry import BoundingBox
from photo_faces.status import CancelToken

from .conftest import _DummyEmbedder, basis, write_image

BOX = BoundingBox(10, 10, 20, 20)


def _store_faces(store, embeddings, photos_per_face=None):
    ids = []
    for i, embedding in enumerate(embeddings):
        photo = photos_per_face[i] if photos_per_face else "p.jpg"
        photo_id = store.add_photo(f"/library/{photo}")
        ids.append(store.store_face(photo_id, BOX, embedding, 0.9))
    return ids


def _memberships(store):
    return sorted(sorted(store.get_cluster_face_ids(c.id)) for c in store.get_all_face_clusters())


def test_threshold_one_groups_only_identical_vectors(store):
    a, b, c = _store_faces(store, [basis(0), basis(0), basis(1)])
    result = cluster_faces(store, similarity_threshold=1.0)
    assert result.clusters_created == 2
    assert result.faces_clustered == 3
    assert _memberships(store) == [[a, b], [c]]
    sizes = [cl.face_count for cl in store.get_all_face_clusters()]
    assert sizes == [2, 1]


def test_five_faces_over_three_photos(store):
    a_vec = basis(0)
    b_vec = 0.9 * basis(0) + math.sqrt(0.19) * basis(1)
    c_vec = 0.3 * basis(0) + math.sqrt(0.91) * basis(2)
    a, b, c, d, e = _store_faces(
        store,
        [a_vec, b_vec, c_vec, basis(3), basis(4)],
        photos_per_face=["one.jpg", "one.jpg", "two.jpg", "two.jpg", "three.jpg"],
    )
    result = cluster_faces(store, similarity_threshold=0.5)
    assert result.faces_clustered == 5
    assert result.clusters_created == 4
    assert result.faces_skipped == 0
    assert _memberships(store) == [[a, b], [c], [d], [e]]

    clusters = store.get_all_face_clusters()
    assert clusters[0].representative_face_id == a
    assert clusters[0].auto_name == "Person 1"


def test_clustering_twice_gives_same_counts(store):
    _store_faces(store, [basis(0), basis(0), basis(1), basis(2)])
    first = cluster_faces(store, similarity_threshold=0.5)
    first_ids = {c.id for c in store.get_all_face_clusters()}
    second = cluster_faces(store, similarity_threshold=0.5)
    second_ids = {c.id for c in store.get_all_face_clusters()}
    assert (first.clusters_created, first.faces_clustered) == (second.clusters_created, second.faces_clustered)
    assert len(second_ids) == 3
    assert first_ids.isdisjoint(second_ids)


def test_missing_embeddings_are_backfilled_first(store, tmp_path):
    path = write_image(tmp_path / "a.png")
    photo_id = store.add_photo(str(path))
    store.store_face(photo_id, BOX, basis(0))
    store.store_face(photo_id, BOX, None)
    store.store_face(photo_id, BOX, None)
    embedder = _DummyEmbedder([basis(0), basis(5)])

    result = cluster_faces(store, embedder, similarity_threshold=0.5)
    assert result.embeddings_generated == 2
    assert result.embeddings_failed == 0
    assert result.total_faces == 3
    assert result.clusters_created == 2
    assert result.summary() == "Created 2 clusters from 3 faces (2 embeddings generated)"


def test_faces_that_cannot_be_embedded_are_skipped(store, tmp_path):
    photo_id = store.add_photo(str(tmp_path / "deleted.png"))
    store.store_face(photo_id, BOX, None)
    _store_faces(store, [basis(0)])
    result = cluster_faces(store, _DummyEmbedder(), similarity_threshold=0.5)
    assert result.embeddings_failed == 1
    assert result.faces_skipped == 1
    assert result.faces_clustered == 1
    assert result.last_error is not None
    assert result.summary().endswith("(1 failed)")


def test_zero_vectors_become_singletons(store):
    zero = np.zeros(512, dtype=np.float32)
    _store_faces(store, [zero, zero, basis(0)])
    result = cluster_faces(store, similarity_threshold=0.5)
    assert result.clusters_created == 3


def test_cancel_stops_before_next_cluster(store):
    _store_faces(store, [basis(i) for i in range(5)])
    cancel = CancelToken()
    seen = []

    def progress(current, total, message):
        seen.append(current)
        if len(seen) == 2:
            cancel.cancel()

    result = cluster_faces(store, similarity_threshold=0.5, cancel=cancel, progress=progress)
    assert result.cancelled
    assert result.clusters_created == 2
    assert len(store.get_all_face_clusters()) == 2


def test_iter_greedy_clusters_with_mixed_lengths():
    embeddings = [np.array([1.0, 0.0]), np.array([1.0, 0.0, 0.0]), np.array([1.0, 0.1])]
    clusters = list(iter_greedy_clusters(embeddings, 0.9))
    assert [[i for i, _ in c] for c in clusters] == [[0, 2], [1]]
    assert clusters[0][0] == (0, 1.0)
    assert clusters[0][1][1] == pytest.approx(1 / math.sqrt(1.01))


def test_summary_without_extras():
    assert FaceClusteringResult(clusters_created=3, faces_clustered=7).summary() == "Created 3 clusters from 7 faces"


def test_merge_clusters(store):
    a, b, c = _store_faces(store, [basis(0), basis(1), basis(2)])
    cluster_faces(store, similarity_threshold=0.5)
    ids = [cl.id for cl in sorted(store.get_all_face_clusters(), key=lambda cl: cl.id)]

    person_id = merge_clusters(store, ids[:2], "Dana")
    person = store.get_person(person_id)
    assert person.name == "Dana"
    assert person.face_count == 2
    assert sorted(fw.face.id for fw in store.get_faces_for_person(person_id)) == [a, b]
    assert [cl.id for cl in store.get_all_face_clusters()] == [ids[2]]

    default_named = merge_clusters(store, [ids[2]])
    assert store.get_person(default_named).name == "Merged Person"
    assert store.get_all_face_clusters() == []

    with pytest.raises(ValueError, match="Unknown cluster"):
        merge_clusters(store, [ids[2]])

    with pytest.raises(ValueError):
        merge_clusters(store, [])
