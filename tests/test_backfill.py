from __future__ import annotations

import numpy as np
import pytest

from photo_faces.backfill import MAX_RECENT_ERRORS, generate_missing_embeddings
from photo_faces.embedders import FaceEmbedder
from photo_faces.errors import ModelLoadError
from photo_faces.geometry import BoundingBox
from photo_faces.status import CancelToken

from .conftest import _DummyEmbedder, _DummyEmbeddingSession, _FailingSession, write_image

BOX = BoundingBox(10, 10, 20, 20)


def _add_faces(store, path, n):
    photo_id = store.add_photo(str(path))
    return [store.store_face(photo_id, BOX, None, 0.9) for _ in range(n)]


def test_backfill_generates_embeddings_and_counts_missing_files(store, tmp_path, make_registry):
    write_image(tmp_path / "a.png")
    write_image(tmp_path / "b.png")
    _add_faces(store, tmp_path / "a.png", 2)
    missing_ids = _add_faces(store, tmp_path / "gone.png", 1)
    _add_faces(store, tmp_path / "b.png", 1)

    before = store.count_faces_without_embeddings()
    embedder = FaceEmbedder(make_registry(embedding=_DummyEmbeddingSession()))
    result = generate_missing_embeddings(store, embedder)

    assert result.generated == 3
    assert result.failed == 1
    assert result.total == 4
    assert "gone.png" in result.last_error
    assert store.count_faces_without_embeddings() == before - result.generated
    assert [f for f, _, _ in store.get_faces_without_embeddings(10)] == missing_ids
    for _, embedding in store.get_all_face_embeddings():
        assert embedding.shape == (512,)


def test_backfill_counts_inference_failures(store, tmp_path, make_registry):
    write_image(tmp_path / "a.png")
    _add_faces(store, tmp_path / "a.png", 3)
    embedder = FaceEmbedder(make_registry(embedding=_FailingSession()))
    result = generate_missing_embeddings(store, embedder)
    assert result.generated == 0
    assert result.failed == 3
    assert len(result.errors()) == 3
    assert store.count_faces_without_embeddings() == 3


def test_backfill_counts_undecodable_images(store, tmp_path):
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"not an image")
    _add_faces(store, broken, 1)
    result = generate_missing_embeddings(store, _DummyEmbedder())
    assert (result.generated, result.failed) == (0, 1)


def test_backfill_keeps_only_recent_errors(store, tmp_path):
    _add_faces(store, tmp_path / "missing.png", MAX_RECENT_ERRORS + 5)
    result = generate_missing_embeddings(store, _DummyEmbedder())
    assert result.failed == MAX_RECENT_ERRORS + 5
    assert len(result.errors()) == MAX_RECENT_ERRORS
    assert result.last_error == result.errors()[-1]


def test_backfill_respects_limit_and_reports_progress(store, tmp_path):
    write_image(tmp_path / "a.png")
    _add_faces(store, tmp_path / "a.png", 5)
    seen = []
    embedder = _DummyEmbedder()
    result = generate_missing_embeddings(store, embedder, limit=3, progress=lambda c, t: seen.append((c, t)))
    assert result.generated == 3
    assert seen == [(1, 3), (2, 3), (3, 3)]
    assert store.count_faces_without_embeddings() == 2
    assert embedder.loaded


def test_backfill_stops_when_cancelled(store, tmp_path):
    write_image(tmp_path / "a.png")
    _add_faces(store, tmp_path / "a.png", 5)
    cancel = CancelToken()

    def progress(current, total):
        if current == 2:
            cancel.cancel()

    result = generate_missing_embeddings(store, _DummyEmbedder(), cancel=cancel, progress=progress)
    assert result.cancelled
    assert result.generated == 2
    assert store.count_faces_without_embeddings() == 3


def test_backfill_with_nothing_to_do_does_not_load_models(store):
    embedder = _DummyEmbedder()
    result = generate_missing_embeddings(store, embedder)
    assert (result.generated, result.failed, result.total) == (0, 0, 0)
    assert not embedder.loaded


def test_model_load_failure_propagates(store, tmp_path):
    write_image(tmp_path / "a.png")
    _add_faces(store, tmp_path / "a.png", 1)

    class _BrokenEmbedder(_DummyEmbedder):
        def load(self):
            raise ModelLoadError("no weights")

    with pytest.raises(ModelLoadError):
        generate_missing_embeddings(store, _BrokenEmbedder())
    assert store.count_faces_without_embeddings() == 1


def test_backfilled_embedding_is_stored_as_given(store, tmp_path):
    write_image(tmp_path / "a.png")
    _add_faces(store, tmp_path / "a.png", 1)
    vector = np.linspace(-1, 1, 512).astype(np.float32)
    generate_missing_embeddings(store, _DummyEmbedder([vector]))
    [(_, stored)] = store.get_all_face_embeddings()
    assert np.array_equal(stored, vector)
