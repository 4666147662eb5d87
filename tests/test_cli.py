from __future__ import annotations

from pathlib import Path

import pytest

from photo_faces.cli import main
from photo_faces.config import FaceConfig, parse_args
from photo_faces.db import FaceStore
from photo_faces.geometry import BoundingBox

from .conftest import basis, write_image


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PHOTO_FACES_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("PHOTO_FACES_LOGS_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("PHOTO_FACES_DB", raising=False)
    monkeypatch.delenv("PHOTO_FACES_MODELS_DIR", raising=False)


def test_defaults_follow_environment(tmp_path):
    config = FaceConfig()
    assert config.db_path == tmp_path / "home" / "photo-faces.sqlite"
    assert config.models_dir == tmp_path / "home" / "models"
    assert config.logs_dir == tmp_path / "logs"
    assert config.similarity_threshold == 0.55
    assert config.backfill_limit == 10_000


def test_parse_detect():
    config = parse_args(["--threads", "2", "detect", "--dir", "/photos", "--fast", "--limit", "5"])
    assert config.intra_threads == 2
    assert config.with_embeddings is False
    assert config.extra == {"command": "detect", "directory": "/photos", "limit": 5}
    assert config.command_line.startswith("photo-faces --threads 2 detect")


def test_parse_cluster_and_merge():
    config = parse_args(["cluster", "--threshold", "0.7"])
    assert config.similarity_threshold == 0.7
    assert config.with_embeddings is True
    merge = parse_args(["merge", "3", "4", "--name", "Eve"])
    assert merge.extra == {"command": "merge", "cluster_ids": [3, 4], "name": "Eve"}


def test_parse_requires_command():
    with pytest.raises(SystemExit):
        parse_args([])


def _seed_clusters(db_path: Path):
    store = FaceStore.open(db_path)
    photo_id = store.add_photo("/library/a.jpg")
    faces = [store.store_face(photo_id, BoundingBox(0, 0, 10, 10), basis(i)) for i in range(3)]
    clusters = []
    for n, face_id in enumerate(faces, start=1):
        cluster_id = store.create_face_cluster(face_id, f"Person {n}")
        store.add_face_to_cluster(face_id, cluster_id, 1.0)
        clusters.append(cluster_id)
    store.engine.dispose()
    return clusters


def test_import_lists_and_promotion(tmp_path, capsys):
    db = str(tmp_path / "faces.sqlite")
    write_image(tmp_path / "lib" / "x.jpg")
    assert main(["--db", db, "import", str(tmp_path / "lib")]) == 0
    assert "1 photos registered" in capsys.readouterr().out

    assert main(["--db", db, "clusters"]) == 0
    assert "No clusters" in capsys.readouterr().out

    clusters = _seed_clusters(tmp_path / "faces.sqlite")
    assert main(["--db", db, "clusters"]) == 0
    assert "Person 2" in capsys.readouterr().out

    assert main(["--db", db, "promote", str(clusters[0]), "Frank"]) == 0
    assert main(["--db", db, "merge", str(clusters[1]), str(clusters[2]), "--name", "Grace"]) == 0
    capsys.readouterr()
    assert main(["--db", db, "people"]) == 0
    out = capsys.readouterr().out
    assert "Frank" in out and "Grace" in out
    assert "0 faces not assigned" in out

    assert main(["--db", db, "promote", "999", "Nobody"]) == 1


def test_detect_with_nothing_to_scan(tmp_path, capsys):
    assert main(["--db", str(tmp_path / "faces.sqlite"), "detect"]) == 0
    assert "No photos need face detection" in capsys.readouterr().out


def test_import_rejects_missing_directory(tmp_path):
    assert main(["--db", str(tmp_path / "faces.sqlite"), "import", str(tmp_path / "nope")]) == 1


def test_logs_stay_in_home_when_db_is_elsewhere(tmp_path, monkeypatch):
    monkeypatch.delenv("PHOTO_FACES_LOGS_DIR")
    config = parse_args(["--db", str(tmp_path / "elsewhere" / "faces.sqlite"), "clusters"])
    assert config.logs_dir == tmp_path / "home" / "logs"
