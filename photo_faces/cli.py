"""
Command-line entry point for the face recognition subsystem.

This module parses command line arguments into a :class:`FaceConfig`, sets
up logging and dispatches on the chosen sub-command.  Long running commands
(``detect``, ``backfill``, ``cluster``) run on a background worker through the
:class:`BackgroundTaskManager`; the main thread polls for progress and turns
Ctrl-C into a cancellation request.
"""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import FaceConfig, parse_args
from .clustering import merge_clusters
from .db import FaceStore
from .embedders import FaceEmbedder
from .log import setup_logging
from .models import ModelRegistry
from .pipeline import FaceProcessor, register_photos
from .tasks import (
    BackgroundTaskManager, start_embedding_backfill, start_face_clustering, start_face_detection,
)

logger = logging.getLogger("photo_faces.cli")

POLL_INTERVAL = 0.1
PROGRESS_LOG_INTERVAL = 2.0


def _gpu_preflight(cfg: FaceConfig) -> None:
    """Warn when a GPU was requested but ONNX Runtime cannot use CUDA."""
    if not cfg.use_gpu:
        return
    import onnxruntime as ort
    if "CUDAExecutionProvider" not in ort.get_available_providers():
        logger.warning(
            "GPU requested but not available to ONNX Runtime; falling back to CPU. "
            "To enable GPU: pip uninstall -y onnxruntime && pip install onnxruntime-gpu"
        )


def _wait_for(manager: BackgroundTaskManager, task_id: int) -> bool:
    """Poll until ``task_id`` finishes; return whether it succeeded."""
    last_log = 0.0
    while True:
        try:
            for info in manager.poll_updates():
                if info.id == task_id:
                    log = logger.info if info.success else logger.error
                    log("%s: %s", info.task_type.label, info.message)
                    return info.success
            task = manager.get_task(task_id)
            now = time.monotonic()
            if task is not None and task.progress is not None and now - last_log >= PROGRESS_LOG_INTERVAL:
                progress = task.progress
                logger.info("%d/%d %s", progress.current, progress.total, progress.message)
                last_log = now
            time.sleep(POLL_INTERVAL)
        except KeyboardInterrupt:
            logger.warning("Cancelling; waiting for the current item to finish")
            manager.cancel_all()


def _cmd_import(cfg: FaceConfig, store: FaceStore) -> int:
    directory = Path(cfg.extra["directory"])
    if not directory.is_dir():
        logger.error("Not a directory: %s", directory)
        return 1
    count = register_photos(store, directory)
    print(f"{count} photos registered, {store.count_photos_needing_face_scan()} awaiting face scan")
    return 0


def _cmd_detect(cfg: FaceConfig, store: FaceStore) -> int:
    directory = cfg.extra.get("directory")
    if directory:
        directory = str(Path(directory).resolve())
    photos = store.get_photos_without_face_scan(directory, cfg.extra.get("limit") or 10_000)
    if not photos:
        print("No photos need face detection")
        return 0
    _gpu_preflight(cfg)
    manager = BackgroundTaskManager()
    processor = FaceProcessor.from_config(store, ModelRegistry.from_config(cfg), cfg)
    task_id = start_face_detection(manager, processor, photos)
    return 0 if _wait_for(manager, task_id) else 1


def _cmd_backfill(cfg: FaceConfig, store: FaceStore) -> int:
    if store.count_faces_without_embeddings() == 0:
        print("All faces have embeddings")
        return 0
    _gpu_preflight(cfg)
    manager = BackgroundTaskManager()
    embedder = FaceEmbedder(ModelRegistry.from_config(cfg), padding=cfg.crop_padding)
    task_id = start_embedding_backfill(manager, store, embedder, cfg.backfill_limit)
    return 0 if _wait_for(manager, task_id) else 1


def _cmd_cluster(cfg: FaceConfig, store: FaceStore) -> int:
    _gpu_preflight(cfg)
    manager = BackgroundTaskManager()
    embedder = FaceEmbedder(ModelRegistry.from_config(cfg), padding=cfg.crop_padding)
    task_id = start_face_clustering(manager, store, embedder, cfg.similarity_threshold, cfg.backfill_limit)
    return 0 if _wait_for(manager, task_id) else 1


def _cmd_clusters(cfg: FaceConfig, store: FaceStore) -> int:
    clusters = store.get_all_face_clusters()
    if not clusters:
        print("No clusters; run 'photo-faces cluster' first")
        return 0
    print(f"{'ID':>6}  {'FACES':>5}  NAME")
    for cluster in clusters:
        print(f"{cluster.id:>6}  {cluster.face_count:>5}  {cluster.auto_name}")
    return 0


def _cmd_people(cfg: FaceConfig, store: FaceStore) -> int:
    people = store.get_all_people()
    if not people:
        print("No people named yet")
        return 0
    print(f"{'ID':>6}  {'FACES':>5}  NAME")
    for person in people:
        print(f"{person.id:>6}  {person.face_count:>5}  {person.name}")
    print(f"{len(store.get_unassigned_faces())} faces not assigned to anyone")
    return 0


def _cmd_promote(cfg: FaceConfig, store: FaceStore) -> int:
    cluster_id = cfg.extra["cluster_id"]
    if store.get_face_cluster(cluster_id) is None:
        logger.error("Unknown cluster: %d", cluster_id)
        return 1
    person_id = store.cluster_to_person(cluster_id, cfg.extra["name"])
    print(f"Cluster {cluster_id} is now person {person_id} ({cfg.extra['name']})")
    return 0


def _cmd_merge(cfg: FaceConfig, store: FaceStore) -> int:
    cluster_ids: List[int] = cfg.extra["cluster_ids"]
    unknown = [cid for cid in cluster_ids if store.get_face_cluster(cid) is None]
    if unknown:
        logger.error("Unknown clusters: %s", unknown)
        return 1
    person_id = merge_clusters(store, cluster_ids, cfg.extra.get("name"))
    person = store.get_person(person_id)
    print(f"Merged {len(cluster_ids)} clusters into person {person_id} "
          f"({person.name}, {person.face_count} faces)")
    return 0


COMMANDS: Dict[str, Callable[[FaceConfig, FaceStore], int]] = {
    "import": _cmd_import,
    "detect": _cmd_detect,
    "backfill": _cmd_backfill,
    "cluster": _cmd_cluster,
    "clusters": _cmd_clusters,
    "people": _cmd_people,
    "promote": _cmd_promote,
    "merge": _cmd_merge,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point called by the ``photo-faces`` script."""
    cfg = parse_args(argv)
    setup_logging(cfg.logs_dir)
    logger.debug("Running: %s", cfg.command_line)
    store = FaceStore.open(cfg.db_path)
    try:
        return COMMANDS[cfg.extra["command"]](cfg, store)
    finally:
        store.engine.dispose()


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
