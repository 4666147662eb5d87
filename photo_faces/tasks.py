"""
Background task management.

Long running face operations (batch detection, clustering, embedding
backfill) each run on their own worker thread.  :class:`BackgroundTaskManager`
owns one status queue and one cancel token per task, drains the queues when
polled, keeps the latest progress of every running task and reports tasks
that have finished.  The manager itself is meant to be used from a single
thread (the one that polls).
"""

from __future__ import annotations

import enum
import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .backfill import DEFAULT_LIMIT, generate_missing_embeddings
from .clustering import DEFAULT_SIMILARITY_THRESHOLD, cluster_faces
from .db import FaceStore
from .embedders import FaceEmbedder
from .errors import ModelLoadError
from .pipeline import FaceProcessor
from .status import (
    CancelToken, Cancelled, Completed, DetectionCompleted, Error, Failed, FoundFaces,
    InitializingModels, Processing, Progress, Started, Starting, new_channel,
)

logger = logging.getLogger(__name__)

Work = Callable[["queue.SimpleQueue", CancelToken], None]


class TaskType(enum.Enum):
    FACE_DETECTION = "face-detection"
    FACE_CLUSTERING = "face-clustering"
    EMBEDDING_BACKFILL = "embedding-backfill"

    @property
    def label(self) -> str:
        return self.value.replace("-", " ").capitalize()


class TaskState(enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class TaskProgress:
    current: int = 0
    total: int = 0
    message: str = ""

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 0.0


@dataclass
class TaskCompletionInfo:
    id: int
    task_type: TaskType
    message: str
    success: bool


@dataclass
class BackgroundTask:
    id: int
    task_type: TaskType
    updates: "queue.SimpleQueue"
    cancel_token: CancelToken
    state: TaskState = TaskState.RUNNING
    progress: Optional[TaskProgress] = None
    last_message: Optional[str] = None
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.state is TaskState.RUNNING

    def cancel(self) -> None:
        self.cancel_token.cancel()


class BackgroundTaskManager:
    """Registry of background tasks, in the order they were started."""

    def __init__(self) -> None:
        self._tasks: Dict[int, BackgroundTask] = {}
        self._ids = itertools.count(1)

    def register_task(self, task_type: TaskType) -> Tuple[int, "queue.SimpleQueue", CancelToken]:
        """Track a new task and return its ID, status queue and cancel token."""
        task_id = next(self._ids)
        updates = new_channel()
        cancel = CancelToken()
        self._tasks[task_id] = BackgroundTask(task_id, task_type, updates, cancel)
        return task_id, updates, cancel

    def spawn(self, task_type: TaskType, work: Work) -> int:
        """Register a task and run ``work(updates, cancel)`` on a daemon thread.

        If ``work`` raises, the error is logged and reported as ``Failed``
        so the task always terminates.
        """
        task_id, updates, cancel = self.register_task(task_type)

        def run() -> None:
            try:
                work(updates, cancel)
            except Exception as exc:
                logger.exception("%s task %d crashed", task_type.label, task_id)
                updates.put(Failed(error=f"{type(exc).__name__}: {exc}"))

        thread = threading.Thread(target=run, name=f"{task_type.value}-{task_id}", daemon=True)
        self._tasks[task_id].thread = thread
        thread.start()
        return task_id

    def _apply(self, task: BackgroundTask, update) -> Optional[TaskCompletionInfo]:
        if isinstance(update, Started):
            task.progress = TaskProgress(0, update.total)
        elif isinstance(update, Starting):
            task.progress = TaskProgress(0, update.total_photos)
        elif isinstance(update, Progress):
            task.progress = TaskProgress(update.current, update.total, update.message)
        elif isinstance(update, Processing):
            task.progress = TaskProgress(update.current, update.total, update.path)
        elif isinstance(update, InitializingModels):
            task.last_message = "Loading face models"
        elif isinstance(update, FoundFaces):
            task.last_message = f"{update.count} faces in {update.path}"
        elif isinstance(update, Error):
            task.last_message = update.message
        elif isinstance(update, (Completed, DetectionCompleted)):
            task.state = TaskState.COMPLETED
            return TaskCompletionInfo(task.id, task.task_type, update.message, True)
        elif isinstance(update, Cancelled):
            task.state = TaskState.CANCELLED
            return TaskCompletionInfo(task.id, task.task_type, update.message, False)
        elif isinstance(update, Failed):
            task.state = TaskState.FAILED
            return TaskCompletionInfo(task.id, task.task_type, update.error, False)
        return None

    def poll_updates(self) -> List[TaskCompletionInfo]:
        """Drain every task queue without blocking.

        Returns
        -------
        list of TaskCompletionInfo
            Tasks that reached a terminal status since the last poll.  They
            are no longer tracked afterwards.
        """
        completed: List[TaskCompletionInfo] = []
        for task in list(self._tasks.values()):
            while True:
                try:
                    update = task.updates.get_nowait()
                except queue.Empty:
                    break
                info = self._apply(task, update)
                if info is not None:
                    completed.append(info)
                    break
        for info in completed:
            self._tasks.pop(info.id, None)
        return completed

    def get_task(self, task_id: int) -> Optional[BackgroundTask]:
        return self._tasks.get(task_id)

    def is_running(self, task_type: TaskType) -> bool:
        return any(t.task_type is task_type and t.is_running for t in self._tasks.values())

    def cancel_task(self, task_id: int) -> bool:
        task = self._tasks.get(task_id)
        if task is not None and task.is_running:
            task.cancel()
            return True
        return False

    def cancel_most_recent(self) -> bool:
        """Cancel the most recently started task that is still running."""
        for task in reversed(list(self._tasks.values())):
            if task.is_running:
                task.cancel()
                return True
        return False

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            if task.is_running:
                task.cancel()

    def running_tasks(self) -> List[BackgroundTask]:
        return [t for t in self._tasks.values() if t.is_running]

    def has_running_tasks(self) -> bool:
        return any(t.is_running for t in self._tasks.values())


def start_face_detection(manager: BackgroundTaskManager, processor: FaceProcessor,
                         photos: Sequence[Tuple[int, str]]) -> int:
    """Run :meth:`FaceProcessor.process_batch` in the background."""
    photos = list(photos)
    return manager.spawn(
        TaskType.FACE_DETECTION,
        lambda updates, cancel: processor.process_batch(photos, updates, cancel),
    )


def start_face_clustering(manager: BackgroundTaskManager, store: FaceStore,
                          embedder: Optional[FaceEmbedder],
                          similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
                          backfill_limit: int = DEFAULT_LIMIT) -> int:
    """Recompute clusters in the background, generating missing embeddings first."""

    def work(updates, cancel: CancelToken) -> None:
        updates.put(Started(total=store.count_faces()))
        try:
            result = cluster_faces(
                store, embedder, similarity_threshold, cancel=cancel,
                progress=lambda current, total, message: updates.put(Progress(current, total, message)),
                backfill_limit=backfill_limit,
            )
        except (ModelLoadError, SQLAlchemyError) as exc:
            logger.error("Face clustering failed: %s", exc)
            updates.put(Failed(error=f"Face clustering failed: {exc}"))
            return
        if result.cancelled:
            updates.put(Cancelled())
        else:
            updates.put(Completed(message=result.summary()))

    return manager.spawn(TaskType.FACE_CLUSTERING, work)


def start_embedding_backfill(manager: BackgroundTaskManager, store: FaceStore,
                             embedder: FaceEmbedder, limit: int = DEFAULT_LIMIT) -> int:
    """Generate missing embeddings in the background."""

    def work(updates, cancel: CancelToken) -> None:
        updates.put(Started(total=min(store.count_faces_without_embeddings(), limit)))
        try:
            result = generate_missing_embeddings(
                store, embedder, limit=limit, cancel=cancel,
                progress=lambda current, total: updates.put(
                    Progress(current, total, f"Generating embeddings ({current}/{total})")),
            )
        except (ModelLoadError, SQLAlchemyError) as exc:
            logger.error("Embedding backfill failed: %s", exc)
            updates.put(Failed(error=f"Embedding backfill failed: {exc}"))
            return
        if result.cancelled:
            updates.put(Cancelled())
            return
        message = f"Generated {result.generated} embeddings"
        if result.failed:
            message += f" ({result.failed} failed, last error: {result.last_error})"
        updates.put(Completed(message=message))

    return manager.spawn(TaskType.EMBEDDING_BACKFILL, work)
