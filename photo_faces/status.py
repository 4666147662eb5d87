"""
Status messages and cancellation for background work.

Workers report progress by putting small immutable status objects on an
unbounded :class:`queue.SimpleQueue`; the owning thread drains the queue with
``get_nowait`` whenever it likes.  Putting never blocks, so a slow consumer
cannot stall a worker.  Every run ends with exactly one terminal status:
``Completed`` (or ``DetectionCompleted``), ``Cancelled`` or ``Failed``.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Union


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


# Shared by every kind of task


@dataclass(frozen=True)
class Cancelled:
    message: str = "Cancelled"


@dataclass(frozen=True)
class Failed:
    error: str


# Clustering and embedding backfill


@dataclass(frozen=True)
class Started:
    total: int


@dataclass(frozen=True)
class Progress:
    current: int
    total: int
    message: str = ""


@dataclass(frozen=True)
class Completed:
    message: str


# Batch face detection


@dataclass(frozen=True)
class Starting:
    total_photos: int


@dataclass(frozen=True)
class InitializingModels:
    pass


@dataclass(frozen=True)
class Processing:
    current: int
    total: int
    path: str


@dataclass(frozen=True)
class FoundFaces:
    path: str
    count: int


@dataclass(frozen=True)
class Error:
    """A photo could not be processed; the batch goes on."""
    message: str


@dataclass(frozen=True)
class DetectionCompleted:
    photos_processed: int
    faces_found: int

    @property
    def message(self) -> str:
        return f"{self.photos_processed} photos, {self.faces_found} faces found"


TaskUpdate = Union[Started, Progress, Completed, Cancelled, Failed]
DetectionStatus = Union[Starting, InitializingModels, Processing, FoundFaces, Error,
                        DetectionCompleted, Cancelled, Failed]
TERMINAL = (Completed, DetectionCompleted, Cancelled, Failed)


def is_terminal(update: object) -> bool:
    return isinstance(update, TERMINAL)


def new_channel() -> "queue.SimpleQueue":
    return queue.SimpleQueue()
