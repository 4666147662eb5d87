"""
Top-level package for the photo library face recognition subsystem.

Exposes the public API and the console entry point in :mod:`photo_faces.cli`.

The actual functionality is organised into smaller modules:

- :mod:`photo_faces.config` – dataclass of tuning parameters and argument parsing.
- :mod:`photo_faces.log` – logging setup for the command line.
- :mod:`photo_faces.errors` – exception hierarchy.
- :mod:`photo_faces.similarity` – cosine similarity and distance between embeddings.
- :mod:`photo_faces.geometry` – bounding boxes, IoU, non-maximum suppression and crops.
- :mod:`photo_faces.images` – finding and decoding image files.
- :mod:`photo_faces.db` – SQLite schema and the :class:`FaceStore` persistence layer.
- :mod:`photo_faces.models` – downloading ONNX models and holding inference sessions.
- :mod:`photo_faces.embedders` – ArcFace face embeddings.
- :mod:`photo_faces.detector` – UltraFace face detection.
- :mod:`photo_faces.backfill` – generating embeddings for faces stored without one.
- :mod:`photo_faces.clustering` – greedy grouping of faces into person clusters.
- :mod:`photo_faces.status` – status messages and cancel tokens for background work.
- :mod:`photo_faces.pipeline` – batch face detection over photos.
- :mod:`photo_faces.tasks` – running operations on worker threads.

Run it from the command line using the `photo-faces` script installed by this
package.
"""

__all__ = [
    "config",
    "log",
    "errors",
    "similarity",
    "geometry",
    "images",
    "db",
    "models",
    "embedders",
    "detector",
    "backfill",
    "clustering",
    "status",
    "pipeline",
    "tasks",
]
