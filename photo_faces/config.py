"""
Configuration structures for the face recognition subsystem.

We use :class:`dataclasses.dataclass` to describe the parameters shared by the
detector, embedder, clusterer and the command line interface.  Each field is a
user-controllable tuning parameter with a sensible default; paths default to a
per-user data directory that can be relocated with environment variables.

The :func:`parse_args` function converts command line arguments into a
:class:`FaceConfig` instance.  The selected sub-command and its arguments are
stored in ``extra`` so the entry point can dispatch on them.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DETECTION_MODEL_FILE = "ultraface-320.onnx"
DETECTION_MODEL_URL = (
    "https://github.com/onnx/models/raw/main/validated/vision/body_analysis/"
    "ultraface/models/version-RFB-320.onnx"
)
EMBEDDING_MODEL_FILE = "arcface-resnet100.onnx"
EMBEDDING_MODEL_URL = (
    "https://github.com/onnx/models/raw/main/validated/vision/body_analysis/"
    "arcface/model/arcfaceresnet100-11-int8.onnx"
)


def _env_path(name: str, default: Path) -> Path:
    """Read a path from the environment; missing or blank values mean ``default``."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return Path(value).expanduser()


def default_home() -> Path:
    """Per-user data directory holding the database, models and logs."""
    xdg = _env_path("XDG_DATA_HOME", Path.home() / ".local" / "share")
    return _env_path("PHOTO_FACES_HOME", xdg / "photo-faces")


@dataclass
class FaceConfig:
    """Parameters controlling detection, embedding and clustering.

    Attributes
    ----------
    db_path: Path
        SQLite database holding photos, faces, clusters and people.  Created
        automatically if it does not exist.
    models_dir: Path
        Cache directory for downloaded ONNX model files.  A file that is
        already present is reused as-is.
    detection_model_url, embedding_model_url: str
        Where to fetch the UltraFace and ArcFace weights on first use.
    confidence_threshold: float
        Minimum face score for a detector anchor to be kept.
    nms_threshold: float
        IoU above which overlapping detections are suppressed.
    crop_padding: float
        Fraction of the box size added on each side before embedding a face.
    similarity_threshold: float
        Cosine similarity a face needs with a cluster representative to join
        that cluster.
    backfill_limit: int
        Maximum number of faces embedded by one backfill pass.
    with_embeddings: bool
        Whether batch detection also embeds faces (full mode).  When
        ``False`` embeddings are generated later, on demand, by clustering.
    use_gpu: bool
        Request the CUDA execution provider when ONNX Runtime offers it.
    intra_threads: int
        Intra-op thread count for each inference session.
    """
    db_path: Path = field(default_factory=lambda: _env_path("PHOTO_FACES_DB", default_home() / "photo-faces.sqlite"))
    models_dir: Path = field(default_factory=lambda: _env_path("PHOTO_FACES_MODELS_DIR", default_home() / "models"))
    detection_model_url: str = DETECTION_MODEL_URL
    embedding_model_url: str = EMBEDDING_MODEL_URL
    confidence_threshold: float = 0.7
    nms_threshold: float = 0.3
    crop_padding: float = 0.2
    similarity_threshold: float = 0.55
    backfill_limit: int = 10_000
    with_embeddings: bool = True
    use_gpu: bool = False
    intra_threads: int = 4
    command_line: Optional[str] = None
    # Sub-command and its arguments
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def logs_dir(self) -> Path:
        return _env_path("PHOTO_FACES_LOGS_DIR", default_home() / "logs")


def parse_args(argv: Optional[List[str]] = None) -> FaceConfig:
    """Parse command line arguments and return a :class:`FaceConfig` instance.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    FaceConfig
        Populated configuration object; ``extra["command"]`` names the
        sub-command.
    """
    defaults = FaceConfig()
    parser = argparse.ArgumentParser(
        prog="photo-faces",
        description="Face detection and clustering for a local photo library",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--db", dest="db_path", type=Path, default=defaults.db_path,
                        help="Path to SQLite database file")
    parser.add_argument("--models-dir", dest="models_dir", type=Path, default=defaults.models_dir,
                        help="Directory where ONNX models are cached")
    parser.add_argument("--gpu", dest="use_gpu", action="store_true",
                        help="Use the CUDA execution provider if available")
    parser.add_argument("--threads", dest="intra_threads", type=int, default=defaults.intra_threads,
                        help="Intra-op threads per inference session")
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="Register image files under a directory as photos")
    p_import.add_argument("directory", type=Path)

    p_detect = sub.add_parser("detect", help="Detect faces in photos not yet scanned")
    p_detect.add_argument("--dir", dest="directory", type=str, default=None,
                          help="Only scan photos under this directory")
    p_detect.add_argument("--limit", type=int, default=10_000,
                          help="Maximum number of photos to scan")
    p_detect.add_argument("--fast", action="store_true",
                          help="Skip embeddings; they are generated when clustering")
    p_detect.add_argument("--confidence", dest="confidence_threshold", type=float,
                          default=defaults.confidence_threshold,
                          help="Minimum detection confidence")

    p_backfill = sub.add_parser("backfill", help="Generate embeddings for faces lacking one")
    p_backfill.add_argument("--limit", dest="backfill_limit", type=int, default=defaults.backfill_limit,
                            help="Maximum number of faces to embed")

    p_cluster = sub.add_parser("cluster", help="Recompute face clusters")
    p_cluster.add_argument("--threshold", dest="similarity_threshold", type=float,
                           default=defaults.similarity_threshold,
                           help="Cosine similarity needed to join a cluster")

    sub.add_parser("clusters", help="List face clusters")
    sub.add_parser("people", help="List people")

    p_promote = sub.add_parser("promote", help="Turn a cluster into a named person")
    p_promote.add_argument("cluster_id", type=int)
    p_promote.add_argument("name", type=str)

    p_merge = sub.add_parser("merge", help="Merge several clusters into one person")
    p_merge.add_argument("cluster_ids", type=int, nargs="+")
    p_merge.add_argument("--name", type=str, default=None)

    args = parser.parse_args(argv)
    options = vars(args)

    config = FaceConfig(
        db_path=args.db_path,
        models_dir=args.models_dir,
        use_gpu=args.use_gpu,
        intra_threads=args.intra_threads,
        command_line=" ".join([parser.prog] + list(argv if argv is not None else sys.argv[1:])),
    )
    # Options that map onto config fields override the defaults
    for name in ("confidence_threshold", "backfill_limit", "similarity_threshold"):
        if name in options:
            setattr(config, name, options.pop(name))
    if options.pop("fast", False):
        config.with_embeddings = False
    for name in ("db_path", "models_dir", "use_gpu", "intra_threads"):
        options.pop(name, None)
    config.extra = options
    return config
