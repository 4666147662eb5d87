"""
ONNX model registry.

The detector and the embedder each need one ONNX Runtime inference session.
:class:`ModelRegistry` downloads the weight files on first use, creates the
sessions lazily and independently (a detect-only pass never touches the
embedding model) and serialises inference on each session with its own lock.
A registry is created once by the caller and handed to every component that
runs a model.
"""

from __future__ import annotations

import logging
import threading
import urllib.request
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .config import (
    DETECTION_MODEL_FILE, DETECTION_MODEL_URL, EMBEDDING_MODEL_FILE, EMBEDDING_MODEL_URL,
    FaceConfig,
)
from .errors import ModelLoadError

logger = logging.getLogger(__name__)

DETECTION = "detection"
EMBEDDING = "embedding"

SessionFactory = Callable[[Path], Any]


class ModelSession:
    """An inference session paired with the lock that guards it.

    ``session`` is anything exposing the ONNX Runtime ``run`` and
    ``get_inputs`` methods.
    """

    def __init__(self, name: str, session: Any) -> None:
        self.name = name
        self.session = session
        self.lock = threading.Lock()

    @property
    def input_name(self) -> str:
        return self.session.get_inputs()[0].name

    def run(self, feeds: Dict[str, np.ndarray], output_names: Optional[List[str]] = None) -> List[np.ndarray]:
        with self.lock:
            return self.session.run(output_names, feeds)


class ModelRegistry:
    """Lazily created inference sessions for the detection and embedding models.

    Parameters
    ----------
    models_dir: Path
        Cache directory for downloaded model files.
    detection_url, embedding_url: str
        Download locations used when a model file is not cached yet.
    use_gpu: bool
        Prefer the CUDA execution provider when ONNX Runtime offers it.
    intra_threads: int
        Intra-op thread count for each session.
    session_factory: callable, optional
        ``factory(model_path) -> session``; defaults to creating an
        ``onnxruntime.InferenceSession``.
    """

    def __init__(self, models_dir: Path, detection_url: str = DETECTION_MODEL_URL,
                 embedding_url: str = EMBEDDING_MODEL_URL, use_gpu: bool = False,
                 intra_threads: int = 4, session_factory: Optional[SessionFactory] = None) -> None:
        self.models_dir = Path(models_dir)
        self.use_gpu = use_gpu
        self.intra_threads = intra_threads
        self._sources = {
            DETECTION: (DETECTION_MODEL_FILE, detection_url),
            EMBEDDING: (EMBEDDING_MODEL_FILE, embedding_url),
        }
        self._session_factory = session_factory or self._onnx_session
        self._sessions: Dict[str, ModelSession] = {}
        self._init_locks = {name: threading.Lock() for name in self._sources}

    @classmethod
    def from_config(cls, config: FaceConfig) -> "ModelRegistry":
        return cls(
            models_dir=config.models_dir,
            detection_url=config.detection_model_url,
            embedding_url=config.embedding_model_url,
            use_gpu=config.use_gpu,
            intra_threads=config.intra_threads,
        )

    def ensure_model(self, filename: str, url: str) -> Path:
        """Return the cached model path, downloading it first if needed.

        An existing file is reused without any integrity check.  A failed
        download leaves no file behind.

        Raises
        ------
        ModelLoadError
            If the directory cannot be created or the download fails.
        """
        path = self.models_dir / filename
        if path.exists():
            return path
        partial = path.with_name(path.name + ".part")
        logger.info("Downloading %s from %s", filename, url)
        try:
            self.models_dir.mkdir(parents=True, exist_ok=True)
            urllib.request.urlretrieve(url, partial)
            partial.replace(path)
        except (OSError, ValueError) as exc:
            # urlretrieve raises ValueError for malformed URLs
            partial.unlink(missing_ok=True)
            raise ModelLoadError(f"Failed to download {filename} from {url}: {exc}") from exc
        logger.info("Saved %s (%.1f MB)", path, path.stat().st_size / 1e6)
        return path

    def _providers(self) -> List[str]:
        import onnxruntime as ort
        if self.use_gpu and "CUDAExecutionProvider" in ort.get_available_providers():
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _onnx_session(self, model_path: Path) -> Any:
        import onnxruntime as ort
        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.intra_op_num_threads = self.intra_threads
        return ort.InferenceSession(str(model_path), sess_options=options, providers=self._providers())

    def register_session(self, name: str, session: Any) -> ModelSession:
        """Install an already constructed session under ``name``."""
        if name not in self._sources:
            raise ValueError(f"Unknown model: {name}")
        wrapped = ModelSession(name, session)
        with self._init_locks[name]:
            self._sessions[name] = wrapped
        return wrapped

    def is_loaded(self, name: str) -> bool:
        return name in self._sessions

    def load(self, name: str) -> ModelSession:
        """Return the session for ``name``, creating it on first call.

        Safe to call from several threads; the session is created once.

        Raises
        ------
        ModelLoadError
            If the model cannot be downloaded or the session cannot be built.
        """
        if name not in self._sources:
            raise ValueError(f"Unknown model: {name}")
        session = self._sessions.get(name)
        if session is not None:
            return session
        with self._init_locks[name]:
            session = self._sessions.get(name)
            if session is not None:
                return session
            filename, url = self._sources[name]
            path = self.ensure_model(filename, url)
            logger.info("Loading %s model from %s", name, path)
            try:
                raw = self._session_factory(path)
            except ModelLoadError:
                raise
            except Exception as exc:
                raise ModelLoadError(f"Failed to create {name} session from {path}: {exc}") from exc
            session = ModelSession(name, raw)
            self._sessions[name] = session
            return session

    def detection_session(self) -> ModelSession:
        return self.load(DETECTION)

    def embedding_session(self) -> ModelSession:
        return self.load(EMBEDDING)
