"""
Logging setup for the command line entry point.

A single ``dictConfig`` call installs a console handler and a plain log file
under the data directory.  Library modules only ever call
``logging.getLogger(__name__)``; nothing is configured on import.

Env:
  PHOTO_FACES_LOG=INFO|DEBUG|WARNING|ERROR
  PHOTO_FACES_LOGS_DIR=<dir>     # optional; else <data dir>/logs
"""

from __future__ import annotations

import logging.config
import os
from pathlib import Path
from typing import Any, Dict

LOG_FILENAME = "photo-faces.log"


def get_logging_config(logs_dir: Path) -> Dict[str, Any]:
    level = os.getenv("PHOTO_FACES_LOG", "INFO").strip().upper() or "INFO"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%H:%M:%S",
            },
            "file": {
                "format": "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "console",
                "stream": "ext://sys.stderr",
            },
            "file": {
                "class": "logging.FileHandler",
                "level": level,
                "formatter": "file",
                "filename": str(logs_dir / LOG_FILENAME),
                "encoding": "utf-8",
                "delay": True,  # create file on first write
            },
        },
        "root": {"level": level, "handlers": ["console", "file"]},
        "loggers": {
            "photo_faces": {"level": level, "propagate": True},
        },
    }


def setup_logging(logs_dir: Path) -> None:
    logs_dir.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(get_logging_config(logs_dir))
