"""
Image discovery and decoding.

Photos are decoded with Pillow so that EXIF orientation is applied before any
pixel coordinates are computed; face boxes stored at detection time and crops
taken later during embedding backfill therefore always refer to the same
upright pixel grid.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator, Union

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ImageLoadError

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff")


def is_image_path(path: Union[str, Path]) -> bool:
    return str(path).lower().endswith(IMAGE_EXTENSIONS)


def iter_image_paths(root: Path) -> Iterator[Path]:
    """Yield all files under ``root`` that have an image-like extension, in sorted order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            if is_image_path(fn):
                yield Path(dirpath) / fn


def load_image(path: Union[str, Path]) -> np.ndarray:
    """Load an image as an upright ``HxWx3`` RGB ``uint8`` array.

    Raises
    ------
    ImageLoadError
        If the file does not exist or cannot be decoded.
    """
    path = Path(path)
    if not path.is_file():
        raise ImageLoadError(f"Image not found: {path}")
    try:
        with Image.open(path) as im:
            im = ImageOps.exif_transpose(im)
            rgb = im.convert("RGB")
            return np.asarray(rgb, dtype=np.uint8)
    except (OSError, UnidentifiedImageError, ValueError) as exc:
        raise ImageLoadError(f"Failed to load image {path}: {exc}") from exc
