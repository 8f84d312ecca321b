"""
Frame discovery and image helpers.

This module provides utility functions to iterate over the frame images of a
directory tree, decode raw image bytes into a canonical BGR array, cut padded
face regions and prepare model input tensors.  It is intentionally kept
decoupled from the detection/embedding logic so it can be reused in other
contexts.
"""

from __future__ import annotations

import fnmatch
import io
import os
from pathlib import Path
from typing import Iterator, List, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .config import FRAME_PATTERN, FRAME_EXTENSIONS
from .errors import InvalidImage


def iter_frame_paths(root: Path, pattern: str = FRAME_PATTERN,
                     extensions: Sequence[str] = FRAME_EXTENSIONS) -> Iterator[Path]:
    """Yield frame images under ``root`` in a stable, sorted order.

    A file matches when its name matches ``pattern`` (shell wildcards) and its
    extension is one of ``extensions``, compared case-sensitively.
    """
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in filenames:
            stem, ext = os.path.splitext(fn)
            if ext not in extensions:
                continue
            if fnmatch.fnmatchcase(stem, pattern) or fnmatch.fnmatchcase(fn, pattern):
                found.append(Path(dirpath) / fn)
    yield from sorted(found)


def probe_image(data: bytes) -> Tuple[int, int]:
    """Return ``(width, height)`` of an encoded image or raise :class:`InvalidImage`."""
    if not data:
        raise InvalidImage("empty image buffer")
    try:
        with Image.open(io.BytesIO(data)) as im:
            width, height = im.size
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InvalidImage(f"cannot identify image: {exc}") from exc
    if width <= 0 or height <= 0:
        raise InvalidImage(f"invalid image dimensions {width}x{height}")
    return width, height


def to_bgr(img: np.ndarray) -> np.ndarray:
    """Normalise a decoded image to three 8‑bit BGR channels."""
    if img.dtype != np.uint8:
        img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    channels = img.shape[2]
    if channels == 1:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if channels == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    return img


def decode_image(data: bytes) -> np.ndarray:
    """Decode image bytes into a canonical BGR array.

    Raises :class:`InvalidImage` when the buffer cannot be decoded or has a
    zero dimension.
    """
    probe_image(data)
    img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if img is None or img.size == 0 or img.shape[0] == 0 or img.shape[1] == 0:
        raise InvalidImage("image could not be decoded")
    return to_bgr(img)


def crop_region(img: np.ndarray, top_left: Tuple[float, float],
                bottom_right: Tuple[float, float], padding: float) -> np.ndarray:
    """Cut ``[top_left, bottom_right]`` grown by ``padding`` pixels, clamped to the image.

    Returns an empty array if the clamped region has no area.
    """
    h, w = img.shape[:2]
    x1 = max(0, int(round(top_left[0] - padding)))
    y1 = max(0, int(round(top_left[1] - padding)))
    x2 = min(w, int(round(bottom_right[0] + padding)))
    y2 = min(h, int(round(bottom_right[1] + padding)))
    if x2 <= x1 or y2 <= y1:
        return img[0:0, 0:0]
    return img[y1:y2, x1:x2]


def crop_face(img: np.ndarray, top_left: Tuple[float, float],
              bottom_right: Tuple[float, float], padding_ratio: float) -> np.ndarray:
    """Cut a face region padded by ``padding_ratio`` of its shorter side."""
    width = bottom_right[0] - top_left[0]
    height = bottom_right[1] - top_left[1]
    padding = max(0.0, min(width, height)) * padding_ratio
    return crop_region(img, top_left, bottom_right, padding)


def to_model_input(img: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Resize a BGR image to ``size`` (w, h) and scale it to an NCHW float tensor in [-1, 1]."""
    resized = cv2.resize(img, size, interpolation=cv2.INTER_LINEAR)
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
    tensor = rgb.astype(np.float32) / 127.5 - 1.0
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...])

