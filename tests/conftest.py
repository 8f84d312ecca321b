"""Shared test fixtures."""

import threading
from pathlib import Path

import cv2
import numpy as np
import pytest

from frameface_cluster.cache import FaceCache
from frameface_cluster.embedders import ModelProvider
from frameface_cluster.generator import EmbeddingGenerator

GRID = 4
EMBEDDING_DIM = GRID * GRID * 3


class FakeProvider(ModelProvider):
    """Deterministic stand-in for the InsightFace provider.

    Uniform images contain no face.  Any other image has one face covering
    its central half with level eyes, unless ``detections`` overrides the raw
    output.  ``embed`` returns the channel means of a 4x4 grid of the input
    tensor, so images built from the same block pattern embed alike.
    """

    input_size = (64, 64)

    def __init__(self, detections=None):
        super().__init__()
        self.detections = detections
        self.embed_calls = 0
        self.detect_calls = 0
        self._lock = threading.Lock()

    def detect(self, img):
        self.require_ready()
        with self._lock:
            self.detect_calls += 1
        if float(img.std()) < 1.0:
            return []
        if self.detections is not None:
            return [dict(d) for d in self.detections]
        h, w = img.shape[:2]
        return [{
            "topLeft": [w * 0.25, h * 0.25],
            "bottomRight": [w * 0.75, h * 0.75],
            "probability": 0.9,
            "landmarks": [[w * 0.4, h * 0.4], [w * 0.6, h * 0.4], [w * 0.5, h * 0.5],
                          [w * 0.42, h * 0.6], [w * 0.58, h * 0.6]],
        }]

    def embed(self, tensor):
        self.require_ready()
        with self._lock:
            self.embed_calls += 1
        x = np.asarray(tensor, dtype=np.float32)[0]
        feats = [
            cell.mean(axis=(1, 2))
            for band in np.array_split(x, GRID, axis=1)
            for cell in np.array_split(band, GRID, axis=2)
        ]
        return np.concatenate(feats).astype(np.float32)


def make_face_image(identity, variant=0, size=64):
    """BGR image made of a 4x4 block pattern unique to ``identity``.

    Variants of one identity differ by a little pixel noise.
    """
    rng = np.random.default_rng(identity)
    blocks = rng.integers(0, 256, size=(GRID, GRID, 3)).astype(np.float32)
    img = np.repeat(np.repeat(blocks, size // GRID, axis=0), size // GRID, axis=1)
    if variant:
        noise = np.random.default_rng((identity, variant)).normal(0.0, 2.0, img.shape)
        img = img + noise
    return np.clip(img, 0, 255).astype(np.uint8)


def make_blank_image(size=64, value=128):
    return np.full((size, size, 3), value, dtype=np.uint8)


def encode_png(img):
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


def write_frame(root, episode, timestamp, img, name="frame-blank.png"):
    """Write a frame laid out as ``<root>/<episode>/<timestamp>/<name>``."""
    path = Path(root) / episode / timestamp / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_png(img))
    return path


@pytest.fixture
def provider():
    """Initialised fake model provider."""
    p = FakeProvider().initialize()
    yield p
    p.dispose()


@pytest.fixture
def generator(provider):
    return EmbeddingGenerator(provider)


@pytest.fixture
def cache(tmp_path):
    """Empty cache in a temporary primary directory."""
    return FaceCache(tmp_path / "cache")


@pytest.fixture
def frames_root(tmp_path):
    root = tmp_path / "frames"
    root.mkdir()
    return root
