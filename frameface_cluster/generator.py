"""
Embedding generation for a single image.

:class:`EmbeddingGenerator` orchestrates decoding, detection, per‑face
attribute classification and whole‑image feature extraction, and returns one
:class:`~frameface_cluster.models.FaceEmbedding` per image (or ``None`` when
no face is found).  It performs no I/O: persisting the record is the cache
layer's job.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
from typing import Iterator, List, Optional

import numpy as np

from .attributes import default_attributes
from .config import ATTRIBUTE_PADDING
from .detector import FaceDetector
from .embedders import ModelProvider
from .errors import InvalidImage, ModelInferenceFailure
from .images import crop_face, decode_image, to_model_input
from .lru import LRUCache
from .models import FaceEmbedding, FacePrediction

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def buffer_scope() -> Iterator[List[np.ndarray]]:
    """Hold intermediate arrays for one inference call.

    The yielded list is meant to be the only reference to the arrays it
    holds; they are dropped when the block exits, whether it returns
    normally, returns early or raises.
    """
    buffers: List[np.ndarray] = []
    try:
        yield buffers
    finally:
        buffers.clear()


def buffer_key(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class EmbeddingGenerator:
    """Produce face embedding records from encoded images.

    Parameters
    ----------
    provider: ModelProvider
        Initialised model provider.
    detector: FaceDetector, optional
        Detection post‑processing; built from ``provider`` when omitted.
    cache_size: int
        Capacity of the embedding memo keyed by the input buffer hash.
    cache_ttl: float
        Lifetime of memo entries in seconds.
    """

    def __init__(self, provider: ModelProvider, detector: Optional[FaceDetector] = None,
                 cache_size: int = 100, cache_ttl: float = 3600.0) -> None:
        self.provider = provider
        self.detector = detector or FaceDetector(provider)
        self.embeddings_cache: LRUCache[np.ndarray] = LRUCache(max_entries=cache_size, ttl=cache_ttl)

    def generate(self, data: bytes) -> Optional[FaceEmbedding]:
        """Build the embedding record of an encoded image.

        Returns ``None`` when no face passes detection.  Raises
        :class:`InvalidImage` for undecodable input and
        :class:`ModelInferenceFailure` when detection or embedding fails.
        """
        img = decode_image(data)
        try:
            faces = self.detector.detect(img)
        except ModelInferenceFailure:
            raise
        except Exception as exc:
            raise ModelInferenceFailure(f"face detection failed: {exc}") from exc
        if not faces:
            return None

        for face in faces:
            self._attach_attributes(img, face)

        embedding = self.embed_image(img, key=buffer_key(data))
        return FaceEmbedding(
            embedding=[float(v) for v in embedding],
            faces=len(faces),
            predictions=faces,
        )

    def _attach_attributes(self, img: np.ndarray, face: FacePrediction) -> None:
        with buffer_scope() as buffers:
            buffers.append(crop_face(img, face.top_left, face.bottom_right, ATTRIBUTE_PADDING))
            try:
                if buffers[0].size == 0:
                    raise InvalidImage("empty face region")
                attributes, confidence = self.provider.classify_attributes(np.ascontiguousarray(buffers[0]))
            except Exception as exc:
                logger.warning("Attribute classification failed, using defaults: %s", exc)
                attributes, confidence = default_attributes()
        face.attributes = dict(attributes)
        face.attribute_confidence = {k: float(v) for k, v in confidence.items()}

    def preprocess(self, img: np.ndarray) -> np.ndarray:
        """Resize to the embedding model's input size and scale to [-1, 1]."""
        return to_model_input(img, tuple(self.provider.input_size))

    def embed_image(self, img: np.ndarray, key: Optional[str] = None) -> np.ndarray:
        """Return the whole‑image feature vector, memoised under ``key``."""
        if key is not None:
            cached = self.embeddings_cache.get(key)
            if cached is not None:
                return cached
        with buffer_scope() as buffers:
            buffers.append(self.preprocess(img))
            try:
                vector = np.asarray(self.provider.embed(buffers[0]), dtype=np.float32).ravel()
            except ModelInferenceFailure:
                raise
            except Exception as exc:
                raise ModelInferenceFailure(f"embedding inference failed: {exc}") from exc
        if vector.size == 0:
            raise ModelInferenceFailure("model returned an empty embedding")
        vector.setflags(write=False)
        if key is not None:
            self.embeddings_cache.set(key, vector)
        return vector

    def clear_cache(self) -> None:
        self.embeddings_cache.clear()
