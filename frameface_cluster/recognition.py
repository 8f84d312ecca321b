"""
Pairwise face comparison and nearest‑neighbour search.

Searches run as an exact inner‑product scan with FAISS over L2‑normalised
vectors, which is the cosine similarity used by the clustering engine.
Nothing in this module writes to the cache.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import faiss
import numpy as np

from .cache import FaceCache
from .config import SEARCH_THRESHOLD, SEARCH_LIMIT
from .generator import EmbeddingGenerator
from .images import crop_face, decode_image
from .lru import LRUCache
from .models import FaceEmbedding, FacePrediction
from .similarity import cosine_similarity

logger = logging.getLogger(__name__)

FACE_CROP_PADDING = 0.3


def alignment_score(landmarks: Optional[Sequence[Sequence[float]]]) -> float:
    """Face alignment quality from the roll of the eye line.

    Faces within 10 degrees of level score 1.0; beyond that the score falls
    linearly to 0 at 45 degrees.  Faces without landmarks score 1.0.
    """
    if not landmarks or len(landmarks) < 2:
        return 1.0
    (x0, y0), (x1, y1) = landmarks[0][:2], landmarks[1][:2]
    angle = math.degrees(math.atan2(y1 - y0, abs(x1 - x0)))
    if abs(angle) < 10:
        return 1.0
    return max(0.0, 1.0 - abs(angle) / 45.0)


@dataclass
class RecognitionResult:
    embedding: np.ndarray
    face: FacePrediction
    alignment_score: float


@dataclass
class MatchResult:
    embedding: FaceEmbedding
    similarity: float
    alignment_score: float = 1.0


@dataclass
class ComparisonResult:
    similarity: float
    alignment_score1: float
    alignment_score2: float


def search(query: Sequence[float], candidates: Sequence[FaceEmbedding],
           threshold: float = SEARCH_THRESHOLD, limit: Optional[int] = SEARCH_LIMIT,
           query_alignment: float = 1.0) -> List[MatchResult]:
    """Rank ``candidates`` by cosine similarity to ``query``.

    Candidates without an embedding, or whose length differs from the
    query, are skipped.  Results below ``threshold`` are dropped; ties keep
    candidate order.
    """
    q = np.asarray(query, dtype=np.float32).reshape(1, -1)
    dim = q.shape[1]
    usable = [c for c in candidates if len(c.embedding) == dim]
    if dim == 0 or not usable:
        return []
    skipped = len(candidates) - len(usable)
    if skipped:
        logger.debug("Skipped %d candidates with mismatched embeddings", skipped)

    matrix = np.ascontiguousarray(np.asarray([c.embedding for c in usable], dtype=np.float32))
    faiss.normalize_L2(matrix)
    q = np.ascontiguousarray(q)
    faiss.normalize_L2(q)
    index = faiss.IndexFlatIP(dim)
    index.add(matrix)
    scores, ids = index.search(q, len(usable))

    ranked = []
    for score, idx in zip(scores[0], ids[0]):
        if idx < 0:
            continue
        similarity = float(np.clip(score, -1.0, 1.0))
        if similarity >= threshold:
            ranked.append((similarity, int(idx)))
    ranked.sort(key=lambda pair: (-pair[0], pair[1]))
    if limit is not None:
        ranked = ranked[:limit]
    return [MatchResult(embedding=usable[idx], similarity=sim, alignment_score=query_alignment)
            for sim, idx in ranked]


def find_matches(query: Sequence[float], candidates: Sequence[FaceEmbedding],
                 threshold: float = SEARCH_THRESHOLD, limit: Optional[int] = None,
                 min_faces: Optional[int] = None, max_faces: Optional[int] = None,
                 query_alignment: float = 1.0) -> List[MatchResult]:
    """:func:`search` restricted to candidates with ``min_faces..max_faces`` faces."""
    filtered = [
        c for c in candidates
        if (min_faces is None or c.faces >= min_faces) and (max_faces is None or c.faces <= max_faces)
    ]
    return search(query, filtered, threshold, limit, query_alignment)


def search_cache(cache: FaceCache, query: Sequence[float], threshold: float = SEARCH_THRESHOLD,
                 limit: Optional[int] = SEARCH_LIMIT, min_faces: Optional[int] = None,
                 max_faces: Optional[int] = None) -> List[MatchResult]:
    """Search every cached embedding."""
    candidates = [record for _entry, record in cache.iter_embeddings()]
    return find_matches(query, candidates, threshold, limit, min_faces, max_faces)


class FaceRecognitionService:
    """Comparison and lookup built on an :class:`EmbeddingGenerator`.

    Parameters
    ----------
    generator: EmbeddingGenerator
        Supplies decoding, detection and feature extraction.
    min_confidence: float
        Faces below this detection probability are ignored by
        :meth:`process_image`.
    max_faces: int
        Maximum faces processed per image, most confident first.
    alignment_threshold: float
        Faces whose :func:`alignment_score` is lower are skipped.
    cache_size, cache_ttl:
        Bounds of the processed‑face memo.
    """

    def __init__(self, generator: EmbeddingGenerator, min_confidence: float = 0.8,
                 max_faces: int = 5, alignment_threshold: float = 0.7,
                 cache_size: int = 1000, cache_ttl: float = 3600.0) -> None:
        self.generator = generator
        self.min_confidence = min_confidence
        self.max_faces = max_faces
        self.alignment_threshold = alignment_threshold
        self.processed_faces: LRUCache[RecognitionResult] = LRUCache(max_entries=cache_size, ttl=cache_ttl)

    @staticmethod
    def _face_key(data: bytes, face: FacePrediction) -> str:
        digest = hashlib.md5(data)
        digest.update(json.dumps(face.to_dict(), sort_keys=True).encode("utf-8"))
        return digest.hexdigest()

    def process_image(self, data: bytes) -> List[RecognitionResult]:
        """Embed each sufficiently confident and well aligned face of an image."""
        img = decode_image(data)
        faces = [f for f in self.generator.detector.detect(img) if f.probability >= self.min_confidence]
        faces.sort(key=lambda f: -f.probability)
        results: List[RecognitionResult] = []
        for face in faces[: self.max_faces]:
            key = self._face_key(data, face)
            cached = self.processed_faces.get(key)
            if cached is not None:
                results.append(cached)
                continue
            score = alignment_score(face.landmarks)
            if score < self.alignment_threshold:
                continue
            crop = crop_face(img, face.top_left, face.bottom_right, FACE_CROP_PADDING)
            if crop.size == 0:
                continue
            vector = self.generator.embed_image(np.ascontiguousarray(crop))
            norm = float(np.linalg.norm(vector))
            result = RecognitionResult(
                embedding=vector / norm if norm > 0 else vector,
                face=face,
                alignment_score=score,
            )
            self.processed_faces.set(key, result)
            results.append(result)
        return results

    def compare(self, image_a: bytes, image_b: bytes) -> Optional[ComparisonResult]:
        """Similarity of two images' embeddings, or ``None`` if either has no face."""
        first = self.generator.generate(image_a)
        second = self.generator.generate(image_b)
        if first is None or second is None:
            return None
        return ComparisonResult(
            similarity=cosine_similarity(first.embedding, second.embedding),
            alignment_score1=alignment_score(first.predictions[0].landmarks),
            alignment_score2=alignment_score(second.predictions[0].landmarks),
        )

    def search(self, query: Sequence[float], candidates: Sequence[FaceEmbedding],
               threshold: float = SEARCH_THRESHOLD, limit: Optional[int] = SEARCH_LIMIT) -> List[MatchResult]:
        return search(query, candidates, threshold, limit)

    def find_matches(self, query: RecognitionResult, candidates: Sequence[FaceEmbedding],
                     threshold: float = SEARCH_THRESHOLD, limit: Optional[int] = None,
                     min_faces: Optional[int] = None,
                     max_faces: Optional[int] = None) -> List[MatchResult]:
        """Rank cached records against a face returned by :meth:`process_image`."""
        return find_matches(query.embedding, candidates, threshold, limit, min_faces, max_faces,
                            query_alignment=query.alignment_score)

    def clear_cache(self) -> None:
        self.processed_faces.clear()
