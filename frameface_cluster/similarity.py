"""
Similarity primitives shared by clustering and the query service.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from .attributes import DEFAULT_CONFIDENCE, UNKNOWN
from .config import EMBEDDING_WEIGHT, ATTRIBUTE_WEIGHT

ATTRIBUTE_WEIGHTS: Dict[str, float] = {
    "gender": 0.4,
    "hairColor": 0.3,
    "ageGroup": 0.2,
    "skinTone": 0.1,
}


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, clipped to [-1, 1].

    Zero vectors have similarity 0 with everything.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        raise ValueError(f"vector length mismatch: {va.size} != {vb.size}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def average_pairwise_similarity(faces_a: Sequence[Sequence[float]],
                                faces_b: Sequence[Sequence[float]]) -> float:
    """Mean cosine similarity over every pair drawn from the two groups."""
    if not len(faces_a) or not len(faces_b):
        return 0.0
    ma = _normalise_rows(np.asarray(faces_a, dtype=np.float64))
    mb = _normalise_rows(np.asarray(faces_b, dtype=np.float64))
    return float(np.clip(ma @ mb.T, -1.0, 1.0).mean())


def _normalise_rows(m: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(m, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return m / norms


def _with_defaults(attributes: Optional[Mapping[str, str]],
                   confidence: Optional[Mapping[str, float]]) -> Tuple[Dict[str, str], Dict[str, float]]:
    attrs = {name: UNKNOWN for name in ATTRIBUTE_WEIGHTS}
    conf = {name: DEFAULT_CONFIDENCE for name in ATTRIBUTE_WEIGHTS}
    if attributes:
        for name in ATTRIBUTE_WEIGHTS:
            if attributes.get(name) is not None:
                attrs[name] = attributes[name]
                conf[name] = float((confidence or {}).get(name, DEFAULT_CONFIDENCE))
    return attrs, conf


def attribute_match(attrs_a: Optional[Mapping[str, str]], conf_a: Optional[Mapping[str, float]],
                    attrs_b: Optional[Mapping[str, str]], conf_b: Optional[Mapping[str, float]]) -> float:
    """Weighted categorical agreement between two faces, in [0, 1].

    Each matching category contributes ``weight * min(confidence_a,
    confidence_b)``; the sum is normalised by the total weight.  Missing
    attributes take the neutral default with confidence 0.5.
    """
    a, ca = _with_defaults(attrs_a, conf_a)
    b, cb = _with_defaults(attrs_b, conf_b)
    score = 0.0
    for name, weight in ATTRIBUTE_WEIGHTS.items():
        if a[name] == b[name]:
            score += weight * max(0.0, min(1.0, ca[name], cb[name]))
    return score / sum(ATTRIBUTE_WEIGHTS.values())


def combined_similarity(embedding_similarity: float, attribute_score: float) -> float:
    """Blend of embedding and attribute similarity used for clustering."""
    return EMBEDDING_WEIGHT * embedding_similarity + ATTRIBUTE_WEIGHT * attribute_score
