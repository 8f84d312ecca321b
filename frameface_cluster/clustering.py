"""
Clustering of cached face embeddings into candidate identities.

The engine runs two passes over an ordered snapshot of the cache:

1. a greedy online pass assigns every embedding to the existing cluster whose
   representative scores the highest combined similarity (embedding cosine
   blended with attribute agreement), or opens a new cluster when no score
   exceeds the threshold;
2. a merge pass repeatedly folds clusters below the minimum size into the
   best matching cluster, measured by average pairwise similarity, until no
   merge is possible.

A cluster's representative is the first embedding added to it and is never
recomputed; assignment therefore depends on iteration order, which is the
insertion order of the cache index.  Clustering only reads the cache.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from .cache import FaceCache
from .config import SIMILARITY_THRESHOLD, MERGE_THRESHOLD, MIN_CLUSTER_SIZE, MAX_SAMPLE_IMAGES
from .similarity import (
    attribute_match, average_pairwise_similarity, combined_similarity, cosine_similarity,
)

logger = logging.getLogger(__name__)


def episode_key(path: str) -> str:
    """Episode of a frame laid out as ``<root>/<episode>/<timestamp>/<frame file>``."""
    parts = Path(path).parts
    if len(parts) >= 3:
        return parts[-3]
    if len(parts) == 2:
        return parts[0]
    return "unknown"


@dataclass
class ClusterItem:
    """One embedding entering the clustering passes."""
    path: str
    embedding: np.ndarray
    attributes: Optional[Dict[str, str]] = None
    attribute_confidence: Optional[Dict[str, float]] = None


@dataclass
class Cluster:
    """Working set of embeddings considered the same identity.

    ``representative`` and the attribute signature come from the first
    member and stay fixed for the cluster's lifetime.
    """
    representative: np.ndarray
    attributes: Optional[Dict[str, str]]
    attribute_confidence: Optional[Dict[str, float]]
    faces: List[np.ndarray] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    episodes: Counter = field(default_factory=Counter)

    @classmethod
    def start(cls, item: ClusterItem, episode: str) -> "Cluster":
        cluster = cls(representative=item.embedding, attributes=item.attributes,
                      attribute_confidence=item.attribute_confidence)
        cluster.add(item, episode)
        return cluster

    @property
    def size(self) -> int:
        return len(self.paths)

    def add(self, item: ClusterItem, episode: str) -> None:
        self.faces.append(item.embedding)
        self.paths.append(item.path)
        self.episodes[episode] += 1

    def merged_with(self, other: "Cluster") -> "Cluster":
        """New cluster holding both member lists; ``self`` keeps the representative."""
        return Cluster(
            representative=self.representative,
            attributes=self.attributes,
            attribute_confidence=self.attribute_confidence,
            faces=self.faces + other.faces,
            paths=self.paths + other.paths,
            episodes=self.episodes + other.episodes,
        )

    def score_item(self, item: ClusterItem) -> float:
        return combined_similarity(
            cosine_similarity(item.embedding, self.representative),
            attribute_match(item.attributes, item.attribute_confidence,
                            self.attributes, self.attribute_confidence),
        )

    def score_cluster(self, other: "Cluster") -> float:
        return combined_similarity(
            average_pairwise_similarity(self.faces, other.faces),
            attribute_match(self.attributes, self.attribute_confidence,
                            other.attributes, other.attribute_confidence),
        )


@dataclass
class SampleImage:
    path: str
    similarity: float


@dataclass
class ClusterSummary:
    size: int
    episodes: Dict[str, int]
    sample_images: List[SampleImage]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "episodes": dict(self.episodes),
            "sampleImages": [{"path": s.path, "similarity": s.similarity} for s in self.sample_images],
        }


@dataclass
class ClusterStats:
    clusters: List[ClusterSummary]
    total_clusters: int
    average_cluster_size: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clusters": [c.to_dict() for c in self.clusters],
            "totalClusters": self.total_clusters,
            "averageClusterSize": self.average_cluster_size,
        }


def assign_pass(items: Iterable[ClusterItem], similarity_threshold: float,
                episode_of: Callable[[str], str] = episode_key) -> List[Cluster]:
    """Greedy first pass: attach each item to its best cluster or start a new one.

    Ties keep the earliest created cluster.
    """
    clusters: List[Cluster] = []
    for item in items:
        best_idx: Optional[int] = None
        best_score = float("-inf")
        for idx, cluster in enumerate(clusters):
            score = cluster.score_item(item)
            if score > best_score:
                best_idx, best_score = idx, score
        if best_idx is not None and best_score > similarity_threshold:
            clusters[best_idx].add(item, episode_of(item.path))
        else:
            clusters.append(Cluster.start(item, episode_of(item.path)))
    return clusters


def _find_merge(clusters: List[Cluster], serials: List[int], merge_threshold: float,
                min_cluster_size: int,
                scores: Dict[Tuple[int, int], float]) -> Optional[Tuple[int, int]]:
    for i, small in enumerate(clusters):
        if small.size >= min_cluster_size:
            continue
        best_j: Optional[int] = None
        best_score = float("-inf")
        for j, other in enumerate(clusters):
            if j == i:
                continue
            pair = (serials[i], serials[j])
            score = scores.get(pair)
            if score is None:
                score = scores[pair] = small.score_cluster(other)
            if score > best_score:
                best_j, best_score = j, score
        if best_j is not None and best_score > merge_threshold:
            return i, best_j
    return None


def merge_small_clusters(clusters: List[Cluster], merge_threshold: float = MERGE_THRESHOLD,
                         min_cluster_size: int = MIN_CLUSTER_SIZE) -> List[Cluster]:
    """Second pass: merge undersized clusters until a fixed point is reached.

    Every merge builds a new cluster list and the scan restarts from the
    beginning, so no list is modified while it is being iterated.  Clusters
    are never mutated, so pair scores are kept across scans under a serial
    number per cluster and only pairs involving the merged cluster are
    scored again.
    """
    current = list(clusters)
    serials = list(range(len(current)))
    next_serial = len(current)
    scores: Dict[Tuple[int, int], float] = {}
    while True:
        merge = _find_merge(current, serials, merge_threshold, min_cluster_size, scores)
        if merge is None:
            return current
        src, dst = merge
        merged = current[dst].merged_with(current[src])
        gone = {serials[src], serials[dst]}
        current = [merged if idx == dst else c for idx, c in enumerate(current) if idx != src]
        serials = [next_serial if idx == dst else s for idx, s in enumerate(serials) if idx != src]
        next_serial += 1
        scores = {pair: s for pair, s in scores.items() if not gone.intersection(pair)}


def summarize(clusters: List[Cluster], min_cluster_size: int = MIN_CLUSTER_SIZE,
              max_samples: int = MAX_SAMPLE_IMAGES) -> ClusterStats:
    """Drop undersized clusters, order by size and pick sample images."""
    kept = sorted((c for c in clusters if c.size >= min_cluster_size), key=lambda c: -c.size)
    summaries: List[ClusterSummary] = []
    for cluster in kept:
        samples = [
            SampleImage(path, 1.0 if i == 0 else cosine_similarity(cluster.representative, face))
            for i, (path, face) in enumerate(zip(cluster.paths, cluster.faces))
        ]
        samples.sort(key=lambda s: -s.similarity)
        summaries.append(ClusterSummary(
            size=cluster.size,
            episodes=dict(cluster.episodes),
            sample_images=samples[:max_samples],
        ))
    total = len(summaries)
    average = float(np.mean([s.size for s in summaries])) if summaries else 0.0
    return ClusterStats(clusters=summaries, total_clusters=total, average_cluster_size=average)


def cluster_items(items: List[ClusterItem], similarity_threshold: float = SIMILARITY_THRESHOLD,
                  merge_threshold: float = MERGE_THRESHOLD, min_cluster_size: int = MIN_CLUSTER_SIZE,
                  max_samples: int = MAX_SAMPLE_IMAGES,
                  episode_of: Callable[[str], str] = episode_key) -> ClusterStats:
    """Run both passes over an ordered list of items."""
    if not items:
        return ClusterStats(clusters=[], total_clusters=0, average_cluster_size=0.0)
    dim = items[0].embedding.shape[0]
    usable = []
    for item in items:
        if item.embedding.shape[0] != dim:
            logger.warning("Skipping %s: embedding has %d dimensions, expected %d",
                           item.path, item.embedding.shape[0], dim)
            continue
        usable.append(item)
    clusters = assign_pass(usable, similarity_threshold, episode_of)
    logger.info("Pass 1 produced %d clusters from %d faces", len(clusters), len(usable))
    clusters = merge_small_clusters(clusters, merge_threshold, min_cluster_size)
    logger.info("Pass 2 left %d clusters", len(clusters))
    return summarize(clusters, min_cluster_size, max_samples)


def load_items(cache: FaceCache) -> List[ClusterItem]:
    """Ordered clustering input taken from the cache index."""
    return [
        ClusterItem(
            path=entry.path,
            embedding=np.asarray(record.embedding, dtype=np.float64),
            attributes=record.attributes,
            attribute_confidence=record.attribute_confidence,
        )
        for entry, record in cache.iter_embeddings()
    ]


def cluster_faces(cache: FaceCache, similarity_threshold: float = SIMILARITY_THRESHOLD,
                  merge_threshold: float = MERGE_THRESHOLD, min_cluster_size: int = MIN_CLUSTER_SIZE,
                  max_samples: int = MAX_SAMPLE_IMAGES,
                  episode_of: Callable[[str], str] = episode_key) -> ClusterStats:
    """Cluster every cached embedding that has at least one face.

    Parameters
    ----------
    cache: FaceCache
        Cache to read; it is not modified.
    similarity_threshold: float
        Combined score a face must exceed to join an existing cluster.
    merge_threshold: float
        Combined score an undersized cluster must exceed to be merged.
    min_cluster_size: int
        Clusters below this size are merged or dropped.
    max_samples: int
        Sample images reported per cluster.
    episode_of: callable
        Maps a frame path to its episode key.

    Returns
    -------
    ClusterStats
        Clusters ordered by descending size.
    """
    return cluster_items(load_items(cache), similarity_threshold, merge_threshold,
                         min_cluster_size, max_samples, episode_of)
