"""
Face crops for visual inspection of clusters.

For every reported cluster the first detected face of each sample image is
cut out, resized to a square and saved as
``<output_dir>/cluster-<N>/face-<I>-<similarity>.jpg`` (both counters start
at 1).  Crops are generated in parallel; a crop that fails is logged and
skipped.
"""

from __future__ import annotations

import concurrent.futures
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from PIL import Image

from .cache import FaceCache
from .clustering import ClusterStats
from .errors import CacheCorruption

logger = logging.getLogger(__name__)

Box = Tuple[int, int, int, int]


def _generate_crop(src: Path, box: Box, dst: Path, size: int) -> None:
    """Cut ``box`` (left, top, right, bottom) out of ``src`` and save a JPEG."""
    with Image.open(src) as im:
        left, top, right, bottom = box
        left, top = max(0, left), max(0, top)
        right, bottom = min(im.width, right), min(im.height, bottom)
        if right <= left or bottom <= top:
            raise ValueError(f"face box {box} lies outside the {im.width}x{im.height} image")
        face = im.convert("RGB").crop((left, top, right, bottom))
        face = face.resize((size, size), Image.Resampling.LANCZOS)
        dst.parent.mkdir(parents=True, exist_ok=True)
        face.save(dst, format="JPEG", quality=90)


def _face_box(cache: FaceCache, path: str) -> Optional[Box]:
    record = cache.embedding_for(path)
    if not record.predictions:
        return None
    face = record.predictions[0]
    return (round(face.top_left[0]), round(face.top_left[1]),
            round(face.bottom_right[0]), round(face.bottom_right[1]))


def extract_cluster_crops(stats: ClusterStats, cache: FaceCache, output_dir: Path,
                          size: int = 224, workers: int = 4) -> List[Path]:
    """Write face crops of every cluster's sample images.

    Parameters
    ----------
    stats: ClusterStats
        Clustering result whose sample images are cropped.
    cache: FaceCache
        Supplies the face boxes of each sample image.
    output_dir: Path
        Root directory for the ``cluster-N`` folders.
    size: int
        Edge length of the square crops.
    workers: int
        Number of threads used for parallel crop generation.

    Returns
    -------
    list of Path
        Crops written successfully.
    """
    jobs: List[Tuple[Path, Box, Path]] = []
    for cluster_idx, cluster in enumerate(stats.clusters, start=1):
        cluster_dir = Path(output_dir) / f"cluster-{cluster_idx}"
        for image_idx, sample in enumerate(cluster.sample_images, start=1):
            try:
                box = _face_box(cache, sample.path)
            except (CacheCorruption, OSError) as exc:
                logger.error("Error loading faces of %s: %s", sample.path, exc)
                continue
            if box is None:
                continue
            dst = cluster_dir / f"face-{image_idx}-{sample.similarity:.3f}.jpg"
            jobs.append((Path(sample.path), box, dst))

    def work(job: Tuple[Path, Box, Path]) -> Optional[Path]:
        src, box, dst = job
        try:
            _generate_crop(src, box, dst, size)
        except (OSError, ValueError) as exc:
            logger.error("Error extracting face from %s: %s", src, exc)
            return None
        return dst

    if not jobs:
        return []
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        written = [dst for dst in executor.map(work, jobs) if dst is not None]
    logger.info("Wrote %d face crops to %s", len(written), output_dir)
    return written
