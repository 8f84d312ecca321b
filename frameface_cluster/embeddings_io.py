"""
Parquet export of cached face embeddings.

The JSON cache is optimised for incremental indexing, not analysis.  The
``export`` command flattens it into ``part-*.parquet`` files, one row per
source image with at least one face, so embeddings can be loaded into
pandas or any Arrow‑aware tool.  Each export adds a new part; existing parts
are never rewritten.

We use PyArrow's Parquet support to write and read these files.  Embeddings
are stored as lists of floats in an ``embedding`` column.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .attributes import HEADS
from .cache import FaceCache
from .clustering import episode_key

logger = logging.getLogger(__name__)

COLUMNS = ["path", "episode", "mtime", "faces", "cached", "probability",
           *HEADS.keys(), "embedding"]


def next_part_index(dest: Path) -> int:
    """Determine the next part index for an export directory.

    Scans existing files matching ``part-*.parquet`` and returns an
    incrementing index.  If no parts exist, returns 0.
    """
    max_idx = -1
    for f in dest.glob("part-*.parquet"):
        try:
            idx = int(f.stem.split("-")[1])
        except (IndexError, ValueError):
            continue
        max_idx = max(max_idx, idx)
    return max_idx + 1


def _row(entry: Any, record: Any) -> Dict[str, Any]:
    attributes = record.attributes or {}
    row: Dict[str, Any] = {
        "path": entry.path,
        "episode": episode_key(entry.path),
        "mtime": float(entry.mtime),
        "faces": int(record.faces),
        "cached": record.cached,
        "probability": float(record.predictions[0].probability) if record.predictions else None,
    }
    for name in HEADS:
        row[name] = attributes.get(name)
    row["embedding"] = [float(v) for v in record.embedding]
    return row


def export_embeddings(cache: FaceCache, dest: Path) -> Optional[Path]:
    """Write every cached embedding with faces to a new Parquet part.

    Parameters
    ----------
    cache: FaceCache
        Cache to read; it is not modified.
    dest: Path
        Export directory, created if needed.

    Returns
    -------
    Path or None
        The written part, or ``None`` when the cache holds no faces.
    """
    rows: List[Dict[str, Any]] = [_row(entry, record) for entry, record in cache.iter_embeddings()]
    if not rows:
        logger.info("No cached embeddings to export")
        return None
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    part_path = dest / f"part-{next_part_index(dest):03d}.parquet"
    df = pd.DataFrame(rows, columns=COLUMNS)
    table = pa.Table.from_pandas(df, preserve_index=False)
    pq.write_table(table, part_path)
    logger.info("Exported %d embeddings to %s", len(rows), part_path)
    return part_path


def read_embeddings(dest: Path) -> pd.DataFrame:
    """Read all parts of an export directory and return a concatenated DataFrame."""
    dfs: List[pd.DataFrame] = []
    for part in sorted(Path(dest).glob("part-*.parquet")):
        try:
            dfs.append(pq.read_table(part).to_pandas())
        except (OSError, pa.ArrowInvalid) as exc:
            logger.error("Skipping unreadable export part %s: %s", part, exc)
    return pd.concat(dfs, ignore_index=True) if dfs else pd.DataFrame(columns=COLUMNS)
