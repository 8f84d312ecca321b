"""
Configuration structures and constants for the frameface pipeline.

We use :class:`dataclasses.dataclass` to describe the parameters accepted by the
command line interface.  Each field corresponds to a user‑controllable tuning
parameter, with sensible defaults.

The :func:`parse_args` function converts command line arguments into a
:class:`RunConfig` instance.  The command line options are intentionally kept
concise; for more advanced usage (e.g. injecting a custom model provider)
users can build the components directly and skip the CLI.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List

# Cache directory layout
PRIMARY_CACHE_DIR = Path(os.path.expanduser("~")) / ".face-cache"
INDEX_FILE_NAME = "index.json"
WORKER_LOG_NAME = "worker.log"
CACHE_FILE_PATTERN = re.compile(r"^[a-f0-9]{8}\.json$")

# Batch processing
BATCH_SIZE = 12
CPU_FRACTION = 0.75
FRAME_PATTERN = "frame-blank*"
FRAME_EXTENSIONS = (".jpg", ".png", ".webp")

# Detection
MIN_DETECTION_CONFIDENCE = 0.75
NMS_IOU_THRESHOLD = 0.3
MAX_DETECTIONS = 100
RECOVERY_PADDING = 20
ATTRIBUTE_PADDING = 0.2

# Embedding model input
EMBEDDING_INPUT_SIZE = (224, 224)

# Clustering
SIMILARITY_THRESHOLD = 0.75
MERGE_THRESHOLD = 0.65
MIN_CLUSTER_SIZE = 2
MAX_SAMPLE_IMAGES = 5
EMBEDDING_WEIGHT = 0.7
ATTRIBUTE_WEIGHT = 0.3

# Appearance report
MAIN_CHARACTER_SIZE = 5
LARGE_CLUSTER_SIZE = 5
MEDIUM_CLUSTER_SIZE = 3

# Query service
SEARCH_THRESHOLD = 0.6
SEARCH_LIMIT = 10

COMMANDS = ("index", "cluster", "validate", "cleanup", "stats", "export", "compare", "search",
            "appearances")


def default_workers() -> int:
    """Worker pool size: roughly three quarters of the available cores."""
    return max(1, int((os.cpu_count() or 1) * CPU_FRACTION))


@dataclass
class RunConfig:
    """Parameters controlling a single command invocation.

    Attributes
    ----------
    command: str
        One of :data:`COMMANDS`.
    cache_dir: Path
        Primary cache directory holding ``index.json`` and the per‑image
        ``<hash>.json`` embedding files.
    worker_cache_dirs: list of Path
        Secondary cache directories that are searched after ``cache_dir``
        when resolving embedding files.
    input_dir: Path, optional
        Root directory of frame images for the ``index`` command.
    rebuild_index: bool
        Only reconcile the index against existing cache files; no embedding
        is generated.
    db_path: Path, optional
        SQLite database recording batch run history.  Disabled when ``None``.
    model_name: str
        InsightFace model package used for detection and embeddings.
    attribute_models: Path, optional
        Directory with ``gender.onnx``, ``age.onnx``, ``hair.onnx`` and
        ``skin.onnx`` classifier heads.  Categories without a head fall back
        to neutral defaults.
    use_gpu: bool
        Whether to request the CUDA execution provider.
    batch_size: int
        Number of files per batch; the index is persisted once per batch.
    workers: int
        Size of the worker pool.
    sim_threshold: float
        Combined similarity threshold for the greedy assignment pass.
    merge_threshold: float
        Combined similarity threshold used when merging small clusters.
    min_cluster_size: int
        Clusters smaller than this are merged or dropped.
    crops_dir: Path, optional
        When set, ``cluster`` also writes face crops of the sample images.
    main_character_size: int
        Minimum cluster size counted as a main character by ``appearances``.
    export_dir: Path, optional
        Destination of the Parquet export.
    images: list of Path
        Image arguments of ``compare`` (two) and ``search`` (one).
    threshold: float
        Minimum similarity for ``search`` results.
    limit: int
        Maximum number of ``search`` results.
    min_faces, max_faces: int, optional
        Candidate face‑count filters for ``search``.
    command_line: str, optional
        Full original command line invocation, recorded for reproducibility.
    """
    command: str
    cache_dir: Path = PRIMARY_CACHE_DIR
    worker_cache_dirs: List[Path] = field(default_factory=list)
    input_dir: Optional[Path] = None
    rebuild_index: bool = False
    db_path: Optional[Path] = None
    model_name: str = "buffalo_l"
    attribute_models: Optional[Path] = None
    use_gpu: bool = True
    batch_size: int = BATCH_SIZE
    workers: int = field(default_factory=default_workers)
    sim_threshold: float = SIMILARITY_THRESHOLD
    merge_threshold: float = MERGE_THRESHOLD
    min_cluster_size: int = MIN_CLUSTER_SIZE
    crops_dir: Optional[Path] = None
    main_character_size: int = MAIN_CHARACTER_SIZE
    export_dir: Optional[Path] = None
    images: List[Path] = field(default_factory=list)
    threshold: float = SEARCH_THRESHOLD
    limit: int = SEARCH_LIMIT
    min_faces: Optional[int] = None
    max_faces: Optional[int] = None
    verbose: int = 0
    command_line: Optional[str] = None


def _add_model_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", dest="model_name", type=str, default="buffalo_l",
                        help="InsightFace model package for detection and embeddings")
    parser.add_argument("--attribute-models", dest="attribute_models", type=Path, default=None,
                        help="Directory containing gender/age/hair/skin ONNX classifier heads")
    parser.add_argument("--cpu", dest="use_gpu", action="store_false",
                        help="Run inference on the CPU only")


def _add_cluster_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--threshold", dest="sim_threshold", type=float,
                        default=SIMILARITY_THRESHOLD,
                        help="Combined similarity threshold for cluster assignment")
    parser.add_argument("--merge-threshold", dest="merge_threshold", type=float,
                        default=MERGE_THRESHOLD,
                        help="Combined similarity threshold for merging small clusters")
    parser.add_argument("--min-cluster-size", dest="min_cluster_size", type=int,
                        default=MIN_CLUSTER_SIZE,
                        help="Minimum number of images in a reported cluster")


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    """Parse command line arguments and return a :class:`RunConfig` instance.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    RunConfig
        Populated configuration object.
    """
    parser = argparse.ArgumentParser(
        prog="frameface",
        description="Face embedding cache and identity clustering for video frames",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--cache-dir", dest="cache_dir", type=Path, default=PRIMARY_CACHE_DIR,
                        help="Primary cache directory")
    parser.add_argument("--worker-cache-dir", dest="worker_cache_dirs", type=Path,
                        action="append", default=[],
                        help="Additional cache directory searched for embedding files")
    parser.add_argument("-v", "--verbose", dest="verbose", action="count", default=0,
                        help="Increase log verbosity (-v info, -vv debug)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Embed new or changed frames into the cache")
    p_index.add_argument("input_dir", type=Path, help="Root directory of frame images")
    p_index.add_argument("--rebuild-index", dest="rebuild_index", action="store_true",
                         help="Only rebuild the index from existing cache files")
    p_index.add_argument("--batch-size", dest="batch_size", type=int, default=BATCH_SIZE,
                         help="Files per batch; the index is saved after every batch")
    p_index.add_argument("--workers", dest="workers", type=int, default=default_workers(),
                         help="Number of parallel workers")
    p_index.add_argument("--db", dest="db_path", type=Path, default=None,
                         help="SQLite database recording run history")
    _add_model_options(p_index)

    p_cluster = sub.add_parser("cluster", help="Group cached faces into identity clusters")
    _add_cluster_options(p_cluster)
    p_cluster.add_argument("--crops", dest="crops_dir", type=Path, default=None,
                           help="Write face crops of sample images to this directory")

    p_appear = sub.add_parser("appearances", help="Summarise character appearances per episode")
    _add_cluster_options(p_appear)
    p_appear.add_argument("--main-character-size", dest="main_character_size", type=int,
                          default=MAIN_CHARACTER_SIZE,
                          help="Minimum cluster size of a main character")

    sub.add_parser("validate", help="Report cache defects without modifying anything")

    p_cleanup = sub.add_parser("cleanup", help="Repair cache defects")
    _add_model_options(p_cleanup)

    sub.add_parser("stats", help="Print cache statistics")

    p_export = sub.add_parser("export", help="Export cached embeddings to Parquet")
    p_export.add_argument("export_dir", type=Path, help="Destination directory")

    p_compare = sub.add_parser("compare", help="Compare the faces of two images")
    p_compare.add_argument("images", type=Path, nargs=2, help="Two image files")
    _add_model_options(p_compare)

    p_search = sub.add_parser("search", help="Find cached images resembling a face")
    p_search.add_argument("image", type=Path, help="Query image")
    p_search.add_argument("--threshold", dest="threshold", type=float, default=SEARCH_THRESHOLD,
                          help="Minimum cosine similarity")
    p_search.add_argument("--limit", dest="limit", type=int, default=SEARCH_LIMIT,
                          help="Maximum number of results")
    p_search.add_argument("--min-faces", dest="min_faces", type=int, default=None,
                          help="Ignore cached images with fewer faces")
    p_search.add_argument("--max-faces", dest="max_faces", type=int, default=None,
                          help="Ignore cached images with more faces")
    _add_model_options(p_search)

    args = parser.parse_args(argv)

    if getattr(args, "batch_size", BATCH_SIZE) < 1:
        parser.error("--batch-size must be at least 1")
    if getattr(args, "workers", 1) < 1:
        parser.error("--workers must be at least 1")

    images = list(getattr(args, "images", None) or [])
    if getattr(args, "image", None) is not None:
        images = [args.image]

    return RunConfig(
        command=args.command,
        cache_dir=args.cache_dir,
        worker_cache_dirs=list(args.worker_cache_dirs),
        input_dir=getattr(args, "input_dir", None),
        rebuild_index=getattr(args, "rebuild_index", False),
        db_path=getattr(args, "db_path", None),
        model_name=getattr(args, "model_name", "buffalo_l"),
        attribute_models=getattr(args, "attribute_models", None),
        use_gpu=getattr(args, "use_gpu", True),
        batch_size=getattr(args, "batch_size", BATCH_SIZE),
        workers=getattr(args, "workers", default_workers()),
        sim_threshold=getattr(args, "sim_threshold", SIMILARITY_THRESHOLD),
        merge_threshold=getattr(args, "merge_threshold", MERGE_THRESHOLD),
        min_cluster_size=getattr(args, "min_cluster_size", MIN_CLUSTER_SIZE),
        crops_dir=getattr(args, "crops_dir", None),
        main_character_size=getattr(args, "main_character_size", MAIN_CHARACTER_SIZE),
        export_dir=getattr(args, "export_dir", None),
        images=images,
        threshold=getattr(args, "threshold", SEARCH_THRESHOLD),
        limit=getattr(args, "limit", SEARCH_LIMIT),
        min_faces=getattr(args, "min_faces", None),
        max_faces=getattr(args, "max_faces", None),
        verbose=args.verbose,
        command_line=" ".join([parser.prog] + list(argv if argv is not None else sys.argv[1:])),
    )
