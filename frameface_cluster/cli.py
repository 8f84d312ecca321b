"""
Command‑line entry point for the frameface pipeline.

This module parses command line arguments, constructs a :class:`RunConfig`
object and dispatches to the batch driver, the clustering engine, cache
maintenance or the query service.  Results are printed to stdout as JSON;
diagnostics go to the log on stderr.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

from .appearances import episode_appearances, size_groups
from .cache import FaceCache
from .clustering import cluster_faces
from .config import parse_args, RunConfig
from .crops import extract_cluster_crops
from .embedders import ModelProvider, get_provider
from .embeddings_io import export_embeddings
from .errors import FramefaceError
from .generator import EmbeddingGenerator
from .pipeline import run_batch
from .recognition import FaceRecognitionService, search_cache

logger = logging.getLogger(__name__)


def _gpu_preflight() -> None:
    """Warn when ONNX Runtime cannot see a CUDA device.

    This does not stop execution; inference falls back to the CPU.
    """
    try:
        import onnxruntime as ort
    except ImportError:
        # InsightFace will fail later with a clearer message.
        return
    if "CUDAExecutionProvider" not in set(ort.get_available_providers()):
        logger.warning(
            "GPU not detected by ONNX Runtime; falling back to CPU. To enable GPU: "
            "pip uninstall -y onnxruntime && pip install onnxruntime-gpu, and make sure "
            "the NVIDIA driver and CUDA toolkit are installed."
        )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cache(cfg: RunConfig) -> FaceCache:
    return FaceCache(cfg.cache_dir, cfg.worker_cache_dirs)


def _provider(cfg: RunConfig) -> ModelProvider:
    if cfg.use_gpu:
        _gpu_preflight()
    return get_provider(cfg.model_name, cfg.attribute_models, cfg.use_gpu)


def cmd_index(cfg: RunConfig) -> int:
    if not cfg.rebuild_index and cfg.use_gpu:
        _gpu_preflight()
    report = run_batch(cfg)
    _emit({**report.counts(), "rebuilt": report.rebuilt, "failures": report.failures})
    return 0


def cmd_cluster(cfg: RunConfig) -> int:
    cache = _cache(cfg)
    stats = cluster_faces(cache, similarity_threshold=cfg.sim_threshold,
                          merge_threshold=cfg.merge_threshold,
                          min_cluster_size=cfg.min_cluster_size)
    if cfg.crops_dir is not None:
        extract_cluster_crops(stats, cache, cfg.crops_dir)
    _emit(stats.to_dict())
    return 0


def cmd_appearances(cfg: RunConfig) -> int:
    stats = cluster_faces(_cache(cfg), similarity_threshold=cfg.sim_threshold,
                          merge_threshold=cfg.merge_threshold,
                          min_cluster_size=cfg.min_cluster_size)
    report = episode_appearances(stats, cfg.main_character_size)
    groups = size_groups(stats)
    if groups["small"]:
        logger.info("%d small clusters may need further analysis or merging", len(groups["small"]))
    _emit({**report.to_dict(), "clusterSizes": {name: len(members) for name, members in groups.items()}})
    return 0


def cmd_validate(cfg: RunConfig) -> int:
    defects = _cache(cfg).validate()
    for defect in defects:
        logger.warning("%s", defect)
    _emit({"valid": not defects, "errors": [asdict(d) for d in defects]})
    return 1 if defects else 0


def cmd_cleanup(cfg: RunConfig) -> int:
    cache = _cache(cfg)
    with _provider(cfg) as provider:
        result = cache.cleanup(EmbeddingGenerator(provider))
    _emit(asdict(result))
    return 1 if result.errors else 0


def cmd_stats(cfg: RunConfig) -> int:
    _emit(asdict(_cache(cfg).stats()))
    return 0


def cmd_export(cfg: RunConfig) -> int:
    part = export_embeddings(_cache(cfg), cfg.export_dir)
    _emit({"written": str(part) if part else None})
    return 0


def cmd_compare(cfg: RunConfig) -> int:
    first, second = (p.read_bytes() for p in cfg.images)
    with _provider(cfg) as provider:
        service = FaceRecognitionService(EmbeddingGenerator(provider))
        result = service.compare(first, second)
    if result is None:
        logger.warning("No face found in at least one of the images")
        _emit(None)
        return 1
    _emit(asdict(result))
    return 0


def cmd_search(cfg: RunConfig) -> int:
    data = cfg.images[0].read_bytes()
    with _provider(cfg) as provider:
        query = EmbeddingGenerator(provider).generate(data)
    if query is None:
        logger.warning("No face found in %s", cfg.images[0])
        _emit([])
        return 1
    matches = search_cache(_cache(cfg), query.embedding, threshold=cfg.threshold, limit=cfg.limit,
                           min_faces=cfg.min_faces, max_faces=cfg.max_faces)
    _emit([{"path": m.embedding.path, "similarity": m.similarity, "faces": m.embedding.faces}
           for m in matches])
    return 0


COMMAND_HANDLERS: Dict[str, Callable[[RunConfig], int]] = {
    "index": cmd_index,
    "cluster": cmd_cluster,
    "validate": cmd_validate,
    "cleanup": cmd_cleanup,
    "stats": cmd_stats,
    "export": cmd_export,
    "compare": cmd_compare,
    "search": cmd_search,
    "appearances": cmd_appearances,
}


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point called by the ``frameface`` script."""
    cfg = parse_args(argv)
    level = logging.DEBUG if cfg.verbose > 1 else logging.INFO if cfg.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return COMMAND_HANDLERS[cfg.command](cfg)
    except (FramefaceError, OSError) as exc:
        logger.error("%s failed: %s", cfg.command, exc)
        return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
