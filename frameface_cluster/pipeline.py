"""
Batch indexing of a directory of video frames.

This module ties together the lower‑level components: scanning frame images,
embedding generation and the cache.  Frames whose cached modification time
matches the file on disk are skipped, so re‑running over the same directory
is cheap and leaves the index unchanged.  Work is split into fixed‑size
batches; each batch runs on a thread pool sharing one initialised model
provider, then its results are folded into the index and persisted once.

Failures on individual files are logged with the file path and the file stays
unindexed so the next run retries it.  A batch run never raises because of a
single bad file.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .cache import FaceCache
from .config import BATCH_SIZE, FRAME_PATTERN, RunConfig, default_workers
from .db import init_db, record_run_start, record_run_end
from .embedders import ModelProvider, get_provider
from .errors import FilesystemError
from .generator import EmbeddingGenerator
from .images import iter_frame_paths
from .models import CacheIndex, FaceEmbedding

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    """Counts describing one :meth:`BatchDriver.process_directory` call."""
    found: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    no_faces: int = 0
    faces: int = 0
    rebuilt: bool = False
    failures: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        data = asdict(self)
        data.pop("failures")
        data.pop("rebuilt")
        return data


@dataclass
class _FileResult:
    path: str
    mtime: float
    record: Optional[FaceEmbedding] = None
    error: Optional[str] = None


class BatchDriver:
    """Incrementally index every frame image under a root directory.

    Parameters
    ----------
    cache: FaceCache
        Destination of embedding files and the index.
    generator: EmbeddingGenerator, optional
        Required unless only rebuilding the index.
    batch_size: int
        Files per batch; the index is written once per batch.
    workers: int, optional
        Thread pool size, defaulting to three quarters of the CPU cores.
    pattern: str
        Shell pattern selecting frame files.
    """

    def __init__(self, cache: FaceCache, generator: Optional[EmbeddingGenerator] = None,
                 batch_size: int = BATCH_SIZE, workers: Optional[int] = None,
                 pattern: str = FRAME_PATTERN) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.cache = cache
        self.generator = generator
        self.batch_size = batch_size
        self.workers = workers or default_workers()
        self.pattern = pattern

    def _plan(self, paths: List[Path], index: CacheIndex,
              report: BatchReport) -> List[Tuple[str, float]]:
        """Return ``(path, mtime)`` of files needing work, smallest file first."""
        pending: List[Tuple[int, str, float]] = []
        for p in paths:
            key = str(p)
            try:
                st = os.stat(key)
            except OSError as exc:
                logger.error("Cannot stat %s: %s", key, exc)
                report.failed += 1
                report.failures.append(key)
                continue
            entry = index.entries.get(key)
            if (entry is not None and entry.mtime == st.st_mtime
                    and self.cache.find_embedding_file(entry.embedding_file) is not None):
                report.skipped += 1
                continue
            pending.append((st.st_size, key, st.st_mtime))
        pending.sort(key=lambda item: (item[0], item[1]))
        return [(key, mtime) for _size, key, mtime in pending]

    def _process_one(self, job: Tuple[str, float]) -> _FileResult:
        path, mtime = job
        try:
            data = Path(path).read_bytes()
            record = self.generator.generate(data)
        except Exception as exc:
            return _FileResult(path, mtime, error=f"{type(exc).__name__}: {exc}")
        return _FileResult(path, mtime, record=record)

    def _fold(self, index: CacheIndex, result: _FileResult, report: BatchReport) -> None:
        if result.error is not None:
            logger.error("Failed to process %s: %s", result.path, result.error)
            report.failed += 1
            report.failures.append(result.path)
            return
        try:
            self.cache.store(index, result.path, result.record, result.mtime)
        except FilesystemError as exc:
            logger.error("Failed to cache %s: %s", result.path, exc)
            report.failed += 1
            report.failures.append(result.path)
            return
        report.processed += 1
        if result.record is None:
            report.no_faces += 1
        else:
            report.faces += result.record.faces

    def process_directory(self, root: Path, rebuild_only: bool = False) -> BatchReport:
        """Index the frames under ``root``.

        Parameters
        ----------
        root: Path
            Directory to scan recursively.
        rebuild_only: bool
            Reconstruct the index from the existing cache files and stop;
            no image is read and no model is needed.

        Returns
        -------
        BatchReport
            Per‑file outcome counts.
        """
        root = Path(root).resolve()
        report = BatchReport()
        paths = list(iter_frame_paths(root, self.pattern))
        report.found = len(paths)
        logger.info("Found %d frame images under %s", report.found, root)

        if rebuild_only:
            index = self.cache.rebuild_from_cache_files()
            report.rebuilt = True
            report.skipped = sum(1 for p in paths if str(p) in index.entries)
            return report
        if self.generator is None:
            raise ValueError("an EmbeddingGenerator is required to process images")

        index = self.cache.load()
        jobs = self._plan(paths, index, report)
        logger.info("%d files to process, %d already cached", len(jobs), report.skipped)
        if not jobs:
            return report

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as executor:
            for start in range(0, len(jobs), self.batch_size):
                batch = jobs[start:start + self.batch_size]
                for result in executor.map(self._process_one, batch):
                    self._fold(index, result, report)
                self.cache.save(index)
                logger.info("Processed %d/%d files (%d failed)",
                            min(start + len(batch), len(jobs)), len(jobs), report.failed)
        return report


def run_batch(config: RunConfig, provider: Optional[ModelProvider] = None) -> BatchReport:
    """Run the ``index`` command described by ``config``.

    Builds the cache, the model provider (unless one is given or only the
    index is rebuilt) and the driver, and records the run in the history
    database when ``config.db_path`` is set.
    """
    if config.input_dir is None:
        raise ValueError("input_dir is required for batch indexing")
    cache = FaceCache(config.cache_dir, config.worker_cache_dirs)
    mode = "rebuild" if config.rebuild_index else "index"

    conn = None
    run_id = None
    if config.db_path is not None:
        conn = init_db(config.db_path).connect()
        params: Dict[str, Any] = {"batch_size": config.batch_size, "workers": config.workers,
                                  "use_gpu": config.use_gpu}
        run_id = record_run_start(
            conn, root=config.input_dir, mode=mode, cache_dir=config.cache_dir,
            model_name=None if config.rebuild_index else config.model_name,
            parameters=params, command_line=config.command_line,
        )

    owns_provider = False
    try:
        generator = None
        if not config.rebuild_index:
            if provider is None:
                provider = get_provider(config.model_name, config.attribute_models, config.use_gpu)
                owns_provider = True
            generator = EmbeddingGenerator(provider.initialize())
        driver = BatchDriver(cache, generator, batch_size=config.batch_size, workers=config.workers)
        report = driver.process_directory(config.input_dir, rebuild_only=config.rebuild_index)
    except Exception as exc:
        if conn is not None:
            record_run_end(conn, run_id, "failed", {}, notes=str(exc))
        raise
    else:
        if conn is not None:
            notes = None
            if report.failures:
                notes = "failed: " + ", ".join(report.failures[:20])
            record_run_end(conn, run_id, "partial" if report.failed else "done", report.counts(),
                           notes=notes)
    finally:
        if owns_provider:
            provider.dispose()
        if conn is not None:
            conn.close()

    logger.info("Batch finished: %s", report.counts())
    return report
