"""
Content‑addressable embedding cache and its index.

Each processed image gets one JSON file named after a short hash of its source
path (``<8 hex chars>.json``) in the primary cache directory; repeated runs
overwrite the same file.  A single ``index.json`` maps source paths to
:class:`~frameface_cluster.models.IndexEntry` records.

The index is never trusted on its own: :meth:`FaceCache.load` and
:meth:`FaceCache.save` drop entries whose embedding file is missing, and
:meth:`FaceCache.rebuild_from_cache_files` reconstructs the whole index from
the files on disk.  Secondary ("worker") cache directories are searched after
the primary one when resolving embedding files.

Filesystem errors on an individual file are logged and that file is skipped.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, TYPE_CHECKING

from .config import PRIMARY_CACHE_DIR, INDEX_FILE_NAME, WORKER_LOG_NAME, CACHE_FILE_PATTERN
from .errors import CacheCorruption, FilesystemError
from .models import CacheIndex, FaceEmbedding, IndexEntry, utc_now_iso

if TYPE_CHECKING:
    from .generator import EmbeddingGenerator

logger = logging.getLogger(__name__)

_RESERVED_NAMES = {INDEX_FILE_NAME, WORKER_LOG_NAME}


def is_valid_cache_file_name(name: str) -> bool:
    return bool(CACHE_FILE_PATTERN.match(name))


def cache_key(path: str) -> str:
    """Cache file name for a source path: first 8 hex chars of its MD5."""
    return hashlib.md5(str(path).encode("utf-8")).hexdigest()[:8] + ".json"


@dataclass
class CacheDefect:
    """A single problem reported by :meth:`FaceCache.validate`.

    ``kind`` is one of ``invalid_filename``, ``source_missing``,
    ``embedding_missing``, ``malformed_embedding`` or ``corrupt_index``.
    """
    kind: str
    subject: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass
class CleanupResult:
    removed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    index_cleaned: int = 0
    rebuilt: List[str] = field(default_factory=list)


@dataclass
class CacheStats:
    total_images: int
    total_faces: int
    by_face_count: Dict[int, int]
    last_update: str
    cache_size: int


def _atomic_write_json(target: Path, payload: Dict[str, Any]) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp-", suffix=".part")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class FaceCache:
    """Owner of the on‑disk embedding files and the index.

    Parameters
    ----------
    cache_dir: Path
        Primary cache directory; new embedding files and the index are
        written here.
    worker_dirs: iterable of Path
        Secondary directories searched, in order, after ``cache_dir``.
    """

    def __init__(self, cache_dir: Path = PRIMARY_CACHE_DIR, worker_dirs: Iterable[Path] = ()) -> None:
        self.cache_dir = Path(cache_dir)
        self.worker_dirs = [Path(d) for d in worker_dirs if Path(d) != Path(cache_dir)]
        self.index_path = self.cache_dir / INDEX_FILE_NAME
        for d in self.search_dirs:
            d.mkdir(parents=True, exist_ok=True)

    @property
    def search_dirs(self) -> List[Path]:
        return [self.cache_dir] + self.worker_dirs

    key = staticmethod(cache_key)

    # -- embedding files -------------------------------------------------

    def find_embedding_file(self, name: str) -> Optional[Path]:
        """Locate an embedding file, primary directory first."""
        for d in self.search_dirs:
            candidate = d / name
            logger.debug("Checking %s", candidate)
            if candidate.is_file():
                return candidate
        return None

    def save_embedding(self, path: str, record: FaceEmbedding) -> Path:
        """Write ``record`` under the content‑hash name of ``path``."""
        name = cache_key(path)
        if not is_valid_cache_file_name(name):
            raise CacheCorruption(f"invalid cache filename generated: {name}")
        target = self.cache_dir / name
        try:
            _atomic_write_json(target, record.to_dict())
        except OSError as exc:
            raise FilesystemError(f"failed to write {target}: {exc}") from exc
        return target

    def load_embedding(self, embedding_file: str) -> FaceEmbedding:
        """Read an embedding file by name (or path; only the name is used).

        Raises ``FileNotFoundError`` if no cache directory has it,
        :class:`CacheCorruption` for a bad name or payload and
        :class:`FilesystemError` for read errors.
        """
        name = Path(embedding_file).name
        if not is_valid_cache_file_name(name):
            raise CacheCorruption(f"invalid cache filename: {name}")
        location = self.find_embedding_file(name)
        if location is None:
            raise FileNotFoundError(f"embedding file not found: {name}")
        try:
            text = location.read_text(encoding="utf-8")
        except OSError as exc:
            raise FilesystemError(f"failed to read {location}: {exc}") from exc
        try:
            return FaceEmbedding.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as exc:
            raise CacheCorruption(f"malformed embedding file {location}: {exc}") from exc

    def embedding_for(self, path: str) -> FaceEmbedding:
        return self.load_embedding(cache_key(path))

    # -- index -------------------------------------------------------------

    def _read_index_file(self) -> Optional[Dict[str, Any]]:
        if not self.index_path.exists():
            return None
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise CacheCorruption(f"index file is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise FilesystemError(f"failed to read {self.index_path}: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("entries", {}), dict):
            raise CacheCorruption("index file has an unexpected shape")
        return raw

    def _write_index(self, index: CacheIndex) -> None:
        try:
            _atomic_write_json(self.index_path, index.to_dict())
        except OSError as exc:
            raise FilesystemError(f"failed to write {self.index_path}: {exc}") from exc

    def load(self, persist: bool = True) -> CacheIndex:
        """Read the index, dropping entries without an embedding file.

        If anything was dropped the cleaned index is written back at once.
        An unreadable index is rebuilt from the cache files.  With
        ``persist=False`` both repairs happen in memory only and nothing on
        disk changes.
        """
        try:
            raw = self._read_index_file()
        except (CacheCorruption, FilesystemError) as exc:
            logger.warning("Index unusable (%s); rebuilding from cache files", exc)
            return self.rebuild_from_cache_files(persist=persist)
        if raw is None:
            return CacheIndex()

        valid: Dict[str, IndexEntry] = {}
        dropped = False
        for path, data in raw.get("entries", {}).items():
            try:
                entry = IndexEntry.from_dict(data)
            except (ValueError, KeyError, TypeError):
                logger.warning("Filtering out invalid entry for path: %s", path)
                dropped = True
                continue
            if self.find_embedding_file(entry.embedding_file) is None:
                logger.warning("Filtering out entry with missing embedding file: %s (%s)",
                               path, entry.embedding_file)
                dropped = True
                continue
            valid[path] = entry

        if dropped:
            index = CacheIndex(entries=valid, last_update=utc_now_iso())
            if persist:
                self._write_index(index)
            return index
        return CacheIndex(entries=valid, last_update=str(raw.get("lastUpdate") or utc_now_iso()))

    def snapshot(self) -> CacheIndex:
        """Read-only view of the index for consumers that must not touch the cache."""
        return self.load(persist=False)

    def save(self, index: CacheIndex) -> CacheIndex:
        """Persist ``index`` after removing entries whose embedding file is missing.

        The filter is applied to ``index`` in place so the caller's view
        matches what was written.
        """
        for path, entry in list(index.entries.items()):
            if self.find_embedding_file(entry.embedding_file) is None:
                logger.warning("Dropping index entry for %s: missing embedding file %s",
                               path, entry.embedding_file)
                del index.entries[path]
        index.last_update = utc_now_iso()
        self._write_index(index)
        return index

    @staticmethod
    def update_index(index: CacheIndex, path: str, faces: int, mtime: float,
                     no_faces: bool = False) -> IndexEntry:
        entry = IndexEntry(path=path, mtime=mtime, faces=faces,
                           embedding_file=cache_key(path), no_faces=no_faces)
        index.entries[path] = entry
        return entry

    def store(self, index: CacheIndex, path: str, record: Optional[FaceEmbedding],
              mtime: float) -> IndexEntry:
        """Write the embedding file of ``path`` and point the index at it.

        ``record`` of ``None`` stores a zero‑face file and a ``noFaces`` entry.
        """
        if record is None:
            self.save_embedding(path, FaceEmbedding.empty(path))
            return self.update_index(index, path, 0, mtime, no_faces=True)
        record.path = path
        self.save_embedding(path, record)
        return self.update_index(index, path, record.faces, mtime)

    # -- maintenance ---------------------------------------------------------

    def _list_dir(self, d: Path) -> List[str]:
        try:
            return sorted(os.listdir(d))
        except OSError as exc:
            logger.error("Cannot list cache directory %s: %s", d, exc)
            return []

    def rebuild_from_cache_files(self, persist: bool = True) -> CacheIndex:
        """Reconstruct the index purely from the embedding files.

        Entries take their ``path`` and ``faces`` from each file.  The
        recorded ``mtime`` is the source file's current one, or 0 when the
        source is gone so that the next batch run re‑examines it.  The result
        is written to disk unless ``persist`` is false.
        """
        entries: Dict[str, IndexEntry] = {}
        for d in self.search_dirs:
            for name in self._list_dir(d):
                if not is_valid_cache_file_name(name):
                    continue
                try:
                    record = self.load_embedding(name)
                except (CacheCorruption, OSError) as exc:
                    logger.warning("Skipping unreadable cache file %s: %s", d / name, exc)
                    continue
                if not record.path:
                    logger.warning("Skipping cache file %s without a source path", d / name)
                    continue
                if record.path in entries:
                    continue
                try:
                    mtime = os.stat(record.path).st_mtime
                except OSError:
                    mtime = 0.0
                entries[record.path] = IndexEntry(
                    path=record.path, mtime=mtime, faces=record.faces,
                    embedding_file=name, no_faces=record.faces == 0,
                )
        index = CacheIndex(entries=entries, last_update=utc_now_iso())
        if persist:
            self._write_index(index)
        logger.info("Rebuilt index with %d entries from cache files", len(entries))
        return index

    def _foreign_files(self) -> Iterator[Path]:
        for d in self.search_dirs:
            for name in self._list_dir(d):
                if name in _RESERVED_NAMES or is_valid_cache_file_name(name):
                    continue
                if (d / name).is_file():
                    yield d / name

    def validate(self) -> List[CacheDefect]:
        """Report cache defects without modifying anything."""
        defects: List[CacheDefect] = []
        try:
            raw = self._read_index_file() or {"entries": {}}
        except (CacheCorruption, FilesystemError) as exc:
            defects.append(CacheDefect("corrupt_index", str(self.index_path), str(exc)))
            raw = {"entries": {}}

        for path, data in raw["entries"].items():
            embedding_file = data.get("embeddingFile") if isinstance(data, dict) else None
            if not embedding_file or not is_valid_cache_file_name(str(embedding_file)):
                defects.append(CacheDefect("invalid_filename", path,
                                           f"Invalid embedding filename format: {embedding_file}"))
                continue
            if not os.path.exists(path):
                defects.append(CacheDefect("source_missing", path, f"Original file missing: {path}"))
                continue
            if self.find_embedding_file(embedding_file) is None:
                defects.append(CacheDefect("embedding_missing", path,
                                           f"Embedding file missing: {embedding_file}"))
                continue
            try:
                self.load_embedding(embedding_file)
            except (CacheCorruption, OSError) as exc:
                defects.append(CacheDefect("malformed_embedding", path,
                                           f"Invalid embedding data for {path}: {exc}"))

        for foreign in self._foreign_files():
            defects.append(CacheDefect("invalid_filename", str(foreign),
                                       f"Invalid cache file found in {foreign.parent}: {foreign.name}"))
        return defects

    def cleanup(self, generator: Optional["EmbeddingGenerator"] = None) -> CleanupResult:
        """Repair the defects :meth:`validate` reports.

        - deletes files with non‑conforming names;
        - drops entries whose source file no longer exists;
        - regenerates entries whose file name is not the expected content
          hash, recording a ``noFaces`` marker when that fails.
        """
        result = CleanupResult()
        index = self.load()

        for foreign in list(self._foreign_files()):
            try:
                foreign.unlink()
                result.removed.append(str(foreign))
            except OSError as exc:
                result.errors.append(f"Failed to remove invalid file {foreign.name}: {exc}")

        new_entries: Dict[str, IndexEntry] = {}
        for path, entry in index.entries.items():
            if not os.path.exists(path):
                result.index_cleaned += 1
                continue
            proper = cache_key(path)
            if entry.embedding_file == proper:
                new_entries[path] = entry
                continue
            result.index_cleaned += 1
            rebuilt = self._regenerate(path, generator, result)
            if rebuilt is None:
                continue
            new_entries[path] = rebuilt
            self._remove_stale(entry.embedding_file, proper, result)

        index.entries = new_entries
        self.save(index)
        return result

    def _regenerate(self, path: str, generator: Optional["EmbeddingGenerator"],
                    result: CleanupResult) -> Optional[IndexEntry]:
        scratch = CacheIndex()
        try:
            mtime = os.stat(path).st_mtime
        except OSError as exc:
            result.errors.append(f"Failed to stat {path}: {exc}")
            return None
        try:
            if generator is None:
                raise RuntimeError("no embedding generator available")
            data = Path(path).read_bytes()
            record = generator.generate(data)
            entry = self.store(scratch, path, record, mtime)
            if record is not None:
                result.rebuilt.append(path)
            return entry
        except Exception as exc:
            result.errors.append(f"Failed to rebuild embedding for {path}: {exc}")
        try:
            return self.store(scratch, path, None, mtime)
        except FilesystemError as exc:
            result.errors.append(f"Failed to record {path} as having no faces: {exc}")
            return None

    def _remove_stale(self, stale: str, proper: str, result: CleanupResult) -> None:
        if stale == proper or not is_valid_cache_file_name(stale):
            return
        location = self.find_embedding_file(stale)
        if location is None:
            return
        try:
            location.unlink()
        except OSError as exc:
            result.errors.append(f"Failed to remove stale file {location}: {exc}")

    # -- reading -------------------------------------------------------------

    def iter_embeddings(self, index: Optional[CacheIndex] = None) -> Iterator[Tuple[IndexEntry, FaceEmbedding]]:
        """Yield ``(entry, record)`` for entries with faces, in index order."""
        index = index if index is not None else self.snapshot()
        for entry in index.ordered_entries():
            if entry.no_faces or entry.faces <= 0:
                continue
            try:
                record = self.load_embedding(entry.embedding_file)
            except (CacheCorruption, OSError) as exc:
                logger.error("Skipping %s: %s", entry.path, exc)
                continue
            if record.faces <= 0 or not record.embedding:
                continue
            if not record.path:
                record.path = entry.path
            yield entry, record

    def stats(self) -> CacheStats:
        index = self.snapshot()
        entries = index.ordered_entries()
        size = 0
        for entry in entries:
            location = self.find_embedding_file(entry.embedding_file)
            if location is None:
                continue
            try:
                size += location.stat().st_size
            except OSError as exc:
                logger.error("Cannot stat %s: %s", location, exc)
        return CacheStats(
            total_images=len(entries),
            total_faces=sum(e.faces for e in entries),
            by_face_count=dict(sorted(Counter(e.faces for e in entries).items())),
            last_update=index.last_update,
            cache_size=size,
        )
