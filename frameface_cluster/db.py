"""
Run history for batch indexing.

A small SQLite database keeps one row per ``index`` invocation: the frame
root, whether it only rebuilt the index, final status, timings and the file
counts of the :class:`~frameface_cluster.pipeline.BatchReport`.  It is purely
informational; the cache index remains the source of truth for what has been
processed.

The table is created automatically if it does not exist when connecting.
All interactions are implemented using SQLAlchemy Core.
"""

from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Table, Column, Integer, String, DateTime, JSON, MetaData,
    create_engine, select, insert, update,
)
from sqlalchemy.engine import Engine, Connection


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    Table(
        "runs", metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("root", String, nullable=False),
        Column("mode", String, nullable=False),  # "index" or "rebuild"
        Column("cache_dir", String, nullable=False),
        Column("model_name", String, nullable=True),
        Column("parameters", JSON, nullable=False),
        Column("status", String, nullable=False, default="running"),
        Column("start_time", DateTime, nullable=False),
        Column("end_time", DateTime, nullable=True),
        Column("n_found", Integer, nullable=True),
        Column("n_processed", Integer, nullable=True),
        Column("n_skipped", Integer, nullable=True),
        Column("n_failed", Integer, nullable=True),
        Column("n_no_faces", Integer, nullable=True),
        Column("n_faces", Integer, nullable=True),
        Column("command_line", String, nullable=True),
        Column("notes", String, nullable=True),
    )
    return metadata


_RUNS = _make_metadata().tables["runs"]


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def init_db(db_path: Path) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path
        Location of the SQLite database file.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}")
    _RUNS.metadata.create_all(engine)
    return engine


def record_run_start(conn: Connection, root: Path, mode: str, cache_dir: Path,
                     model_name: Optional[str], parameters: Dict[str, Any],
                     command_line: Optional[str] = None) -> int:
    """Insert a new run row and return its ID.

    Parameters
    ----------
    conn: Connection
        Open database connection.
    root: Path
        Frame root directory being indexed.
    mode: str
        ``"index"`` for a full run, ``"rebuild"`` for an index‑only rebuild.
    cache_dir: Path
        Primary cache directory.
    model_name: str, optional
        Model package used; ``None`` for rebuilds.
    parameters: dict
        JSON‑serialisable dictionary of configuration parameters.
    command_line: str, optional
        Original command line invocation.
    """
    result = conn.execute(
        insert(_RUNS).values(
            root=str(root),
            mode=mode,
            cache_dir=str(cache_dir),
            model_name=model_name,
            parameters=parameters,
            status="running",
            start_time=_utcnow(),
            command_line=command_line,
        )
    )
    conn.commit()
    return int(result.inserted_primary_key[0])


def record_run_end(conn: Connection, run_id: int, status: str, counts: Dict[str, int],
                   notes: Optional[str] = None) -> None:
    """Mark a run as finished.

    Parameters
    ----------
    conn: Connection
        Open database connection.
    run_id: int
        Primary key of the run to update.
    status: str
        Final status: ``"done"``, ``"partial"`` (some files failed) or
        ``"failed"``.
    counts: dict
        ``found``, ``processed``, ``skipped``, ``failed``, ``no_faces`` and
        ``faces`` totals; missing keys are stored as ``NULL``.
    notes: str, optional
        Additional notes to store (e.g. error messages).
    """
    conn.execute(
        update(_RUNS)
        .where(_RUNS.c.id == run_id)
        .values(
            status=status,
            end_time=_utcnow(),
            n_found=counts.get("found"),
            n_processed=counts.get("processed"),
            n_skipped=counts.get("skipped"),
            n_failed=counts.get("failed"),
            n_no_faces=counts.get("no_faces"),
            n_faces=counts.get("faces"),
            notes=notes,
        )
    )
    conn.commit()


def get_run(conn: Connection, run_id: int) -> Optional[Dict[str, Any]]:
    """Retrieve a single run by ID as a dictionary, or ``None`` if not found."""
    row = conn.execute(select(_RUNS).where(_RUNS.c.id == run_id)).mappings().first()
    return dict(row) if row else None


def list_runs(conn: Connection, status: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return run records, newest first, optionally filtered by status."""
    query = select(_RUNS)
    if status:
        query = query.where(_RUNS.c.status == status)
    rows = conn.execute(query.order_by(_RUNS.c.start_time.desc(), _RUNS.c.id.desc())).mappings().all()
    return [dict(row) for row in rows]
