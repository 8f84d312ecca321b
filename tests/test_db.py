"""Tests for the run history database."""

import pytest

from frameface_cluster.db import get_run, init_db, list_runs, record_run_end, record_run_start


@pytest.fixture
def conn(tmp_path):
    engine = init_db(tmp_path / "history" / "runs.sqlite")
    with engine.connect() as connection:
        yield connection


def test_run_lifecycle(conn, tmp_path):
    run_id = record_run_start(conn, root=tmp_path / "frames", mode="index", cache_dir=tmp_path / "cache",
                              model_name="buffalo_l", parameters={"batch_size": 12})
    run = get_run(conn, run_id)
    assert run["status"] == "running"
    assert run["parameters"] == {"batch_size": 12}
    assert run["end_time"] is None

    record_run_end(conn, run_id, "partial", {"found": 10, "processed": 8, "failed": 2},
                   notes="failed: a.jpg, b.jpg")
    run = get_run(conn, run_id)
    assert run["status"] == "partial"
    assert run["n_processed"] == 8
    assert run["n_skipped"] is None
    assert run["notes"] == "failed: a.jpg, b.jpg"
    assert run["end_time"] >= run["start_time"]


def test_list_runs_filters_by_status(conn, tmp_path):
    first = record_run_start(conn, tmp_path, "index", tmp_path, "buffalo_l", {})
    second = record_run_start(conn, tmp_path, "rebuild", tmp_path, None, {})
    record_run_end(conn, first, "done", {})
    assert [r["id"] for r in list_runs(conn)] == [second, first]
    assert [r["id"] for r in list_runs(conn, status="running")] == [second]


def test_missing_run(conn):
    assert get_run(conn, 999) is None
