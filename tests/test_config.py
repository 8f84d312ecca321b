"""Tests for command line parsing."""

from dataclasses import fields
from pathlib import Path

import pytest

from frameface_cluster.config import (
    BATCH_SIZE,
    MERGE_THRESHOLD,
    RunConfig,
    SEARCH_LIMIT,
    SIMILARITY_THRESHOLD,
    default_workers,
    parse_args,
)


def test_index_command():
    cfg = parse_args(["--cache-dir", "/tmp/c", "--worker-cache-dir", "/tmp/w1",
                      "--worker-cache-dir", "/tmp/w2", "index", "/data/frames", "--rebuild-index",
                      "--db", "/tmp/runs.sqlite", "--cpu"])
    assert cfg.command == "index"
    assert cfg.cache_dir == Path("/tmp/c")
    assert cfg.worker_cache_dirs == [Path("/tmp/w1"), Path("/tmp/w2")]
    assert cfg.input_dir == Path("/data/frames")
    assert cfg.rebuild_index
    assert cfg.db_path == Path("/tmp/runs.sqlite")
    assert cfg.use_gpu is False
    assert cfg.batch_size == BATCH_SIZE
    assert cfg.command_line.startswith("frameface --cache-dir /tmp/c")


def test_cluster_defaults_and_overrides():
    cfg = parse_args(["cluster"])
    assert cfg.sim_threshold == SIMILARITY_THRESHOLD
    assert cfg.merge_threshold == MERGE_THRESHOLD
    assert cfg.crops_dir is None
    cfg = parse_args(["cluster", "--threshold", "0.8", "--min-cluster-size", "3", "--crops", "out"])
    assert cfg.sim_threshold == 0.8
    assert cfg.min_cluster_size == 3
    assert cfg.crops_dir == Path("out")


def test_appearances_shares_cluster_options():
    cfg = parse_args(["appearances", "--threshold", "0.7", "--main-character-size", "3"])
    assert cfg.command == "appearances"
    assert cfg.sim_threshold == 0.7
    assert cfg.merge_threshold == MERGE_THRESHOLD
    assert cfg.main_character_size == 3
    assert parse_args(["appearances"]).main_character_size == 5


def test_query_commands():
    cfg = parse_args(["compare", "a.jpg", "b.jpg"])
    assert cfg.images == [Path("a.jpg"), Path("b.jpg")]
    cfg = parse_args(["search", "q.jpg", "--min-faces", "1", "--max-faces", "2"])
    assert cfg.images == [Path("q.jpg")]
    assert cfg.limit == SEARCH_LIMIT
    assert (cfg.min_faces, cfg.max_faces) == (1, 2)


@pytest.mark.parametrize("argv", [
    ["index", "frames", "--batch-size", "0"],
    ["index", "frames", "--workers", "0"],
    ["compare", "only-one.jpg"],
    [],
])
def test_invalid_arguments_exit(argv):
    with pytest.raises(SystemExit):
        parse_args(argv)


def test_default_workers_is_positive():
    assert default_workers() >= 1


def test_run_config_carries_only_command_options():
    names = {f.name for f in fields(RunConfig)}
    assert names == {
        "command", "cache_dir", "worker_cache_dirs", "input_dir", "rebuild_index", "db_path",
        "model_name", "attribute_models", "use_gpu", "batch_size", "workers", "sim_threshold",
        "merge_threshold", "min_cluster_size", "crops_dir", "main_character_size", "export_dir",
        "images", "threshold", "limit", "min_faces", "max_faces", "verbose", "command_line",
    }
