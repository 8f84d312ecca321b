"""Tests for comparison and nearest-neighbour search."""

import os

import numpy as np
import pytest

from conftest import encode_png, make_blank_image, make_face_image, write_frame

from frameface_cluster.models import FaceEmbedding
from frameface_cluster.recognition import (
    FaceRecognitionService,
    alignment_score,
    find_matches,
    search,
    search_cache,
)


def _record(path, vec, faces=1):
    return FaceEmbedding(embedding=list(vec), faces=faces, predictions=[], path=path)


def test_alignment_score():
    assert alignment_score(None) == 1.0
    assert alignment_score([(10, 10), (30, 12)]) == 1.0  # ~5.7 degrees
    tilted = alignment_score([(0, 0), (10, 10)])  # 45 degrees
    assert tilted == pytest.approx(0.0)
    half = alignment_score([(0, 0), (10, 10 * np.tan(np.radians(22.5)))])
    assert half == pytest.approx(0.5)
    # eye order does not matter
    assert alignment_score([(30, 12), (10, 10)]) == 1.0


def test_search_ranks_and_filters():
    candidates = [
        _record("far", [0.0, 1.0]),
        _record("close", [1.0, 0.1]),
        _record("exact", [2.0, 0.0]),
        _record("wrong-dim", [1.0, 0.0, 0.0]),
    ]
    results = search([1.0, 0.0], candidates, threshold=0.6, limit=10)
    assert [r.embedding.path for r in results] == ["exact", "close"]
    assert results[0].similarity == pytest.approx(1.0, abs=1e-6)
    assert all(-1.0 <= r.similarity <= 1.0 for r in results)
    assert [r.embedding.path for r in search([1.0, 0.0], candidates, threshold=-1.0, limit=1)] == ["exact"]


def test_search_ties_keep_candidate_order():
    candidates = [_record(f"c{i}", [1.0, 0.0]) for i in range(4)]
    results = search([1.0, 0.0], candidates, threshold=0.5, limit=None)
    assert [r.embedding.path for r in results] == ["c0", "c1", "c2", "c3"]


def test_search_with_no_usable_candidates():
    assert search([1.0, 0.0], []) == []
    assert search([1.0, 0.0], [_record("x", [1.0])]) == []


def test_find_matches_face_count_filters():
    candidates = [_record("one", [1.0, 0.0], faces=1), _record("three", [1.0, 0.0], faces=3)]
    assert [r.embedding.path for r in find_matches([1.0, 0.0], candidates, min_faces=2)] == ["three"]
    assert [r.embedding.path for r in find_matches([1.0, 0.0], candidates, max_faces=2)] == ["one"]


def test_compare_same_and_different_faces(generator):
    service = FaceRecognitionService(generator)
    a = encode_png(make_face_image(11, variant=1))
    b = encode_png(make_face_image(11, variant=2))
    c = encode_png(make_face_image(12))
    same = service.compare(a, b)
    other = service.compare(a, c)
    assert same.similarity > 0.95
    assert other.similarity < same.similarity
    assert same.alignment_score1 == 1.0 and same.alignment_score2 == 1.0
    assert service.compare(a, b).similarity == pytest.approx(same.similarity)


def test_compare_without_face_returns_none(generator):
    service = FaceRecognitionService(generator)
    assert service.compare(encode_png(make_face_image(1)), encode_png(make_blank_image())) is None


def test_process_image_is_memoised(generator, provider):
    service = FaceRecognitionService(generator)
    data = encode_png(make_face_image(21))
    first = service.process_image(data)
    calls = provider.embed_calls
    second = service.process_image(data)
    assert len(first) == 1
    assert np.linalg.norm(first[0].embedding) == pytest.approx(1.0, abs=1e-5)
    assert provider.embed_calls == calls
    assert np.array_equal(first[0].embedding, second[0].embedding)
    service.clear_cache()
    service.process_image(data)
    assert provider.embed_calls == calls + 1


def test_process_image_applies_confidence_and_alignment(provider, generator):
    assert FaceRecognitionService(generator, min_confidence=0.95).process_image(
        encode_png(make_face_image(21))) == []
    provider.detections = [{"topLeft": [16, 16], "bottomRight": [48, 48], "probability": 0.9,
                            "landmarks": [[20, 20], [40, 40]]}]
    assert FaceRecognitionService(generator).process_image(encode_png(make_face_image(22))) == []


def test_search_cache_finds_the_same_identity(cache, generator, frames_root):
    index = cache.load()
    for i, identity in enumerate([31, 32, 31, 33]):
        path = write_frame(frames_root, "ep1", f"{i:04d}", make_face_image(identity, variant=i + 1))
        cache.store(index, str(path), generator.generate(path.read_bytes()), os.stat(path).st_mtime)
    cache.save(index)

    query = generator.generate(encode_png(make_face_image(31, variant=99)))
    results = search_cache(cache, query.embedding, threshold=0.9)
    assert sorted(r.embedding.path.split(os.sep)[-2] for r in results) == ["0000", "0002"]
    assert results[0].similarity >= results[1].similarity


def test_search_cache_is_read_only(cache, generator, frames_root):
    index = cache.load()
    paths = []
    for i, identity in enumerate([34, 35]):
        path = write_frame(frames_root, "ep1", f"{i:04d}", make_face_image(identity))
        cache.store(index, str(path), generator.generate(path.read_bytes()), os.stat(path).st_mtime)
        paths.append(path)
    cache.save(index)
    cache.find_embedding_file(index.entries[str(paths[1])].embedding_file).unlink()
    before = cache.index_path.read_bytes()

    query = generator.generate(paths[0].read_bytes())
    assert len(search_cache(cache, query.embedding, threshold=0.9)) == 1
    assert cache.index_path.read_bytes() == before
