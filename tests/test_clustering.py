"""Tests for the two-pass clustering engine."""

import os

import numpy as np
import pytest

from conftest import make_face_image, write_frame

from frameface_cluster.clustering import (
    Cluster,
    ClusterItem,
    assign_pass,
    cluster_faces,
    cluster_items,
    episode_key,
    merge_small_clusters,
    summarize,
)

MALE = {"gender": "male", "ageGroup": "young", "hairColor": "black", "skinTone": "light"}
SURE = {name: 1.0 for name in MALE}


def _unit(angle_deg, dim=8):
    v = np.zeros(dim)
    v[0] = np.cos(np.radians(angle_deg))
    v[1] = np.sin(np.radians(angle_deg))
    return v


def _item(path, vec, attrs=MALE, conf=SURE):
    return ClusterItem(path=path, embedding=np.asarray(vec, dtype=np.float64),
                       attributes=attrs, attribute_confidence=conf)


def test_episode_key_from_frame_layout():
    assert episode_key("/data/frames/s01e02/00-01-02/frame-blank.jpg") == "s01e02"
    assert episode_key("ep/frame.jpg") == "ep"
    assert episode_key("frame.jpg") == "unknown"


def test_assign_pass_groups_similar_items():
    items = [_item("/r/a/1/f.jpg", _unit(0)), _item("/r/a/2/f.jpg", _unit(5)),
             _item("/r/b/1/f.jpg", _unit(90)), _item("/r/b/2/f.jpg", _unit(93))]
    clusters = assign_pass(items, 0.75)
    assert [c.paths for c in clusters] == [["/r/a/1/f.jpg", "/r/a/2/f.jpg"],
                                           ["/r/b/1/f.jpg", "/r/b/2/f.jpg"]]
    assert clusters[0].episodes == {"a": 2}


def test_representative_is_first_member():
    items = [_item("p1", _unit(0)), _item("p2", _unit(10)), _item("p3", _unit(20))]
    clusters = assign_pass(items, 0.75)
    assert len(clusters) == 1
    assert np.array_equal(clusters[0].representative, items[0].embedding)


def test_merge_scenario():
    # A singleton 30 degrees from a pair fails the assignment threshold but
    # joins it in the merge pass.
    items = [_item("a", _unit(0)), _item("b", _unit(2)), _item("c", _unit(30))]
    clusters = assign_pass(items, 0.95)
    assert [c.size for c in clusters] == [2, 1]
    merged = merge_small_clusters(clusters, merge_threshold=0.65, min_cluster_size=2)
    assert len(merged) == 1
    assert sorted(merged[0].paths) == ["a", "b", "c"]


def test_unmergeable_singletons_are_dropped():
    items = [_item("a", _unit(0)), _item("b", _unit(3)), _item("x", _unit(180))]
    stats = cluster_items(items)
    assert stats.total_clusters == 1
    assert stats.clusters[0].size == 2
    assert all(c.size >= 2 for c in stats.clusters)


def test_merge_does_not_alias_input_clusters():
    a = Cluster.start(_item("a", _unit(0)), "e")
    b = Cluster.start(_item("b", _unit(1)), "e")
    merged = merge_small_clusters([a, b], merge_threshold=0.65, min_cluster_size=2)
    assert len(merged) == 1
    assert a.paths == ["a"] and b.paths == ["b"]


def test_higher_threshold_never_reduces_cluster_count():
    angles = [0, 1, 2, 120, 121, 122, 240, 241, 242]
    items = [_item(f"/r/e/{a}/f.jpg", _unit(a)) for a in angles]
    counts = [len(assign_pass(items, t)) for t in (0.2, 0.75, 0.999, 0.99999)]
    assert counts == [3, 3, 3, 9]


def test_summarize_orders_and_samples():
    big = Cluster.start(_item("b0", _unit(0)), "e1")
    for i, angle in enumerate((20, 5, 10, 15, 25, 1), start=1):
        big.add(_item(f"b{i}", _unit(angle)), "e2")
    small = Cluster.start(_item("s0", _unit(90)), "e1")
    small.add(_item("s1", _unit(91)), "e1")
    single = Cluster.start(_item("z", _unit(180)), "e3")

    stats = summarize([small, big, single], min_cluster_size=2, max_samples=5)
    assert [c.size for c in stats.clusters] == [7, 2]
    assert stats.total_clusters == 2
    assert stats.average_cluster_size == pytest.approx(4.5)
    samples = stats.clusters[0].sample_images
    assert len(samples) == 5
    assert samples[0].path == "b0" and samples[0].similarity == 1.0
    assert [s.path for s in samples[1:]] == ["b6", "b2", "b3", "b4"]
    assert stats.clusters[0].episodes == {"e1": 1, "e2": 6}
    assert stats.to_dict()["clusters"][1]["sampleImages"][0]["path"] == "s0"


def test_empty_input():
    stats = cluster_items([])
    assert stats.total_clusters == 0
    assert stats.average_cluster_size == 0.0


def test_mismatched_dimensions_are_skipped():
    items = [_item("a", _unit(0)), _item("b", _unit(1)), _item("c", np.ones(3))]
    stats = cluster_items(items)
    assert stats.clusters[0].size == 2


def test_attribute_disagreement_splits_identities():
    female = dict(MALE, gender="female", hairColor="red")
    items = [_item("a", _unit(0)), _item("b", _unit(18), attrs=female)]
    # cos(18) ~ 0.951: 0.7 * 0.951 + 0.3 * 0.3 ~ 0.756 with partial agreement
    assert len(assign_pass(items, 0.76)) == 2
    assert len(assign_pass([items[0], _item("c", _unit(18))], 0.76)) == 1


def test_cluster_faces_reads_cache_in_index_order(cache, generator, frames_root):
    index = cache.load()
    for i, (episode, identity) in enumerate([("ep1", 1), ("ep1", 2), ("ep2", 1), ("ep2", 2), ("ep3", 9)]):
        path = write_frame(frames_root, episode, f"{i:04d}", make_face_image(identity, variant=i + 1))
        cache.store(index, str(path), generator.generate(path.read_bytes()), os.stat(path).st_mtime)
    cache.save(index)

    stats = cluster_faces(cache)
    assert stats.total_clusters == 2
    assert [c.size for c in stats.clusters] == [2, 2]
    assert stats.clusters[0].episodes == {"ep1": 1, "ep2": 1}
    assert stats.clusters[0].sample_images[0].path.endswith("ep1/0000/frame-blank.png")


def test_similar_singletons_merge_with_each_other_not_the_large_cluster():
    large = Cluster.start(_item("l0", _unit(0)), "e")
    for i in range(1, 6):
        large.add(_item(f"l{i}", _unit(i)), "e")
    s1 = Cluster.start(_item("s1", _unit(150)), "e")
    s2 = Cluster.start(_item("s2", _unit(152)), "e")

    merged = merge_small_clusters([large, s1, s2], merge_threshold=0.65, min_cluster_size=2)
    assert len(merged) == 2
    assert merged[0].paths == large.paths
    assert sorted(merged[1].paths) == ["s1", "s2"]


def _seed_cache(cache, generator, frames_root):
    index = cache.load()
    paths = []
    for i, identity in enumerate([3, 3, 4]):
        path = write_frame(frames_root, "ep1", f"{i:04d}", make_face_image(identity, variant=i + 1))
        cache.store(index, str(path), generator.generate(path.read_bytes()), os.stat(path).st_mtime)
        paths.append(str(path))
    cache.save(index)
    return paths


def test_cluster_faces_leaves_index_untouched(cache, generator, frames_root):
    paths = _seed_cache(cache, generator, frames_root)
    cache.find_embedding_file(cache.load().entries[paths[2]].embedding_file).unlink()
    before = cache.index_path.read_bytes()
    cluster_faces(cache)
    assert cache.index_path.read_bytes() == before


def test_cluster_faces_on_corrupt_index_does_not_rewrite_it(cache, generator, frames_root):
    _seed_cache(cache, generator, frames_root)
    cache.index_path.write_text("{broken")
    stats = cluster_faces(cache)
    assert stats.total_clusters == 1
    assert cache.index_path.read_text() == "{broken"


def test_merge_pass_scores_each_cluster_pair_once(monkeypatch):
    calls = []
    score = Cluster.score_cluster

    def counting(self, other):
        calls.append((self, other))
        return score(self, other)

    monkeypatch.setattr(Cluster, "score_cluster", counting)
    singles = [Cluster.start(_item(name, _unit(angle)), "e")
               for name, angle in [("s0", 90), ("s1", 270), ("s2", 0), ("s3", 1)]]

    merged = merge_small_clusters(singles, merge_threshold=0.65, min_cluster_size=2)
    assert [sorted(c.paths) for c in merged] == [["s0"], ["s1"], ["s2", "s3"]]
    # 9 pairs in the first scan, then only s0 and s1 against the merged cluster
    assert len(calls) == 11
    assert len({(id(a), id(b)) for a, b in calls}) == len(calls)
