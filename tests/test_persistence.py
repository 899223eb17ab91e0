import json

import pytest

from statcache import persistence
from statcache.stat_cache import FlowStatCache
from statcache.stats_config import CACHE_IMAGE_VERSION

from helpers import MATCH_A, flow_stat, rule


@pytest.fixture
def image_path(tmp_path):
    return str(tmp_path / "run" / "flow_cache.json")


def _filled_cache(clock):
    cache = FlowStatCache(clock=clock)
    cache.add_flow_mod(1, "latency", rule(MATCH_A, idle=60))
    cache.set_flow_cache(1, [flow_stat(MATCH_A, 3)])
    return cache


def test_save_writes_versioned_image(clock, image_path):
    persistence.save_cache(_filled_cache(clock), image_path)

    with open(image_path) as f:
        image = json.load(f)
    assert image["version"] == CACHE_IMAGE_VERSION
    assert "saved_at" in image
    assert list(image["switches"]) == ["1"]


def test_save_leaves_no_temp_file(clock, image_path, tmp_path):
    persistence.save_cache(_filled_cache(clock), image_path)
    assert sorted(p.name for p in (tmp_path / "run").iterdir()) == ["flow_cache.json"]


def test_failed_save_keeps_previous_image(clock, image_path, monkeypatch, tmp_path):
    persistence.save_cache(_filled_cache(clock), image_path)
    with open(image_path) as f:
        before = f.read()

    def broken_dump(*args, **kwargs):
        raise ValueError("cannot serialize")

    monkeypatch.setattr(persistence.json, "dump", broken_dump)
    with pytest.raises(ValueError):
        persistence.save_cache(FlowStatCache(clock=clock), image_path)

    with open(image_path) as f:
        assert f.read() == before
    assert not (tmp_path / "run" / "flow_cache.json.tmp").exists()


def test_load_round_trip(clock, image_path):
    persistence.save_cache(_filled_cache(clock), image_path)

    cache = FlowStatCache(clock=clock)
    assert persistence.load_cache(cache, image_path)
    assert cache.get_sliced_flow_stats(1, "latency") == [flow_stat(MATCH_A, 3)]
    (t,) = cache.get_possible_expired_flows(1)
    assert t.rule == rule(MATCH_A, idle=60)


def test_missing_image_is_cold_start(clock, image_path):
    cache = FlowStatCache(clock=clock)
    assert not persistence.load_cache(cache, image_path)
    assert cache.switches() == []


@pytest.mark.parametrize("content", [
    "{not json",
    "[]",
    json.dumps({"version": CACHE_IMAGE_VERSION + 1, "switches": {}}),
    json.dumps({"version": CACHE_IMAGE_VERSION}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": {"1": {"timeouts": [{"slice": "s"}]}}}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": {"x": {}}}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": []}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": None}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": {"1": []}}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": {"1": {"slices": []}}}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": {"1": {"flows": {}}}}),
    json.dumps({"version": CACHE_IMAGE_VERSION, "switches": {"1": {"timeouts": [{
        "slice": "s", "rule": {"match": []}, "hard": False, "timeout": 60,
        "installed_at": 1.0, "last_used": "soon",
    }]}}}),
])
def test_bad_image_is_cold_start(clock, image_path, content, tmp_path):
    (tmp_path / "run").mkdir()
    with open(image_path, "w") as f:
        f.write(content)

    cache = FlowStatCache(clock=clock)
    assert not persistence.load_cache(cache, image_path)
    assert cache.switches() == []


def test_read_image_missing_returns_none(image_path):
    assert persistence.read_image(image_path) is None
