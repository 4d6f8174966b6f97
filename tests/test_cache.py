"""
Tests for the response cache.
"""

from datetime import timedelta

import pytest

from ai_route_guard.core.cache import ResponseCache, cache_key


@pytest.fixture
def cache(clock):
    return ResponseCache(ttl_seconds=60, max_entries=2, clock=clock)


class TestCacheKey:
    def test_stable_for_equal_inputs(self):
        first = cache_key("hi", "greeting", ["a"], {"temperature": 0.1, "max_tokens": 5})
        second = cache_key("hi", "greeting", ("a",), {"max_tokens": 5, "temperature": 0.1})

        assert first == second

    @pytest.mark.parametrize("changed", [
        ("hi!", "greeting", (), None),
        ("hi", "summary", (), None),
        ("hi", "greeting", ("earlier",), None),
        ("hi", "greeting", (), {"temperature": 0.9}),
    ])
    def test_every_input_matters(self, changed):
        assert cache_key(*changed) != cache_key("hi", "greeting")


class TestResponseCache:
    """Test TTL and LRU behavior."""

    def test_hit_and_miss(self, cache):
        cache.put("k", "answer", "zero", 0.0)

        entry = cache.get("k")

        assert entry.content == "answer"
        assert entry.backend_id == "zero"
        assert cache.get("other") is None
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1, "hit_rate": 50.0}

    def test_entries_expire(self, cache, clock):
        cache.put("k", "answer", "zero", 0.0)

        clock.advance(timedelta(seconds=60))

        assert cache.get("k") is None
        assert len(cache) == 0

    def test_least_recently_used_evicted(self, cache):
        cache.put("a", "1", "zero", 0.0)
        cache.put("b", "2", "zero", 0.0)
        cache.get("a")

        cache.put("c", "3", "zero", 0.0)

        assert cache.get("b") is None
        assert cache.get("a").content == "1"
        assert cache.get("c").content == "3"

    def test_clear(self, cache):
        cache.put("a", "1", "zero", 0.0)

        cache.clear()

        assert len(cache) == 0
        assert cache.stats()["hit_rate"] == 0.0
