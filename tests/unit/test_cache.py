"""
Tests for the TTL cache used on the webhook grant lookup path.
"""

import pytest

from core import TTLCache


class StepClock:
    def __init__(self):
        self.t = 0.0

    def now(self):
        raise NotImplementedError

    def monotonic(self):
        return self.t


@pytest.fixture
def step_clock():
    return StepClock()


class TestTTLCache:
    def test_entry_expires_after_ttl(self, step_clock):
        cache = TTLCache(60, clock=step_clock)
        cache.set("grant-1", "account-1")

        step_clock.t = 59.9
        assert cache.get("grant-1") == "account-1"

        step_clock.t = 60.0
        assert cache.get("grant-1") is None
        assert len(cache) == 0

    def test_lru_eviction(self, step_clock):
        cache = TTLCache(60, max_entries=2, clock=step_clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_invalidate_and_clear(self, step_clock):
        cache = TTLCache(60, clock=step_clock)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        cache.invalidate("missing")
        assert cache.get("a") is None

        cache.clear()
        assert len(cache) == 0

    @pytest.mark.parametrize("ttl,max_entries", [(0, 10), (-1, 10), (10, 0)])
    def test_rejects_bad_bounds(self, ttl, max_entries):
        with pytest.raises(ValueError):
            TTLCache(ttl, max_entries=max_entries)
