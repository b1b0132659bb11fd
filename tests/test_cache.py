from __future__ import annotations

from invoice_compliance.utils.cache import TtlCache


class TestTtlCache:
    def test_get_missing(self, clock):
        assert TtlCache(10, clock=clock).get("x") is None

    def test_entry_expires(self, clock):
        cache = TtlCache(10, clock=clock)
        cache.set("FR123", True)
        clock.advance(9.9)
        assert cache.get("FR123") is True
        clock.advance(0.1)
        assert cache.get("FR123") is None

    def test_per_entry_ttl(self, clock):
        cache = TtlCache(10, clock=clock)
        cache.set("token", "abc", ttl=100)
        clock.advance(50)
        assert cache.get("token") == "abc"

    def test_falsy_values_are_cached(self, clock):
        cache = TtlCache(10, clock=clock)
        cache.set("DE1", False)
        assert cache.get("DE1") is False

    def test_invalidate_and_clear(self, clock):
        cache = TtlCache(10, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0

    def test_len_ignores_expired(self, clock):
        cache = TtlCache(10, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2, ttl=1)
        clock.advance(5)
        assert len(cache) == 1
