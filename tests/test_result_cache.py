"""
Tests for the bounded caches.
"""

import pytest

from menuscan.models.data_models import Dish, Menu
from menuscan.services.result_cache import BoundedLRU, ResultCache
from tests.conftest import FakeClock


def sample_menu(name="Soup"):
    return Menu(dishes=[Dish(name=name, price="$5")], confidence=0.9)


class TestBoundedLRU:
    """Test cases for BoundedLRU."""

    def test_get_and_put(self):
        """Test basic storage."""
        cache = BoundedLRU(3)
        cache.put("a", 1)

        assert cache.get("a") == 1
        assert cache.get("missing") is None
        assert "a" in cache
        assert len(cache) == 1

    def test_evicts_least_recently_used(self):
        """Test the oldest untouched entry is evicted at capacity."""
        cache = BoundedLRU(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")  # a is now most recent
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_evicts_by_cost(self):
        """Test total cost stays under the limit."""
        cache = BoundedLRU(10, max_cost=100)
        cache.put("a", "x", cost=60)
        cache.put("b", "y", cost=30)
        cache.put("c", "z", cost=30)

        assert "a" not in cache
        assert cache.total_cost == 60

    def test_oversized_entry_not_cached(self):
        """Test an entry larger than the cost limit is refused."""
        cache = BoundedLRU(10, max_cost=100)
        cache.put("big", "x", cost=101)

        assert "big" not in cache
        assert cache.total_cost == 0

    def test_replace_updates_cost(self):
        """Test replacing a key does not double count its cost."""
        cache = BoundedLRU(10, max_cost=100)
        cache.put("a", "x", cost=40)
        cache.put("a", "y", cost=20)

        assert cache.get("a") == "y"
        assert cache.total_cost == 20

    def test_pop_and_clear(self):
        """Test removal."""
        cache = BoundedLRU(5)
        cache.put("a", 1, cost=5)
        cache.put("b", 2, cost=5)

        assert cache.pop("a") == 1
        assert cache.pop("a") is None
        cache.clear()
        assert len(cache) == 0
        assert cache.total_cost == 0

    def test_capacity_must_be_positive(self):
        """Test invalid capacity."""
        with pytest.raises(ValueError):
            BoundedLRU(0)


class TestResultCache:
    """Test cases for ResultCache."""

    def setup_method(self):
        """Set up a cache with a controllable clock."""
        self.clock = FakeClock()
        self.cache = ResultCache(ttl=300.0, clock=self.clock)

    def test_hit_before_ttl(self):
        """Test a fresh entry is returned."""
        menu = sample_menu()
        self.cache.put("hash-1", menu)
        self.clock.advance(300.0 - 0.001)

        cached = self.cache.get("hash-1")
        assert cached is not None
        assert cached.menu == menu
        assert cached.hash == "hash-1"

    def test_miss_at_ttl(self):
        """Test an entry is a miss once the TTL has elapsed."""
        self.cache.put("hash-1", sample_menu())
        self.clock.advance(300.0 + 0.001)

        assert self.cache.get("hash-1") is None
        assert len(self.cache) == 0

    def test_put_refreshes_timestamp(self):
        """Test re-inserting an entry restarts its TTL."""
        self.cache.put("hash-1", sample_menu())
        self.clock.advance(200.0)
        self.cache.put("hash-1", sample_menu("Stew"))
        self.clock.advance(200.0)

        cached = self.cache.get("hash-1")
        assert cached is not None
        assert cached.menu.dishes[0].name == "Stew"

    def test_capacity_eviction(self):
        """Test the result cache holds at most its capacity."""
        cache = ResultCache(capacity=2, clock=self.clock)
        cache.put("a", sample_menu())
        cache.put("b", sample_menu())
        cache.put("c", sample_menu())

        assert cache.get("a") is None
        assert cache.get("c") is not None
        assert len(cache) == 2

    def test_clear(self):
        """Test clearing empties the cache."""
        self.cache.put("hash-1", sample_menu())
        self.cache.clear()
        assert self.cache.get("hash-1") is None

    def test_cache_info(self):
        """Test cache info reports sizes."""
        self.cache.put("hash-1", sample_menu())
        info = self.cache.get_cache_info()

        assert info["entries"] == 1
        assert info["capacity"] == 20
        assert info["total_cost"] > 0
        assert info["ttl_seconds"] == 300.0
