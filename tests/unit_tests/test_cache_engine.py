"""Unit tests for CacheEngine: keys, TTL expiry, LRU eviction, invalidation."""

import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import threading

import pytest

from github_guard.cache.engine import CacheEngine
from github_guard.exceptions import CacheMisuseError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheEngine(ttl=60, max_size=3, clock=clock)


def test_cache_key_is_deterministic_and_sorted(cache):
    k1 = cache.generate_cache_key("get", "https://API.github.com/repos/o/r/", {"b": 2, "a": 1})
    k2 = cache.generate_cache_key("GET", "https://api.github.com/repos/o/r?a=1", {"b": "2"})
    assert k1 == k2 == "GET:api.github.com/repos/o/r?a=1&b=2"


def test_cache_key_path_only(cache):
    assert cache.generate_cache_key("get", "/repos/o/r/", {"b": 2, "a": 1}) == "GET:/repos/o/r?a=1&b=2"


def test_cache_key_hashes_auth_context(cache):
    key = cache.generate_cache_key("GET", "/user", auth_context="ghp_secret_token")
    other = cache.generate_cache_key("GET", "/user", auth_context="ghp_other_token")
    assert "ghp_secret_token" not in key
    assert key != other
    assert key.startswith("GET:/user#")


def test_store_and_get_hit(cache):
    cache.store("k", {"id": 1}, etag='"abc"')
    entry = cache.get("k")
    assert entry is not None
    assert entry.data == {"id": 1}
    assert entry.etag == '"abc"'
    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 0


def test_miss_counts(cache):
    assert cache.get("missing") is None
    assert cache.metrics().misses == 1


def test_entry_never_returned_past_expiry(cache, clock):
    cache.store("k", "body", ttl=10)
    clock.advance(9.99)
    assert cache.get("k") is not None
    clock.advance(0.01)
    assert cache.get("k") is None
    metrics = cache.metrics()
    assert metrics.expirations == 1
    assert metrics.size == 0


def test_max_age_header_sets_ttl(cache, clock):
    entry = cache.store("k", "body", headers={"Cache-Control": "private, max-age=5", "ETag": '"v1"'})
    assert entry.ttl_seconds == 5
    assert entry.etag == '"v1"'
    clock.advance(5)
    assert cache.get("k") is None


def test_explicit_ttl_wins_over_headers(cache):
    entry = cache.store("k", "body", ttl=100, headers={"cache-control": "max-age=5"})
    assert entry.ttl_seconds == 100


def test_capacity_and_lru_eviction(cache):
    # max_size=3; inserting a 4th evicts the least recently accessed
    cache.store("a", 1)
    cache.store("b", 2)
    cache.store("c", 3)
    assert cache.get("a") is not None
    cache.store("d", 4)
    assert len(cache) == 3
    assert "b" not in cache
    assert "a" in cache
    assert cache.metrics().evictions == 1


def test_size_never_exceeds_max(cache):
    for i in range(20):
        cache.store(f"k{i}", i)
        assert len(cache) <= cache.max_size


def test_replace_keeps_size(cache):
    cache.store("a", 1)
    cache.store("a", 2)
    assert len(cache) == 1
    assert cache.get("a").data == 2


def test_memory_usage_tracks_entries(cache):
    cache.store("a", "x" * 100)
    usage = cache.metrics().memory_usage
    assert usage > 100
    cache.delete("a")
    assert cache.metrics().memory_usage == 0


def test_revalidate_extends_expiry(cache, clock):
    cache.store("k", "body", ttl=10, etag='"v1"')
    clock.advance(8)
    entry = cache.revalidate("k", ttl=10, headers={"ETag": '"v2"'})
    assert entry.etag == '"v2"'
    clock.advance(8)
    assert cache.get("k").data == "body"


def test_get_stale_returns_expired_entry_without_counting(cache, clock):
    cache.store("k", "body", ttl=1, etag='"v1"')
    clock.advance(2)
    stale = cache.get_stale("k")
    assert stale is not None
    assert stale.conditional_headers() == {"If-None-Match": '"v1"'}
    assert cache.metrics().hits == 0
    assert cache.metrics().misses == 0


def test_delete_and_clear(cache):
    cache.store("a", 1)
    cache.store("b", 2)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    assert cache.clear() == 1
    assert len(cache) == 0


def test_invalidate_by_prefix_pattern_and_predicate(cache):
    cache.store("GET:/repos/o/r", 1)
    cache.store("GET:/repos/o/r/issues", 2)
    cache.store("GET:/users/u", 3)
    assert cache.invalidate(prefix="GET:/repos/o/r/") == 1
    assert cache.invalidate(pattern="GET:/repos/*") == 1
    assert cache.invalidate(predicate=lambda k: k.endswith("/u")) == 1
    assert len(cache) == 0


def test_invalidate_requires_filter(cache):
    with pytest.raises(CacheMisuseError):
        cache.invalidate()


def test_cleanup_expired(cache, clock):
    cache.store("a", 1, ttl=1)
    cache.store("b", 2, ttl=100)
    clock.advance(5)
    assert cache.cleanup_expired() == 1
    assert cache.keys() == ["b"]


def test_disabled_cache_never_hits(clock):
    cache = CacheEngine(enabled=False, clock=clock)
    assert cache.store("k", 1) is None
    assert cache.get("k") is None
    assert cache.metrics().misses == 1


@pytest.mark.parametrize(
    "kwargs",
    [{"ttl": -1}, {"ttl": 0}, {"max_size": 0}, {"max_size": -5}, {"storage": "redis"}],
)
def test_construction_misuse(kwargs):
    with pytest.raises(CacheMisuseError):
        CacheEngine(**kwargs)


def test_negative_entry_ttl_rejected(cache):
    with pytest.raises(CacheMisuseError):
        cache.store("k", 1, ttl=-5)


def test_hit_ratio(cache):
    cache.store("a", 1)
    cache.get("a")
    cache.get("b")
    assert cache.metrics().hit_ratio == 0.5


def test_concurrent_access_respects_capacity(clock):
    cache = CacheEngine(ttl=60, max_size=50, clock=clock)

    def worker(n):
        for i in range(200):
            cache.store(f"{n}-{i}", i)
            cache.get(f"{n}-{i // 2}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    metrics = cache.metrics()
    assert metrics.size <= 50
    assert metrics.hits + metrics.misses == 8 * 200
