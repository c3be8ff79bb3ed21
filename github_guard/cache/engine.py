"""Cache engine implementation for GitHub Guard."""

import fnmatch
import hashlib
import json
import re
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse

from github_guard.core.config import CACHE_STORAGES
from github_guard.database.models import CacheEntry, CacheMetrics
from github_guard.exceptions import CacheMisuseError
from github_guard.utils.headers import normalize_headers
from github_guard.utils.logger import get_logger

_MAX_AGE_RE = re.compile(r"max-age=(\d+)")

# Per-entry bookkeeping overhead counted toward memory usage
_ENTRY_OVERHEAD_BYTES = 64


class CacheEngine:
    """Bounded in-memory response cache with TTL expiry and LRU eviction.

    Entries live in an ``OrderedDict`` kept in recency order: both insertion
    and a successful lookup move a key to the most-recent end, and eviction
    pops from the least-recent end. One lock serializes the entry map, the
    recency order, and every counter, so ``size <= max_size`` holds under
    concurrent use.

    The engine never performs HTTP itself. Entries may carry an ETag and a
    Last-Modified value so the request layer can issue a conditional request
    and, on a 304 response, call ``revalidate`` to extend the entry's life
    without re-storing the body.

    Invalidation is always explicit: TTL expiry (lazy, on access), single-key
    ``delete`` after a mutating call, and caller-driven bulk ``invalidate``
    by predicate, prefix, or glob pattern over ``keys()``.

    Example:
        >>> cache = CacheEngine(ttl=60, max_size=100)
        >>> key = cache.generate_cache_key("GET", "https://api.github.com/repos/o/r")
        >>> cache.store(key, {"name": "r"}, etag='"abc"')
        >>> entry = cache.get(key)
    """

    def __init__(
        self,
        ttl: float = 300,
        max_size: int = 1000,
        enabled: bool = True,
        storage: str = "memory",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache engine.

        Args:
            ttl: Default time-to-live in seconds for new entries
            max_size: Maximum number of entries held at once
            enabled: When False every lookup misses and nothing is stored
            storage: Storage backend name; only "memory" is supported
            clock: Source of the current time in seconds

        Raises:
            CacheMisuseError: If ttl or max_size is not positive, or the
                storage backend is unknown
        """
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl <= 0:
            raise CacheMisuseError(f"Cache TTL must be a positive number of seconds, got {ttl!r}")
        if isinstance(max_size, bool) or not isinstance(max_size, int) or max_size <= 0:
            raise CacheMisuseError(f"Cache max_size must be a positive integer, got {max_size!r}")
        if storage not in CACHE_STORAGES:
            raise CacheMisuseError(f"Unsupported cache storage {storage!r}; expected one of {list(CACHE_STORAGES)}")

        self.default_ttl = ttl
        self.max_size = max_size
        self.enabled = enabled
        self.storage = storage
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._memory_usage = 0
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
            "sets": 0,
        }
        self.logger = get_logger("cache.engine")

    @classmethod
    def from_config(cls, cache_config, clock: Callable[[], float] = time.time) -> "CacheEngine":
        """Build an engine from a ``CacheConfig``."""
        return cls(
            ttl=cache_config.ttl,
            max_size=cache_config.max_size,
            enabled=cache_config.enabled,
            storage=cache_config.storage,
            clock=clock,
        )

    # Key generation

    def _normalize_url(self, url: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Normalize a URL into ``host/path?sorted-query``.

        Scheme is dropped, host is lower-cased, trailing slashes are
        insignificant except for the root, and query parameters from the URL
        and from ``params`` are merged and sorted.
        """
        parsed = urlparse(url)
        query = parse_qsl(parsed.query, keep_blank_values=True)
        if params:
            for name, value in params.items():
                if value is None:
                    continue
                if isinstance(value, (list, tuple)):
                    query.extend((str(name), str(v)) for v in value)
                else:
                    query.append((str(name), str(value)))
        path = parsed.path or "/"
        if path != "/":
            path = path.rstrip("/") or "/"
        normalized = parsed.netloc.lower() + path
        if query:
            normalized += "?" + urlencode(sorted(query))
        return normalized

    def generate_cache_key(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        auth_context: Optional[str] = None,
    ) -> str:
        """Generate a deterministic cache key for a request.

        Keys stay human-readable so callers can invalidate by prefix or
        pattern. The auth context (for example a token) is hashed so secrets
        never appear in keys.

        Args:
            method: HTTP method
            url: Request URL, absolute or path-only
            params: Query parameters not already in the URL
            auth_context: Optional identity that should partition the cache

        Returns:
            A key such as ``GET:api.github.com/repos/o/r?page=2``

        Example:
            >>> cache.generate_cache_key("get", "/repos/o/r/", {"b": 2, "a": 1})
            'GET:/repos/o/r?a=1&b=2'
        """
        key = f"{method.upper()}:{self._normalize_url(url, params)}"
        if auth_context:
            digest = hashlib.sha256(auth_context.encode("utf-8")).hexdigest()[:16]
            key += f"#{digest}"
        return key

    # Entry construction

    def extract_ttl_from_headers(self, headers: Optional[Mapping[str, Any]]) -> float:
        """Return ``Cache-Control: max-age`` in seconds, or the default TTL."""
        cache_control = normalize_headers(headers).get("cache-control")
        if cache_control:
            match = _MAX_AGE_RE.search(cache_control)
            if match:
                return int(match.group(1))
        return self.default_ttl

    def _estimate_size(self, key: str, data: Any) -> int:
        if isinstance(data, (bytes, bytearray)):
            body = len(data)
        elif isinstance(data, str):
            body = len(data.encode("utf-8"))
        else:
            try:
                body = len(json.dumps(data, separators=(",", ":"), default=str).encode("utf-8"))
            except (TypeError, ValueError):
                body = len(repr(data))
        return body + len(key.encode("utf-8")) + _ENTRY_OVERHEAD_BYTES

    def create_entry(
        self,
        data: Any,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        ttl: Optional[float] = None,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> CacheEntry:
        """Build a cache entry for ``data``.

        TTL precedence: explicit ``ttl``, then ``Cache-Control: max-age`` from
        ``headers``, then the engine default. ETag and Last-Modified are taken
        from ``headers`` when not passed explicitly.

        Raises:
            CacheMisuseError: If an explicit ttl is negative
        """
        if ttl is not None and ttl < 0:
            raise CacheMisuseError(f"Entry TTL must not be negative, got {ttl!r}")
        normalized = normalize_headers(headers)
        if ttl is None:
            ttl = self.extract_ttl_from_headers(normalized) if normalized else self.default_ttl
        now = self._clock()
        return CacheEntry(
            data=data,
            expires_at=now + ttl,
            etag=etag or normalized.get("etag"),
            last_modified=last_modified or normalized.get("last-modified"),
            created_at=now,
            ttl_seconds=ttl,
            last_accessed=now,
            headers=normalized,
        )

    # Core operations

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if present and unexpired, else None.

        Every call counts as exactly one hit or one miss. Expired entries are
        removed here.
        """
        with self._lock:
            if not self.enabled:
                self._stats["misses"] += 1
                return None
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            now = self._clock()
            if entry.is_expired(now):
                self._remove_locked(key)
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                self.logger.debug("Cache entry expired: %s", key)
                return None
            entry.last_accessed = now
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry

    def get_stale(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` even if expired, without counting a lookup.

        Used by the request layer to pick up ETag/Last-Modified validators for
        a conditional re-fetch after ``get`` missed on an expired entry. Note
        that ``get`` purges expired entries, so call this first when
        revalidation matters.
        """
        with self._lock:
            if not self.enabled:
                return None
            return self._entries.get(key)

    def set(self, key: str, entry: CacheEntry) -> bool:
        """Insert or replace the entry for ``key``.

        Inserting a new key into a full cache evicts the least recently
        accessed entry first. Replacing refreshes recency without changing
        size.

        Returns:
            True if stored, False if the cache is disabled
        """
        if not self.enabled:
            return False
        entry.size_bytes = entry.size_bytes or self._estimate_size(key, entry.data)
        with self._lock:
            if key in self._entries:
                self._memory_usage -= self._entries[key].size_bytes
                self._entries[key] = entry
                self._entries.move_to_end(key)
            else:
                while len(self._entries) >= self.max_size:
                    evicted_key, evicted = self._entries.popitem(last=False)
                    self._memory_usage -= evicted.size_bytes
                    self._stats["evictions"] += 1
                    self.logger.debug("Evicted least recently used entry: %s", evicted_key)
                self._entries[key] = entry
            self._memory_usage += entry.size_bytes
            self._stats["sets"] += 1
        return True

    def store(
        self,
        key: str,
        data: Any,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        ttl: Optional[float] = None,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> Optional[CacheEntry]:
        """Create an entry for ``data`` and store it. Returns the entry, or None if disabled."""
        if not self.enabled:
            return None
        entry = self.create_entry(data, etag=etag, last_modified=last_modified, ttl=ttl, headers=headers)
        self.set(key, entry)
        return entry

    def revalidate(
        self, key: str, ttl: Optional[float] = None, headers: Optional[Mapping[str, Any]] = None
    ) -> Optional[CacheEntry]:
        """Extend the life of an entry after a 304 Not Modified response.

        The body is kept; expiry restarts from now. New validators in
        ``headers`` replace the stored ones.

        Returns:
            The refreshed entry, or None if the key is no longer cached
        """
        normalized = normalize_headers(headers)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if ttl is None:
                ttl = self.extract_ttl_from_headers(normalized) if normalized else (entry.ttl_seconds or self.default_ttl)
            now = self._clock()
            entry.expires_at = now + ttl
            entry.ttl_seconds = ttl
            entry.last_accessed = now
            entry.etag = normalized.get("etag", entry.etag)
            entry.last_modified = normalized.get("last-modified", entry.last_modified)
            self._entries.move_to_end(key)
            return entry

    def delete(self, key: str) -> bool:
        """Remove one entry. Missing keys are not an error."""
        with self._lock:
            return self._remove_locked(key)

    def clear(self) -> int:
        """Remove all entries. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._memory_usage = 0
        if count:
            self.logger.info("Cleared %d cache entries", count)
        return count

    def keys(self, pattern: Optional[str] = None) -> List[str]:
        """List cached keys, optionally filtered by a glob pattern (``*`` wildcard)."""
        with self._lock:
            keys = list(self._entries.keys())
        if pattern is None:
            return keys
        return [k for k in keys if fnmatch.fnmatchcase(k, pattern)]

    def invalidate(
        self,
        predicate: Optional[Callable[[str], bool]] = None,
        prefix: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> int:
        """Remove every entry whose key matches all given filters.

        The engine tracks no tags; callers encode whatever they need in the
        key and select it here.

        Returns:
            Number of entries removed

        Raises:
            CacheMisuseError: If no filter is given (use ``clear`` instead)

        Example:
            >>> cache.invalidate(prefix="GET:api.github.com/repos/octo/hello")
        """
        if predicate is None and prefix is None and pattern is None:
            raise CacheMisuseError("invalidate() needs a predicate, prefix or pattern; use clear() to drop everything")

        def matches(key: str) -> bool:
            if prefix is not None and not key.startswith(prefix):
                return False
            if pattern is not None and not fnmatch.fnmatchcase(key, pattern):
                return False
            if predicate is not None and not predicate(key):
                return False
            return True

        with self._lock:
            doomed = [k for k in self._entries if matches(k)]
            for key in doomed:
                self._remove_locked(key)
        if doomed:
            self.logger.debug("Invalidated %d cache entries", len(doomed))
        return len(doomed)

    def cleanup_expired(self) -> int:
        """Sweep all expired entries so ``size`` is exact. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._remove_locked(key)
            self._stats["expirations"] += len(expired)
        return len(expired)

    def _remove_locked(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._memory_usage -= entry.size_bytes
        return True

    # Metrics

    def metrics(self) -> CacheMetrics:
        """Snapshot of cache counters. ``size`` may include not-yet-purged expired entries."""
        with self._lock:
            return CacheMetrics(
                hits=self._stats["hits"],
                misses=self._stats["misses"],
                size=len(self._entries),
                max_size=self.max_size,
                memory_usage=self._memory_usage,
                evictions=self._stats["evictions"],
                expirations=self._stats["expirations"],
                sets=self._stats["sets"],
            )

    def get_stats(self) -> Dict[str, Any]:
        return self.metrics().to_dict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())
