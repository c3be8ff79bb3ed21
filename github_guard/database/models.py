"""Data models for GitHub Guard."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple


@dataclass
class CacheEntry:
    """Represents one cached API response.

    ``expires_at`` and ``last_accessed`` are absolute timestamps on the
    owning engine's clock.
    """

    data: Any
    expires_at: float
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    created_at: float = 0.0
    ttl_seconds: Optional[float] = None
    size_bytes: int = 0
    last_accessed: float = 0.0
    headers: Dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def has_validators(self) -> bool:
        """True if the entry can be revalidated with a conditional request."""
        return bool(self.etag or self.last_modified)

    def conditional_headers(self) -> Dict[str, str]:
        """Headers for a conditional re-fetch of this entry."""
        headers = {}
        if self.etag:
            headers["If-None-Match"] = self.etag
        if self.last_modified:
            headers["If-Modified-Since"] = self.last_modified
        return headers


@dataclass
class CacheMetrics:
    """Aggregate cache counters."""

    hits: int = 0
    misses: int = 0
    size: int = 0
    max_size: int = 0
    memory_usage: int = 0
    evictions: int = 0
    expirations: int = 0
    sets: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self.size,
            "max_size": self.max_size,
            "memory_usage": self.memory_usage,
            "hit_ratio": self.hit_ratio,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "sets": self.sets,
        }


@dataclass
class RateLimitWindow:
    """Quota state for one resource (core, search, graphql, ...)."""

    resource: str
    limit: int
    remaining: int
    reset_at: float
    used: int = 0

    @property
    def percentage_used(self) -> float:
        if self.limit <= 0:
            return 100.0
        return (self.limit - self.remaining) / self.limit * 100.0

    @property
    def is_exhausted(self) -> bool:
        return self.remaining <= 0


@dataclass(frozen=True)
class TokenInfo:
    """One API credential. Frozen: the rotation manager never changes it."""

    token: str
    type: str = "personal"
    scopes: Tuple[str, ...] = ()
    expires_at: Optional[float] = None

    def __post_init__(self):
        # Accept any iterable of scopes but store a hashable tuple
        object.__setattr__(self, "scopes", tuple(self.scopes or ()))

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def __repr__(self) -> str:
        masked = self.token[:4] + "..." if len(self.token) > 4 else "***"
        return f"TokenInfo(token={masked!r}, type={self.type!r}, scopes={self.scopes!r})"


@dataclass
class TokenHealth:
    """Mutable health record for one token."""

    consecutive_errors: int = 0
    total_errors: int = 0
    total_successes: int = 0
    selections: int = 0
    quarantine_until: Optional[float] = None
    last_used: float = 0.0
    last_success: Optional[float] = None

    @property
    def total_requests(self) -> int:
        return self.total_successes + self.total_errors

    @property
    def error_rate(self) -> float:
        total = self.total_requests
        return (self.total_errors / total) if total > 0 else 0.0

    def is_healthy(self, now: float, unhealthy_threshold: int) -> bool:
        return self.consecutive_errors < unhealthy_threshold and not self.in_quarantine(now)

    def in_quarantine(self, now: float) -> bool:
        return self.quarantine_until is not None and now < self.quarantine_until


@dataclass
class WebhookDelivery:
    """Dedup record for one webhook delivery id."""

    delivery_id: str
    first_seen_at: float


@dataclass
class WebhookEvent:
    """A parsed, authenticated inbound webhook notification."""

    type: str
    delivery_id: str
    payload: Dict[str, Any]
    action: Optional[str] = None
    received_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "action": self.action,
            "delivery_id": self.delivery_id,
            "payload": self.payload,
        }
