"""
MonitoringManager: programmatic access to operational metrics and health
information for the guard components.
"""

import threading
import time
from typing import Any, Dict


class MonitoringManager:
    def __init__(self, cache_engine=None, rate_limit_tracker=None, token_manager=None, webhook_engine=None):
        """Initialize with references to core components; any may be None."""
        self.cache_engine = cache_engine
        self.rate_limit_tracker = rate_limit_tracker
        self.token_manager = token_manager
        self.webhook_engine = webhook_engine
        self.start_time = time.time()
        self.requests = {"total": 0, "cache_hits": 0, "retries": 0, "failures": 0}
        self.lock = threading.Lock()

    def record_request(self, cache_hit: bool = False) -> None:
        with self.lock:
            self.requests["total"] += 1
            if cache_hit:
                self.requests["cache_hits"] += 1

    def record_retry(self) -> None:
        with self.lock:
            self.requests["retries"] += 1

    def record_failure(self) -> None:
        with self.lock:
            self.requests["failures"] += 1

    def get_request_stats(self) -> Dict[str, Any]:
        with self.lock:
            return dict(self.requests)

    def get_cache_stats(self) -> Dict[str, Any]:
        """Return entry counts, memory usage, hit/miss rates, and evictions."""
        if self.cache_engine is None:
            return {"unavailable": True}
        stats = self.cache_engine.get_stats()
        stats["enabled"] = self.cache_engine.enabled
        return stats

    def get_rate_limit_stats(self) -> Dict[str, Any]:
        """Return the current quota window of every known resource."""
        if self.rate_limit_tracker is None:
            return {"unavailable": True}
        return {
            name: {
                "limit": w.limit,
                "remaining": w.remaining,
                "used": w.used,
                "reset_at": w.reset_at,
                "percentage_used": round(w.percentage_used, 2),
            }
            for name, w in self.rate_limit_tracker.snapshot().items()
        }

    def get_token_stats(self) -> Dict[str, Any]:
        if self.token_manager is None:
            return {"unavailable": True}
        return self.token_manager.metrics()

    def get_webhook_stats(self) -> Dict[str, Any]:
        if self.webhook_engine is None:
            return {"unavailable": True}
        return self.webhook_engine.metrics()

    def get_system_health(self) -> Dict[str, Any]:
        """Summarize component health as "healthy", "degraded" or "unavailable"."""
        health: Dict[str, Any] = {"uptime_seconds": round(time.time() - self.start_time, 2)}
        if self.token_manager is not None:
            tokens = self.token_manager.metrics()
            if tokens["total_tokens"] == 0:
                health["tokens"] = "unavailable"
            elif tokens["active_tokens"] == 0:
                health["tokens"] = "unavailable"
            elif tokens["quarantined_tokens"]:
                health["tokens"] = "degraded"
            else:
                health["tokens"] = "healthy"
        if self.rate_limit_tracker is not None:
            exhausted = [name for name in self.rate_limit_tracker.snapshot() if self.rate_limit_tracker.is_exhausted(name)]
            health["rate_limits"] = "degraded" if exhausted else "healthy"
            health["exhausted_resources"] = exhausted
        health["cache"] = "healthy" if self.cache_engine is not None and self.cache_engine.enabled else "disabled"
        return health

    def get_metrics(self) -> Dict[str, Any]:
        """Aggregate every component's metrics into one dictionary."""
        return {
            "requests": self.get_request_stats(),
            "cache": self.get_cache_stats(),
            "rate_limits": self.get_rate_limit_stats(),
            "tokens": self.get_token_stats(),
            "webhooks": self.get_webhook_stats(),
            "health": self.get_system_health(),
        }
