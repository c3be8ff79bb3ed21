"""
RateLimitTracker: per-resource quota windows parsed from API responses.
"""

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from github_guard.database.models import RateLimitWindow
from github_guard.exceptions import RateLimitWarning
from github_guard.utils.headers import normalize_headers, parse_int_header
from github_guard.utils.logger import get_logger

# Used when a resource has never reported usable headers: the unauthenticated
# REST quota, resetting an hour from now.
CONSERVATIVE_LIMIT = 60
CONSERVATIVE_RESET_SECONDS = 3600

DEFAULT_RESOURCE = "core"


class RateLimitTracker:
    """Tracks quota windows (core, search, graphql, ...) and warns near exhaustion.

    Windows are updated after every response. Ingestion never raises:
    missing or malformed headers keep the previous window for the resource,
    or install a conservative default when there is none.

    The warning callback is edge-triggered. It fires once when a resource's
    usage crosses ``warning_threshold_percent`` and is re-armed only when
    usage drops back below the threshold or the window resets.

    Example:
        >>> tracker = RateLimitTracker(warning_threshold_percent=80, on_warning=print)
        >>> tracker.update_from_headers({"x-ratelimit-limit": "5000", ...})
        >>> tracker.snapshot()["core"].remaining
    """

    def __init__(
        self,
        warning_threshold_percent: float = 80,
        on_warning: Optional[Callable[[RateLimitWarning], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not 0 < warning_threshold_percent <= 100:
            raise ValueError("warning_threshold_percent must be in (0, 100]")
        self.warning_threshold_percent = warning_threshold_percent
        self.on_warning = on_warning
        self._clock = clock
        self.lock = threading.Lock()
        self.windows: Dict[str, RateLimitWindow] = {}
        self._warned: Dict[str, bool] = {}
        self.logger = get_logger("throttling.manager")

    @classmethod
    def from_config(cls, rate_limit_config, on_warning=None, clock: Callable[[], float] = time.time):
        return cls(
            warning_threshold_percent=rate_limit_config.warning_threshold_percent,
            on_warning=on_warning,
            clock=clock,
        )

    def _default_window(self, resource: str) -> RateLimitWindow:
        return RateLimitWindow(
            resource=resource,
            limit=CONSERVATIVE_LIMIT,
            remaining=CONSERVATIVE_LIMIT,
            reset_at=self._clock() + CONSERVATIVE_RESET_SECONDS,
            used=0,
        )

    def record_response(self, resource: str, window: RateLimitWindow) -> RateLimitWindow:
        """Store ``window`` as the current state of ``resource``.

        ``remaining`` is clamped into ``[0, limit]`` and ``used`` is derived
        when it is inconsistent.

        Returns:
            The stored window
        """
        limit = max(0, int(window.limit))
        remaining = min(max(0, int(window.remaining)), limit)
        used = window.used if window.used is not None and window.used >= 0 else limit - remaining
        stored = replace(window, resource=resource, limit=limit, remaining=remaining, used=used)

        fire = None
        with self.lock:
            previous = self.windows.get(resource)
            if previous is not None and previous.reset_at <= self._clock() and stored.reset_at > previous.reset_at:
                # The previous window has reset: re-arm the warning
                self._warned[resource] = False
            self.windows[resource] = stored
            above = stored.percentage_used >= self.warning_threshold_percent
            if above and not self._warned.get(resource, False):
                self._warned[resource] = True
                fire = RateLimitWarning(resource, stored.percentage_used, stored)
            elif not above:
                self._warned[resource] = False

        if fire is not None:
            self.logger.warning(
                "Rate limit for '%s' at %.1f%% (%d/%d remaining)",
                resource,
                fire.percentage_used,
                stored.remaining,
                stored.limit,
            )
            self._notify(fire)
        return stored

    def _notify(self, warning: RateLimitWarning) -> None:
        if self.on_warning is None:
            return
        try:
            self.on_warning(warning)
        except Exception as e:
            self.logger.error(f"Error in rate limit warning callback: {e}")

    def update_from_headers(
        self, headers: Optional[Mapping[str, Any]], resource: Optional[str] = None
    ) -> RateLimitWindow:
        """Parse ``x-ratelimit-*`` headers into a window.

        Args:
            headers: Response headers, any casing
            resource: Resource name; defaults to ``x-ratelimit-resource`` or "core"

        Returns:
            The window now stored for the resource
        """
        normalized = normalize_headers(headers)
        resource = resource or normalized.get("x-ratelimit-resource") or DEFAULT_RESOURCE

        limit = parse_int_header(normalized, "x-ratelimit-limit")
        remaining = parse_int_header(normalized, "x-ratelimit-remaining")
        reset = parse_int_header(normalized, "x-ratelimit-reset")
        used = parse_int_header(normalized, "x-ratelimit-used")

        if limit is None or remaining is None or limit < 0 or remaining < 0:
            with self.lock:
                fallback = self.windows.get(resource)
                if fallback is None:
                    fallback = self._default_window(resource)
                    self.windows[resource] = fallback
            if normalized:
                self.logger.debug("Ignoring malformed rate limit headers for '%s'", resource)
            return fallback

        if reset is not None:
            reset_at = float(reset)
        else:
            reset_at = self._fallback_reset_at(resource)
        if used is None:
            used = max(0, limit - remaining)
        return self.record_response(
            resource, RateLimitWindow(resource=resource, limit=limit, remaining=remaining, reset_at=reset_at, used=used)
        )

    def _fallback_reset_at(self, resource: str) -> float:
        # Keep the known window while it is still open so a missing reset
        # header does not look like a new window
        now = self._clock()
        with self.lock:
            previous = self.windows.get(resource)
        if previous is not None and previous.reset_at > now:
            return previous.reset_at
        return now + CONSERVATIVE_RESET_SECONDS

    def update_from_graphql(self, rate_limit: Optional[Mapping[str, Any]]) -> RateLimitWindow:
        """Ingest a GraphQL ``rateLimit { limit remaining resetAt used }`` object."""
        resource = "graphql"
        try:
            limit = int(rate_limit["limit"])
            remaining = int(rate_limit["remaining"])
            reset_raw = rate_limit.get("resetAt") or rate_limit.get("reset_at")
            if isinstance(reset_raw, (int, float)):
                reset_at = float(reset_raw)
            else:
                reset_at = datetime.fromisoformat(str(reset_raw).replace("Z", "+00:00")).timestamp()
            used = rate_limit.get("used")
            used = int(used) if used is not None else max(0, limit - remaining)
        except (KeyError, TypeError, ValueError, AttributeError):
            self.logger.debug("Ignoring malformed GraphQL rateLimit object")
            with self.lock:
                fallback = self.windows.get(resource)
                if fallback is None:
                    fallback = self._default_window(resource)
                    self.windows[resource] = fallback
                return fallback
        return self.record_response(
            resource, RateLimitWindow(resource=resource, limit=limit, remaining=remaining, reset_at=reset_at, used=used)
        )

    def get_window(self, resource: str = DEFAULT_RESOURCE) -> Optional[RateLimitWindow]:
        with self.lock:
            window = self.windows.get(resource)
            return replace(window) if window is not None else None

    def snapshot(self) -> Dict[str, RateLimitWindow]:
        """Return a copy of every known window keyed by resource."""
        with self.lock:
            return {name: replace(window) for name, window in self.windows.items()}

    def percentage_used(self, resource: str = DEFAULT_RESOURCE) -> float:
        window = self.get_window(resource)
        return window.percentage_used if window is not None else 0.0

    def is_exhausted(self, resource: str = DEFAULT_RESOURCE) -> bool:
        """True if the quota is used up and its reset time is still ahead."""
        window = self.get_window(resource)
        if window is None:
            return False
        return window.is_exhausted and window.reset_at > self._clock()

    def seconds_until_reset(self, resource: str = DEFAULT_RESOURCE) -> float:
        window = self.get_window(resource)
        if window is None:
            return 0.0
        return max(0.0, window.reset_at - self._clock())

    def reset(self, resource: Optional[str] = None) -> None:
        """Forget one resource's window, or all of them."""
        with self.lock:
            if resource is None:
                self.windows.clear()
                self._warned.clear()
            else:
                self.windows.pop(resource, None)
                self._warned.pop(resource, None)

    def persist_state(self) -> dict:
        """Return a serializable snapshot of all windows."""
        with self.lock:
            return {
                name: {
                    "limit": w.limit,
                    "remaining": w.remaining,
                    "reset_at": w.reset_at,
                    "used": w.used,
                }
                for name, w in self.windows.items()
            }

    def load_state(self, snapshot: dict) -> None:
        """Restore windows from ``persist_state`` output."""
        with self.lock:
            for name, data in snapshot.items():
                self.windows[name] = RateLimitWindow(
                    resource=name,
                    limit=data.get("limit", CONSERVATIVE_LIMIT),
                    remaining=data.get("remaining", CONSERVATIVE_LIMIT),
                    reset_at=data.get("reset_at", self._clock() + CONSERVATIVE_RESET_SECONDS),
                    used=data.get("used", 0),
                )
                self._warned[name] = self.windows[name].percentage_used >= self.warning_threshold_percent
