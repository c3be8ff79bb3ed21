"""
TokenRotationManager: health-aware credential selection.
"""

import random
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from github_guard.core.config import RECOVERY_MODES, ROTATION_STRATEGIES
from github_guard.database.models import TokenHealth, TokenInfo
from github_guard.exceptions import NoAvailableTokenError
from github_guard.utils.logger import get_logger

TokenLike = Union[str, TokenInfo]


def as_token_info(value: Union[str, dict, TokenInfo]) -> TokenInfo:
    """Coerce a token string, dict, or ``TokenInfo`` into a ``TokenInfo``."""
    if isinstance(value, TokenInfo):
        return value
    if isinstance(value, str):
        return TokenInfo(token=value)
    if isinstance(value, dict):
        if not value.get("token"):
            raise ValueError("Token dict requires a non-empty 'token'")
        return TokenInfo(
            token=value["token"],
            type=value.get("type", "personal"),
            scopes=tuple(value.get("scopes") or ()),
            expires_at=value.get("expires_at"),
        )
    raise TypeError(f"Unsupported token value: {type(value).__name__}")


def scopes_satisfied(granted: Iterable[str], required: Optional[Iterable[str]]) -> bool:
    """True if every required scope is granted, directly or as a sub-scope.

    The rule is ``scope == required or scope.startswith(required + ":")``, so
    a granted ``repo:status`` meets a required ``repo`` while a granted
    ``repository`` does not.
    """
    if not required:
        return True
    granted = list(granted)
    for needed in required:
        if not any(scope == needed or scope.startswith(needed + ":") for scope in granted):
            return False
    return True


class TokenRotationManager:
    """Selects credentials from a pool by health and strategy.

    Tokens keep their configuration order. Each has a ``TokenHealth`` record
    created on registration; ``record_error`` quarantines a token after
    ``unhealthy_threshold`` consecutive errors for ``quarantine_duration``
    seconds.

    After the cooldown, ``recovery_mode`` decides what happens:

    - ``"probation"``: the token is eligible again with
      ``consecutive_errors = unhealthy_threshold - 1``; one more error
      re-quarantines it, one success restores it fully.
    - ``"success"``: the token stays excluded until ``record_success`` or
      ``unquarantine_token`` is called.

    Example:
        >>> manager = TokenRotationManager(["t1", "t2"])
        >>> token = manager.get_next_token()
        >>> manager.record_success(token)
    """

    def __init__(
        self,
        tokens: Optional[List[Union[str, dict, TokenInfo]]] = None,
        rotation_strategy: str = "round-robin",
        unhealthy_threshold: int = 5,
        quarantine_duration: float = 300,
        recovery_mode: str = "probation",
        refresh_before_expiry: float = 300,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        if rotation_strategy not in ROTATION_STRATEGIES:
            raise ValueError(f"Unknown rotation strategy: {rotation_strategy}")
        if recovery_mode not in RECOVERY_MODES:
            raise ValueError(f"Unknown recovery mode: {recovery_mode}")
        if unhealthy_threshold < 1:
            raise ValueError("unhealthy_threshold must be >= 1")
        if quarantine_duration < 0:
            raise ValueError("quarantine_duration must not be negative")

        self.rotation_strategy = rotation_strategy
        self.unhealthy_threshold = unhealthy_threshold
        self.quarantine_duration = quarantine_duration
        self.recovery_mode = recovery_mode
        self.refresh_before_expiry = refresh_before_expiry
        self._clock = clock
        self._rng = rng or random.Random()
        self.lock = threading.Lock()
        self.logger = get_logger("tokens.manager")

        self._tokens: List[TokenInfo] = []
        self._health: Dict[str, TokenHealth] = {}
        # Tokens whose cooldown has elapsed but which still await a success
        self._awaiting_success: Dict[str, bool] = {}
        self._pointer = 0

        for value in tokens or []:
            self._register(as_token_info(value))

    @classmethod
    def from_config(cls, rotation_config, clock: Callable[[], float] = time.time, rng=None):
        return cls(
            tokens=rotation_config.tokens,
            rotation_strategy=rotation_config.rotation_strategy,
            unhealthy_threshold=rotation_config.unhealthy_threshold,
            quarantine_duration=rotation_config.quarantine_duration,
            recovery_mode=rotation_config.recovery_mode,
            refresh_before_expiry=rotation_config.refresh_before_expiry,
            clock=clock,
            rng=rng,
        )

    def _register(self, info: TokenInfo) -> None:
        if info.token in self._health:
            raise ValueError(f"Token already registered: {info!r}")
        self._tokens.append(info)
        self._health[info.token] = TokenHealth()

    @staticmethod
    def _key(token: TokenLike) -> str:
        return token.token if isinstance(token, TokenInfo) else token

    def _health_for(self, token: TokenLike) -> TokenHealth:
        key = self._key(token)
        health = self._health.get(key)
        if health is None:
            raise KeyError("Unknown token")
        return health

    def _refresh_quarantine(self, info: TokenInfo, now: float) -> None:
        """Apply the recovery mode to a token whose cooldown has just ended."""
        health = self._health[info.token]
        if health.quarantine_until is None or now < health.quarantine_until:
            return
        health.quarantine_until = None
        if self.recovery_mode == "probation":
            health.consecutive_errors = min(health.consecutive_errors, self.unhealthy_threshold - 1)
            self.logger.info("Token %r left quarantine on probation", info)
        else:
            self._awaiting_success[info.token] = True
            self.logger.info("Token %r cooldown elapsed, awaiting a success", info)

    def _is_eligible(self, info: TokenInfo, now: float, required_scopes) -> bool:
        self._refresh_quarantine(info, now)
        health = self._health[info.token]
        if self._awaiting_success.get(info.token):
            return False
        if not health.is_healthy(now, self.unhealthy_threshold):
            return False
        if info.is_expired(now):
            return False
        return scopes_satisfied(info.scopes, required_scopes)

    def get_next_token(self, required_scopes: Optional[Iterable[str]] = None) -> TokenInfo:
        """Select the next eligible token.

        Args:
            required_scopes: Scopes the token must grant

        Returns:
            The selected ``TokenInfo``

        Raises:
            NoAvailableTokenError: If no token is healthy, unexpired, and scoped
        """
        required = list(required_scopes or [])
        with self.lock:
            now = self._clock()
            if self.rotation_strategy == "round-robin":
                chosen = self._select_round_robin(now, required)
            else:
                eligible = [info for info in self._tokens if self._is_eligible(info, now, required)]
                if not eligible:
                    chosen = None
                elif self.rotation_strategy == "least-used":
                    chosen = min(eligible, key=lambda info: self._usage(info))
                else:
                    chosen = self._select_random(eligible)
            if chosen is None:
                raise NoAvailableTokenError(required_scopes=required)
            health = self._health[chosen.token]
            health.selections += 1
            health.last_used = now
        self.logger.debug("Selected token %r (%s)", chosen, self.rotation_strategy)
        return chosen

    def _select_round_robin(self, now: float, required) -> Optional[TokenInfo]:
        count = len(self._tokens)
        for offset in range(count):
            index = (self._pointer + offset) % count
            info = self._tokens[index]
            if self._is_eligible(info, now, required):
                self._pointer = (index + 1) % count
                return info
        return None

    def _usage(self, info: TokenInfo) -> int:
        health = self._health[info.token]
        # Selections not yet reported back count as usage too
        return max(health.selections, health.total_requests)

    def _select_random(self, eligible: List[TokenInfo]) -> TokenInfo:
        weights = [max(0.05, 1.0 - self._health[info.token].error_rate) for info in eligible]
        return self._rng.choices(eligible, weights=weights, k=1)[0]

    def record_success(self, token: TokenLike) -> None:
        """Mark a call made with ``token`` as successful; fully restores health."""
        with self.lock:
            health = self._health_for(token)
            was_quarantined = health.quarantine_until is not None or self._awaiting_success.pop(self._key(token), False)
            health.consecutive_errors = 0
            health.total_successes += 1
            health.quarantine_until = None
            health.last_success = self._clock()
        if was_quarantined:
            self.logger.info("Token recovered after a successful call")

    def record_error(self, token: TokenLike) -> None:
        """Mark a call made with ``token`` as failed; may quarantine it."""
        with self.lock:
            health = self._health_for(token)
            now = self._clock()
            health.consecutive_errors += 1
            health.total_errors += 1
            quarantined = health.consecutive_errors >= self.unhealthy_threshold and not health.in_quarantine(now)
            if quarantined:
                health.quarantine_until = now + self.quarantine_duration
                self._awaiting_success.pop(self._key(token), None)
            errors = health.consecutive_errors
        if quarantined:
            self.logger.warning(
                "Token quarantined for %ss after %d consecutive errors", self.quarantine_duration, errors
            )

    def add_token(self, token: Union[str, dict, TokenInfo]) -> TokenInfo:
        info = as_token_info(token)
        with self.lock:
            self._register(info)
        self.logger.info("Added token %r", info)
        return info

    def remove_token(self, token: TokenLike) -> bool:
        """Remove a token; returns False if it was not configured."""
        key = self._key(token)
        with self.lock:
            for index, info in enumerate(self._tokens):
                if info.token == key:
                    del self._tokens[index]
                    del self._health[key]
                    self._awaiting_success.pop(key, None)
                    if index < self._pointer:
                        self._pointer -= 1
                    if self._tokens:
                        self._pointer %= len(self._tokens)
                    else:
                        self._pointer = 0
                    return True
        return False

    def replace_token(self, old: TokenLike, new: Union[str, dict, TokenInfo]) -> TokenInfo:
        """Swap a credential in place, keeping its position and health record."""
        key = self._key(old)
        info = as_token_info(new)
        with self.lock:
            if info.token != key and info.token in self._health:
                raise ValueError(f"Token already registered: {info!r}")
            for index, current in enumerate(self._tokens):
                if current.token == key:
                    self._tokens[index] = info
                    self._health[info.token] = self._health.pop(key)
                    if key in self._awaiting_success:
                        self._awaiting_success[info.token] = self._awaiting_success.pop(key)
                    return info
        raise KeyError("Unknown token")

    def quarantine_token(self, token: TokenLike, duration: Optional[float] = None) -> None:
        with self.lock:
            health = self._health_for(token)
            health.quarantine_until = self._clock() + (self.quarantine_duration if duration is None else duration)

    def unquarantine_token(self, token: TokenLike) -> None:
        with self.lock:
            health = self._health_for(token)
            health.quarantine_until = None
            health.consecutive_errors = 0
            self._awaiting_success.pop(self._key(token), None)

    def reset_token_stats(self, token: Optional[TokenLike] = None) -> None:
        """Reset one token's health record, or every token's."""
        with self.lock:
            keys = [self._key(token)] if token is not None else list(self._health)
            for key in keys:
                if key not in self._health:
                    raise KeyError("Unknown token")
                self._health[key] = TokenHealth()
                self._awaiting_success.pop(key, None)

    def needs_refresh(self, token: TokenLike) -> bool:
        """True if the token expires within ``refresh_before_expiry`` seconds."""
        key = self._key(token)
        with self.lock:
            for info in self._tokens:
                if info.token == key:
                    if info.expires_at is None:
                        return False
                    return info.expires_at - self._clock() <= self.refresh_before_expiry
        raise KeyError("Unknown token")

    def get_tokens(self) -> List[TokenInfo]:
        with self.lock:
            return list(self._tokens)

    def get_health(self, token: Optional[TokenLike] = None) -> Union[TokenHealth, Dict[str, TokenHealth]]:
        """Copy of one token's health, or of all records keyed by token."""
        with self.lock:
            if token is not None:
                return replace(self._health_for(token))
            return {key: replace(health) for key, health in self._health.items()}

    def is_available(self, token: TokenLike) -> bool:
        key = self._key(token)
        with self.lock:
            now = self._clock()
            for info in self._tokens:
                if info.token == key:
                    return self._is_eligible(info, now, None)
        return False

    def metrics(self) -> Dict[str, Any]:
        with self.lock:
            now = self._clock()
            active = sum(1 for info in self._tokens if self._is_eligible(info, now, None))
            quarantined = sum(
                1
                for info in self._tokens
                if self._health[info.token].in_quarantine(now) or self._awaiting_success.get(info.token)
            )
            total_requests = sum(h.total_requests for h in self._health.values())
            total_errors = sum(h.total_errors for h in self._health.values())
            return {
                "total_tokens": len(self._tokens),
                "active_tokens": active,
                "quarantined_tokens": quarantined,
                "total_requests": total_requests,
                "total_errors": total_errors,
                "overall_error_rate": (total_errors / total_requests) if total_requests else 0.0,
                "rotation_strategy": self.rotation_strategy,
            }
