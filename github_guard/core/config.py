"""Configuration management for GitHub Guard.

Configuration arrives as a plain dictionary, is deep-merged over
``DEFAULT_CONFIG``, validated, and then exposed both as the merged dict and as
typed per-component structs (``CacheConfig``, ``TokenRotationConfig``, ...).
"""

import copy
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from github_guard.utils.logger import DEFAULT_LOGGING_CONFIG

ROTATION_STRATEGIES = ("round-robin", "least-used", "random")
RECOVERY_MODES = ("probation", "success")
CACHE_STORAGES = ("memory",)

DEFAULT_MAX_PAYLOAD_BYTES = 25 * 1024 * 1024

DEFAULT_CONFIG: Dict[str, Any] = {
    "cache": {"enabled": True, "ttl": 300, "max_size": 1000, "storage": "memory"},
    "rate_limit": {"warning_threshold_percent": 80},
    "retry": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 30.0,
        "jitter_ratio": 0.1,
        "do_not_retry": [400, 401, 404, 422],
        "max_secondary_retries": 2,
    },
    "token_rotation": {
        "tokens": [],
        "rotation_strategy": "round-robin",
        "unhealthy_threshold": 5,
        "quarantine_duration": 300,
        "recovery_mode": "probation",
        "refresh_before_expiry": 300,
    },
    "webhook": {
        "secret": None,
        "compatibility_mode_allow_sha1": False,
        "max_payload_bytes": DEFAULT_MAX_PAYLOAD_BYTES,
        "dedup_retention": 86400,
        "dedup_max_entries": 10000,
        "dedup_database_path": None,
        "min_secret_length": 16,
    },
    "logging": dict(DEFAULT_LOGGING_CONFIG),
}


@dataclass
class CacheConfig:
    """Cache settings.

    Attributes:
        enabled: When False the cache never hits and never stores
        ttl: Default time-to-live in seconds
        max_size: Maximum number of entries before LRU eviction
        storage: Storage backend; only "memory" is supported
    """

    enabled: bool = True
    ttl: float = 300
    max_size: int = 1000
    storage: str = "memory"


@dataclass
class RateLimitConfig:
    """Rate-limit tracker settings.

    Attributes:
        warning_threshold_percent: Usage percentage that fires the warning callback
    """

    warning_threshold_percent: float = 80


@dataclass
class RetryConfig:
    """Backoff and retry settings.

    Attributes:
        max_retries: Upper bound on retries after the first attempt
        base_delay: Delay in seconds for the first retry, before jitter
        max_delay: Ceiling for any computed delay
        jitter_ratio: Symmetric jitter range, 0.1 means +/-10%
        do_not_retry: HTTP statuses that abort immediately
        max_secondary_retries: Retry cap for secondary rate limits
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.1
    do_not_retry: List[int] = field(default_factory=lambda: [400, 401, 404, 422])
    max_secondary_retries: int = 2


@dataclass
class TokenRotationConfig:
    """Token pool settings.

    Attributes:
        tokens: Token strings or dicts with token/type/scopes/expires_at
        rotation_strategy: "round-robin", "least-used" or "random"
        unhealthy_threshold: Consecutive errors that quarantine a token
        quarantine_duration: Cooldown in seconds
        recovery_mode: "probation" (eligible after cooldown) or "success"
        refresh_before_expiry: Seconds before expiry when a token needs refresh
    """

    tokens: List[Any] = field(default_factory=list)
    rotation_strategy: str = "round-robin"
    unhealthy_threshold: int = 5
    quarantine_duration: float = 300
    recovery_mode: str = "probation"
    refresh_before_expiry: float = 300


@dataclass
class WebhookConfig:
    """Webhook engine settings.

    Attributes:
        secret: Shared HMAC secret
        compatibility_mode_allow_sha1: Accept legacy ``sha1=`` signatures
        max_payload_bytes: Raw payload ceiling, 25 MiB by default
        dedup_retention: Seconds a delivery id is remembered
        dedup_max_entries: Count bound of the dedup store
        dedup_database_path: SQLite path for a durable dedup store, None for memory
        min_secret_length: Minimum accepted secret length
    """

    secret: Optional[str] = None
    compatibility_mode_allow_sha1: bool = False
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    dedup_retention: float = 86400
    dedup_max_entries: int = 10000
    dedup_database_path: Optional[str] = None
    min_secret_length: int = 16


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge two dictionaries."""
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


def _build(cls, section: dict):
    """Build a config struct from a section, ignoring keys it does not know."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: copy.deepcopy(v) for k, v in section.items() if k in known})


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ConfigurationValidator:
    """Validates configuration and reports every problem found."""

    @staticmethod
    def validate_config(config: dict) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        if not isinstance(config, dict):
            return False, ["Config must be a dictionary."]

        cache = config.get("cache", {})
        if not isinstance(cache.get("enabled"), bool):
            errors.append("cache.enabled must be a boolean.")
        if not _is_number(cache.get("ttl")) or cache.get("ttl") <= 0:
            errors.append("cache.ttl must be a positive number.")
        if not _is_int(cache.get("max_size")) or cache.get("max_size") <= 0:
            errors.append("cache.max_size must be a positive integer.")
        if cache.get("storage") not in CACHE_STORAGES:
            errors.append(f"cache.storage must be one of {list(CACHE_STORAGES)}.")

        rate_limit = config.get("rate_limit", {})
        threshold = rate_limit.get("warning_threshold_percent")
        if not _is_number(threshold) or not 0 < threshold <= 100:
            errors.append("rate_limit.warning_threshold_percent must be in (0, 100].")

        retry = config.get("retry", {})
        if not _is_int(retry.get("max_retries")) or retry.get("max_retries") < 0:
            errors.append("retry.max_retries must be a non-negative integer.")
        if not _is_number(retry.get("base_delay")) or retry.get("base_delay") < 0:
            errors.append("retry.base_delay must be a non-negative number.")
        if not _is_number(retry.get("max_delay")) or retry.get("max_delay") < 0:
            errors.append("retry.max_delay must be a non-negative number.")
        jitter = retry.get("jitter_ratio")
        if not _is_number(jitter) or not 0 <= jitter < 1:
            errors.append("retry.jitter_ratio must be in [0, 1).")
        if not isinstance(retry.get("do_not_retry"), list):
            errors.append("retry.do_not_retry must be a list of status codes.")
        if not _is_int(retry.get("max_secondary_retries")) or retry.get("max_secondary_retries") < 0:
            errors.append("retry.max_secondary_retries must be a non-negative integer.")

        rotation = config.get("token_rotation", {})
        if not isinstance(rotation.get("tokens"), list):
            errors.append("token_rotation.tokens must be a list.")
        if rotation.get("rotation_strategy") not in ROTATION_STRATEGIES:
            errors.append(f"token_rotation.rotation_strategy must be one of {list(ROTATION_STRATEGIES)}.")
        if not _is_int(rotation.get("unhealthy_threshold")) or rotation.get("unhealthy_threshold") < 1:
            errors.append("token_rotation.unhealthy_threshold must be a positive integer.")
        if not _is_number(rotation.get("quarantine_duration")) or rotation.get("quarantine_duration") < 0:
            errors.append("token_rotation.quarantine_duration must be a non-negative number.")
        if rotation.get("recovery_mode") not in RECOVERY_MODES:
            errors.append(f"token_rotation.recovery_mode must be one of {list(RECOVERY_MODES)}.")
        if not _is_number(rotation.get("refresh_before_expiry")) or rotation.get("refresh_before_expiry") < 0:
            errors.append("token_rotation.refresh_before_expiry must be a non-negative number.")

        webhook = config.get("webhook", {})
        if webhook.get("secret") is not None and not isinstance(webhook.get("secret"), str):
            errors.append("webhook.secret must be a string or None.")
        if not isinstance(webhook.get("compatibility_mode_allow_sha1"), bool):
            errors.append("webhook.compatibility_mode_allow_sha1 must be a boolean.")
        if not _is_int(webhook.get("max_payload_bytes")) or webhook.get("max_payload_bytes") <= 0:
            errors.append("webhook.max_payload_bytes must be a positive integer.")
        if not _is_number(webhook.get("dedup_retention")) or webhook.get("dedup_retention") <= 0:
            errors.append("webhook.dedup_retention must be a positive number.")
        if not _is_int(webhook.get("dedup_max_entries")) or webhook.get("dedup_max_entries") <= 0:
            errors.append("webhook.dedup_max_entries must be a positive integer.")
        db_path = webhook.get("dedup_database_path")
        if db_path is not None and not isinstance(db_path, str):
            errors.append("webhook.dedup_database_path must be a string or None.")
        if not _is_int(webhook.get("min_secret_length")) or webhook.get("min_secret_length") < 1:
            errors.append("webhook.min_secret_length must be a positive integer.")

        logging_cfg = config.get("logging", {})
        if not isinstance(logging_cfg.get("level"), str):
            errors.append("logging.level must be a string.")
        if logging_cfg.get("parent_logger") is not None and not isinstance(logging_cfg.get("parent_logger"), str):
            errors.append("logging.parent_logger must be a string or None.")
        if not isinstance(logging_cfg.get("enable_console"), bool):
            errors.append("logging.enable_console must be a boolean.")
        if not isinstance(logging_cfg.get("enable_file"), bool):
            errors.append("logging.enable_file must be a boolean.")
        if logging_cfg.get("file_path") is not None and not isinstance(logging_cfg.get("file_path"), str):
            errors.append("logging.file_path must be a string or None.")

        return len(errors) == 0, errors

    @staticmethod
    def merge_with_defaults(user_config: dict) -> dict:
        return deep_merge(DEFAULT_CONFIG, user_config)


class ConfigurationManager:
    """Merges, validates, and exposes the guard configuration."""

    def __init__(self, user_config: dict = None):
        if user_config is None:
            user_config = {}
        self._config = self.load_config(user_config)

    def load_config(self, user_config: dict) -> dict:
        merged = ConfigurationValidator.merge_with_defaults(user_config)
        valid, errors = ConfigurationValidator.validate_config(merged)
        if not valid:
            raise ValueError(f"Invalid configuration: {errors}")
        return merged

    @property
    def config(self) -> dict:
        return self._config

    @property
    def cache(self) -> CacheConfig:
        return _build(CacheConfig, self._config["cache"])

    @property
    def rate_limit(self) -> RateLimitConfig:
        return _build(RateLimitConfig, self._config["rate_limit"])

    @property
    def retry(self) -> RetryConfig:
        return _build(RetryConfig, self._config["retry"])

    @property
    def token_rotation(self) -> TokenRotationConfig:
        return _build(TokenRotationConfig, self._config["token_rotation"])

    @property
    def webhook(self) -> WebhookConfig:
        return _build(WebhookConfig, self._config["webhook"])

    @property
    def logging(self) -> dict:
        return dict(self._config["logging"])

    def update(self, key_path: str, value: Any) -> None:
        """Update a config value at a dotted key path (e.g., 'cache.ttl')."""
        candidate = copy.deepcopy(self._config)
        keys = key_path.split(".")
        d = candidate
        for k in keys[:-1]:
            if k not in d or not isinstance(d[k], dict):
                d[k] = {}
            d = d[k]
        d[keys[-1]] = value
        valid, errors = ConfigurationValidator.validate_config(candidate)
        if not valid:
            raise ValueError(f"Invalid configuration after update: {errors}")
        self._config = candidate

    def reload(self, new_config: dict) -> None:
        self._config = self.load_config(new_config)
