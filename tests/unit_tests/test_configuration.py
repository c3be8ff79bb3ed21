"""Unit tests for ConfigurationManager and configuration logic."""

import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import pytest

from github_guard.core.config import (
    DEFAULT_CONFIG,
    CacheConfig,
    ConfigurationManager,
    ConfigurationValidator,
    TokenRotationConfig,
    deep_merge,
)


def test_default_config_valid():
    valid, errors = ConfigurationValidator.validate_config(DEFAULT_CONFIG)
    assert valid
    assert errors == []


def test_defaults():
    cm = ConfigurationManager()
    assert cm.cache == CacheConfig(enabled=True, ttl=300, max_size=1000, storage="memory")
    assert cm.rate_limit.warning_threshold_percent == 80
    assert cm.retry.max_retries == 3
    assert cm.retry.base_delay == 1.0
    assert cm.retry.max_delay == 30.0
    assert cm.retry.jitter_ratio == 0.1
    assert cm.retry.do_not_retry == [400, 401, 404, 422]
    assert cm.token_rotation.rotation_strategy == "round-robin"
    assert cm.token_rotation.unhealthy_threshold == 5
    assert cm.token_rotation.quarantine_duration == 300
    assert cm.token_rotation.recovery_mode == "probation"
    assert cm.webhook.max_payload_bytes == 25 * 1024 * 1024
    assert cm.webhook.compatibility_mode_allow_sha1 is False
    assert cm.webhook.dedup_retention == 86400


def test_merge_with_defaults():
    merged = ConfigurationValidator.merge_with_defaults({"cache": {"ttl": 60}})
    assert merged["cache"]["ttl"] == 60
    assert merged["cache"]["max_size"] == 1000


def test_deep_merge_does_not_mutate_inputs():
    base = {"a": {"b": 1, "c": [1]}}
    merged = deep_merge(base, {"a": {"b": 2}})
    merged["a"]["c"].append(2)
    assert base == {"a": {"b": 1, "c": [1]}}


def test_typed_section_ignores_unknown_keys():
    cm = ConfigurationManager({"token_rotation": {"tokens": ["t"], "legacy_option": True}})
    assert cm.token_rotation == TokenRotationConfig(tokens=["t"])


@pytest.mark.parametrize(
    "bad, fragment",
    [
        ({"cache": {"ttl": -1}}, "cache.ttl"),
        ({"cache": {"max_size": 0}}, "cache.max_size"),
        ({"cache": {"storage": "redis"}}, "cache.storage"),
        ({"cache": {"enabled": "yes"}}, "cache.enabled"),
        ({"rate_limit": {"warning_threshold_percent": 0}}, "warning_threshold_percent"),
        ({"retry": {"jitter_ratio": 1.0}}, "retry.jitter_ratio"),
        ({"retry": {"max_retries": -1}}, "retry.max_retries"),
        ({"token_rotation": {"rotation_strategy": "weighted"}}, "rotation_strategy"),
        ({"token_rotation": {"recovery_mode": "never"}}, "recovery_mode"),
        ({"token_rotation": {"unhealthy_threshold": 0}}, "unhealthy_threshold"),
        ({"webhook": {"max_payload_bytes": 0}}, "max_payload_bytes"),
        ({"webhook": {"secret": 123}}, "webhook.secret"),
        ({"logging": {"enable_console": "no"}}, "logging.enable_console"),
    ],
)
def test_validation_errors(bad, fragment):
    merged = ConfigurationValidator.merge_with_defaults(bad)
    valid, errors = ConfigurationValidator.validate_config(merged)
    assert not valid
    assert any(fragment in e for e in errors)


def test_all_errors_are_reported():
    merged = ConfigurationValidator.merge_with_defaults({"cache": {"ttl": 0, "max_size": 0}})
    valid, errors = ConfigurationValidator.validate_config(merged)
    assert len(errors) == 2


def test_invalid_config_raises():
    with pytest.raises(ValueError):
        ConfigurationManager({"cache": {"ttl": "soon"}})


def test_not_a_dict():
    valid, errors = ConfigurationValidator.validate_config(["nope"])
    assert not valid


def test_update_and_reload():
    cm = ConfigurationManager()
    cm.update("cache.ttl", 60)
    assert cm.cache.ttl == 60
    cm.reload({"cache": {"max_size": 10}})
    assert cm.cache.max_size == 10
    assert cm.cache.ttl == 300


def test_invalid_update_leaves_config_untouched():
    cm = ConfigurationManager()
    with pytest.raises(ValueError):
        cm.update("retry.max_retries", -3)
    assert cm.retry.max_retries == 3
