"""Unit tests for TokenRotationManager: strategies, health, quarantine, scopes."""

import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import random
import threading
import unittest
from collections import Counter

import pytest

from github_guard.database.models import TokenInfo
from github_guard.exceptions import NoAvailableTokenError
from github_guard.tokens.manager import TokenRotationManager, as_token_info, scopes_satisfied


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


def make_manager(clock, tokens=("T1", "T2", "T3"), **kwargs):
    return TokenRotationManager(list(tokens), clock=clock, **kwargs)


def test_round_robin_cycles_in_configuration_order(clock):
    manager = make_manager(clock)
    picked = [manager.get_next_token().token for _ in range(4)]
    assert picked == ["T1", "T2", "T3", "T1"]


def test_round_robin_skips_quarantined(clock):
    manager = make_manager(clock, unhealthy_threshold=2)
    manager.record_error("T2")
    manager.record_error("T2")
    picked = [manager.get_next_token().token for _ in range(4)]
    assert picked == ["T1", "T3", "T1", "T3"]


def test_quarantine_after_threshold(clock):
    manager = make_manager(clock, unhealthy_threshold=5, quarantine_duration=300)
    for _ in range(4):
        manager.record_error("T1")
    assert manager.is_available("T1")
    manager.record_error("T1")
    assert not manager.is_available("T1")
    health = manager.get_health("T1")
    assert health.quarantine_until == 1300.0
    assert health.total_errors == 5


def test_probation_recovery(clock):
    manager = make_manager(clock, unhealthy_threshold=3, quarantine_duration=60)
    for _ in range(3):
        manager.record_error("T1")
    clock.advance(59)
    assert not manager.is_available("T1")
    clock.advance(1)
    assert manager.is_available("T1")
    assert manager.get_health("T1").consecutive_errors == 2
    # One more error re-quarantines
    manager.record_error("T1")
    assert not manager.is_available("T1")


def test_probation_success_restores_fully(clock):
    manager = make_manager(clock, unhealthy_threshold=3, quarantine_duration=60)
    for _ in range(3):
        manager.record_error("T1")
    clock.advance(60)
    assert manager.is_available("T1")
    manager.record_success("T1")
    health = manager.get_health("T1")
    assert health.consecutive_errors == 0
    manager.record_error("T1")
    assert manager.is_available("T1")


def test_zero_cooldown_at_epoch_still_recovers():
    clock = FakeClock(now=0.0)
    manager = make_manager(clock, tokens=("T1",), unhealthy_threshold=1, quarantine_duration=0)
    assert manager.get_health("T1").quarantine_until is None
    manager.record_error("T1")
    assert manager.get_health("T1").quarantine_until == 0.0
    assert manager.get_next_token().token == "T1"
    health = manager.get_health("T1")
    assert health.consecutive_errors == 0
    assert health.quarantine_until is None


def test_success_recovery_mode_requires_success(clock):
    manager = make_manager(clock, unhealthy_threshold=1, quarantine_duration=10, recovery_mode="success")
    manager.record_error("T1")
    clock.advance(100)
    assert not manager.is_available("T1")
    manager.record_success("T1")
    assert manager.is_available("T1")


def test_record_success_clears_quarantine(clock):
    manager = make_manager(clock, unhealthy_threshold=1)
    manager.record_error("T1")
    assert not manager.is_available("T1")
    manager.record_success("T1")
    assert manager.is_available("T1")
    assert manager.get_health("T1").total_successes == 1


def test_no_available_token(clock):
    manager = make_manager(clock, tokens=("T1",), unhealthy_threshold=1)
    manager.record_error("T1")
    with pytest.raises(NoAvailableTokenError):
        manager.get_next_token()


def test_empty_pool_raises(clock):
    with pytest.raises(NoAvailableTokenError):
        TokenRotationManager([], clock=clock).get_next_token()


def test_expired_tokens_are_skipped(clock):
    manager = TokenRotationManager(
        [{"token": "old", "expires_at": 900.0}, {"token": "new", "expires_at": 5000.0}], clock=clock
    )
    assert {manager.get_next_token().token for _ in range(3)} == {"new"}


def test_required_scopes_filter(clock):
    manager = TokenRotationManager(
        [TokenInfo("read", scopes=("read:org",)), TokenInfo("write", scopes=("repo", "read:org"))], clock=clock
    )
    assert manager.get_next_token(["repo"]).token == "write"
    with pytest.raises(NoAvailableTokenError) as exc_info:
        manager.get_next_token(["admin"])
    assert exc_info.value.required_scopes == ["admin"]


def test_scope_prefix_matching():
    assert scopes_satisfied(["repo:status"], ["repo"])
    assert scopes_satisfied(["repo"], ["repo"])
    assert not scopes_satisfied(["repository"], ["repo"])
    assert not scopes_satisfied(["read:org"], ["repo"])
    assert scopes_satisfied([], None)


def test_least_used_strategy(clock):
    manager = make_manager(clock, rotation_strategy="least-used")
    for _ in range(3):
        manager.record_success("T1")
    manager.record_success("T2")
    assert manager.get_next_token().token == "T3"
    # T3 now has one outstanding selection; T2 and T3 tie, T2 comes first
    assert manager.get_next_token().token == "T2"


def test_random_strategy_only_picks_eligible(clock):
    manager = make_manager(clock, rotation_strategy="random", unhealthy_threshold=1, rng=random.Random(7))
    manager.record_error("T3")
    counts = Counter(manager.get_next_token().token for _ in range(200))
    assert set(counts) == {"T1", "T2"}


def test_add_remove_replace(clock):
    manager = make_manager(clock)
    manager.add_token("T4")
    assert [t.token for t in manager.get_tokens()] == ["T1", "T2", "T3", "T4"]
    manager.record_error("T2")
    manager.replace_token("T2", "T2b")
    assert manager.get_health("T2b").total_errors == 1
    assert manager.remove_token("T1") is True
    assert manager.remove_token("T1") is False
    assert [t.token for t in manager.get_tokens()] == ["T2b", "T3", "T4"]


def test_duplicate_token_rejected(clock):
    manager = make_manager(clock)
    with pytest.raises(ValueError):
        manager.add_token("T1")


def test_manual_quarantine_and_unquarantine(clock):
    manager = make_manager(clock)
    manager.quarantine_token("T1", duration=30)
    assert not manager.is_available("T1")
    manager.unquarantine_token("T1")
    assert manager.is_available("T1")


def test_reset_token_stats(clock):
    manager = make_manager(clock)
    manager.record_error("T1")
    manager.reset_token_stats("T1")
    assert manager.get_health("T1").total_errors == 0


def test_needs_refresh(clock):
    manager = TokenRotationManager(
        [{"token": "soon", "expires_at": 1100.0}, {"token": "later", "expires_at": 9000.0}, "forever"],
        clock=clock,
        refresh_before_expiry=300,
    )
    assert manager.needs_refresh("soon")
    assert not manager.needs_refresh("later")
    assert not manager.needs_refresh("forever")


def test_metrics(clock):
    manager = make_manager(clock, unhealthy_threshold=1)
    manager.record_success("T1")
    manager.record_error("T2")
    metrics = manager.metrics()
    assert metrics["total_tokens"] == 3
    assert metrics["active_tokens"] == 2
    assert metrics["quarantined_tokens"] == 1
    assert metrics["total_requests"] == 2
    assert metrics["total_errors"] == 1
    assert metrics["overall_error_rate"] == 0.5
    assert metrics["rotation_strategy"] == "round-robin"


def test_token_info_repr_masks_secret():
    info = as_token_info("ghp_supersecret")
    assert "supersecret" not in repr(info)


class TestTokenRotationConcurrency(unittest.TestCase):
    def test_concurrent_round_robin_is_even(self):
        manager = TokenRotationManager(["A", "B", "C", "D"])
        picked = []
        lock = threading.Lock()

        def worker():
            for _ in range(100):
                token = manager.get_next_token().token
                with lock:
                    picked.append(token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        counts = Counter(picked)
        self.assertEqual(sum(counts.values()), 800)
        self.assertEqual(set(counts.values()), {200})

    def test_invalid_strategy(self):
        with self.assertRaises(ValueError):
            TokenRotationManager(["A"], rotation_strategy="weighted")
