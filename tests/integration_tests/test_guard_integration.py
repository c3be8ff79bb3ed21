"""Integration tests for GitHubGuard.execute and handle_webhook."""

import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import threading
import uuid

import pytest
import requests

from github_guard.core.guard import GitHubGuard
from github_guard.core.transport import TransportResponse
from github_guard.exceptions import (
    NoAvailableTokenError,
    OperationCancelledError,
    RequestFailedError,
    RetryExhaustedError,
    WebhookConfigurationError,
)
from github_guard.security.manager import sign_payload

RESET_AT = 2000


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeTransport:
    """Replays queued responses and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, method, url, headers=None, params=None, body=None):
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "params": params})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def ok(data=None, remaining=4999, **extra_headers):
    headers = {
        "X-RateLimit-Limit": "5000",
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(RESET_AT),
        "X-RateLimit-Resource": "core",
    }
    headers.update(extra_headers)
    return TransportResponse(200, headers, data if data is not None else {"ok": True})


def status(code, data=None, **headers):
    return TransportResponse(code, headers, data)


def recording_waiter(delays, clock=None):
    def waiter(seconds, cancel_event=None):
        delays.append(seconds)
        if clock is not None:
            clock.advance(seconds)
        return True

    return waiter


@pytest.fixture
def clock():
    return FakeClock()


def make_guard(transport, clock, config=None, delays=None, **kwargs):
    base = {
        "token_rotation": {"tokens": ["T1", "T2", "T3"]},
        "retry": {"jitter_ratio": 0.0},
        "logging": {"enable_console": False},
    }
    for section, values in (config or {}).items():
        base.setdefault(section, {}).update(values)
    waiter = recording_waiter(delays if delays is not None else [], clock)
    return GitHubGuard(base, transport=transport, clock=clock, waiter=waiter, **kwargs)


def test_get_is_cached(clock):
    transport = FakeTransport(ok({"name": "hello-world"}))
    guard = make_guard(transport, clock)

    first = guard.execute("GET", "/repos/octocat/hello-world")
    second = guard.execute("GET", "/repos/octocat/hello-world")

    assert first.data == second.data == {"name": "hello-world"}
    assert not first.from_cache
    assert second.from_cache
    assert len(transport.calls) == 1
    assert guard.get_metrics()["requests"]["cache_hits"] == 1


def test_clear_cache_forces_refetch(clock):
    transport = FakeTransport(ok({"v": 1}), ok({"v": 2}))
    guard = make_guard(transport, clock)
    guard.execute("GET", "/repos/o/r")
    assert guard.clear_cache() == 1
    assert guard.execute("GET", "/repos/o/r").data == {"v": 2}
    assert len(transport.calls) == 2


def test_tokens_rotate_and_are_sent(clock):
    transport = FakeTransport(ok(), ok(), ok(), ok())
    guard = make_guard(transport, clock)
    for i in range(4):
        guard.execute("GET", f"/repos/o/r{i}")
    sent = [call["headers"]["Authorization"] for call in transport.calls]
    assert sent == ["Bearer T1", "Bearer T2", "Bearer T3", "Bearer T1"]


def test_unauthenticated_without_tokens(clock):
    transport = FakeTransport(ok())
    guard = make_guard(transport, clock, config={"token_rotation": {"tokens": []}})
    guard.execute("GET", "/zen")
    assert "Authorization" not in transport.calls[0]["headers"]


def test_rate_limit_headers_are_tracked(clock):
    warnings = []
    transport = FakeTransport(ok(remaining=500))
    guard = make_guard(transport, clock, on_rate_limit_warning=warnings.append)
    guard.execute("GET", "/repos/o/r")
    window = guard.rate_limits.get_window("core")
    assert window.remaining == 500
    assert len(warnings) == 1


def test_conditional_revalidation_on_304(clock):
    transport = FakeTransport(
        ok({"v": 1}, ETag='"abc"', **{"Cache-Control": "max-age=60"}),
        status(304, None, ETag='"abc"'),
    )
    guard = make_guard(transport, clock)
    guard.execute("GET", "/repos/o/r")
    clock.advance(61)

    response = guard.execute("GET", "/repos/o/r")

    assert response.from_cache
    assert response.data == {"v": 1}
    assert transport.calls[1]["headers"]["If-None-Match"] == '"abc"'
    # The refreshed entry serves the next call without the network
    assert guard.execute("GET", "/repos/o/r").from_cache
    assert len(transport.calls) == 2


def test_mutation_invalidates_cached_get(clock):
    transport = FakeTransport(ok({"v": 1}), TransportResponse(201, {}, {"id": 9}), ok({"v": 2}))
    guard = make_guard(transport, clock)
    guard.execute("GET", "/repos/o/r/issues")
    guard.execute("POST", "/repos/o/r/issues", body={"title": "bug"})
    assert guard.execute("GET", "/repos/o/r/issues").data == {"v": 2}


def test_server_errors_are_retried_with_backoff(clock):
    delays = []
    transport = FakeTransport(status(502), status(503), ok({"v": 1}))
    guard = make_guard(transport, clock, delays=delays)

    assert guard.execute("GET", "/repos/o/r").data == {"v": 1}
    assert delays == [1.0, 2.0]
    assert guard.get_metrics()["requests"]["retries"] == 2


def test_retry_exhaustion(clock):
    transport = FakeTransport(*[status(500) for _ in range(4)])
    guard = make_guard(transport, clock)
    with pytest.raises(RetryExhaustedError) as exc_info:
        guard.execute("GET", "/repos/o/r")
    assert exc_info.value.attempts == 4
    assert guard.get_metrics()["requests"]["failures"] == 1


@pytest.mark.parametrize("code", [400, 401, 404, 422])
def test_non_retryable_statuses_fail_fast(clock, code):
    transport = FakeTransport(status(code, {"message": "nope"}))
    guard = make_guard(transport, clock)
    with pytest.raises(RequestFailedError) as exc_info:
        guard.execute("GET", "/repos/o/r")
    assert exc_info.value.status_code == code
    assert len(transport.calls) == 1


def test_primary_rate_limit_waits_until_reset(clock):
    delays = []
    limited = TransportResponse(
        403,
        {"X-RateLimit-Limit": "5000", "X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1060"},
        {"message": "API rate limit exceeded"},
    )
    transport = FakeTransport(limited, ok())
    guard = make_guard(transport, clock, delays=delays)
    guard.execute("GET", "/repos/o/r")
    assert delays == [60.0]


def test_exhausted_window_holds_calls_until_reset(clock):
    delays = []
    transport = FakeTransport(ok({"v": "a"}, remaining=0), ok({"v": "b"}))
    guard = make_guard(transport, clock, delays=delays)
    guard.execute("GET", "/a")
    assert guard.rate_limits.is_exhausted("core")

    assert guard.execute("GET", "/b").data == {"v": "b"}

    # The second call waited out the window instead of hitting the server early
    assert delays == [RESET_AT - 1000.0]
    assert len(transport.calls) == 2
    assert guard.tokens.get_health("T2").total_errors == 0
    assert transport.calls[1]["headers"]["Authorization"] == "Bearer T2"


def test_exhausted_window_respects_deadline(clock):
    transport = FakeTransport(ok(remaining=0))
    guard = make_guard(transport, clock)
    guard.execute("GET", "/a")
    with pytest.raises(RetryExhaustedError):
        guard.execute("GET", "/b", deadline=30)
    assert len(transport.calls) == 1
    assert all(health.total_errors == 0 for health in guard.tokens.get_health().values())


def test_secondary_rate_limit_uses_retry_after_and_callback(clock):
    delays = []
    seen = []

    def on_secondary(delay, context):
        seen.append((delay, context.secondary_rate_limit))
        return True

    limited = status(403, {"message": "You have exceeded a secondary rate limit"}, **{"Retry-After": "30"})
    transport = FakeTransport(limited, ok())
    guard = make_guard(transport, clock, delays=delays, on_secondary_rate_limit=on_secondary)
    guard.execute("GET", "/repos/o/r")
    assert delays == [30.0]
    assert seen == [(30.0, True)]


def test_token_errors_quarantine_and_rotate(clock):
    transport = FakeTransport(status(401), ok(), ok())
    guard = make_guard(
        transport,
        clock,
        config={"token_rotation": {"tokens": ["T1", "T2"], "unhealthy_threshold": 1}},
    )
    with pytest.raises(RequestFailedError):
        guard.execute("GET", "/user")
    assert not guard.tokens.is_available("T1")
    guard.execute("GET", "/user")
    assert transport.calls[1]["headers"]["Authorization"] == "Bearer T2"
    guard.execute("GET", "/user/repos")
    assert transport.calls[2]["headers"]["Authorization"] == "Bearer T2"


def test_network_errors_are_retried(clock):
    transport = FakeTransport(requests.exceptions.ConnectionError("reset"), ok({"v": 1}))
    guard = make_guard(transport, clock)
    assert guard.execute("GET", "/repos/o/r").data == {"v": 1}
    assert guard.tokens.get_health("T1").total_errors == 1
    assert guard.tokens.get_health("T2").total_successes == 1


def test_no_available_token(clock):
    transport = FakeTransport()
    guard = make_guard(transport, clock, config={"token_rotation": {"tokens": [{"token": "T1", "scopes": ["read:org"]}]}})
    with pytest.raises(NoAvailableTokenError):
        guard.execute("GET", "/repos/o/r", required_scopes=["repo"])
    assert transport.calls == []


def test_cancel_event_aborts_backoff(clock):
    event = threading.Event()
    event.set()
    transport = FakeTransport(status(500))
    guard = GitHubGuard(
        {"token_rotation": {"tokens": ["T1"]}, "logging": {"enable_console": False}}, transport=transport, clock=clock
    )
    with pytest.raises(OperationCancelledError):
        guard.execute("GET", "/repos/o/r", cancel_event=event)
    assert transport.calls == []


def test_handle_webhook(clock):
    secret = "guard-webhook-secret-value"
    guard = make_guard(FakeTransport(), clock, config={"webhook": {"secret": secret}})
    received = []
    guard.webhooks.register("ping", received.append)
    body = b'{"zen": "Keep it logically awesome."}'
    headers = {
        "X-GitHub-Event": "ping",
        "X-GitHub-Delivery": str(uuid.uuid4()),
        "X-Hub-Signature-256": sign_payload(body, secret),
    }
    assert not guard.handle_webhook(body, headers).duplicate
    assert guard.handle_webhook(body, headers).duplicate
    assert len(received) == 1
    assert guard.get_metrics()["webhooks"]["duplicates"] == 1


def test_handle_webhook_requires_secret(clock):
    guard = make_guard(FakeTransport(), clock)
    with pytest.raises(WebhookConfigurationError):
        guard.handle_webhook(b"{}", {})


def test_sqlite_dedup_from_config(clock, tmp_path):
    secret = "guard-webhook-secret-value"
    db_path = str(tmp_path / "deliveries.db")
    body = b'{"action": "created"}'
    headers = {
        "X-GitHub-Event": "star",
        "X-GitHub-Delivery": str(uuid.uuid4()),
        "X-Hub-Signature-256": sign_payload(body, secret),
    }
    config = {"webhook": {"secret": secret, "dedup_database_path": db_path}}

    with make_guard(FakeTransport(), clock, config=config) as guard:
        assert not guard.handle_webhook(body, headers).duplicate
    with make_guard(FakeTransport(), clock, config=config) as restarted:
        assert restarted.handle_webhook(body, headers).duplicate


def test_invalid_config_raises():
    with pytest.raises(ValueError):
        GitHubGuard({"cache": {"max_size": -1}}, transport=FakeTransport())
