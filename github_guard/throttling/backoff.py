"""Backoff computation, retry decisions, and cancellable waits."""

import asyncio
import random
import threading
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable, List, Mapping, Optional

from requests import exceptions as requests_exceptions

from github_guard.exceptions import OperationCancelledError, RetryExhaustedError
from github_guard.utils.headers import normalize_headers, parse_int_header
from github_guard.utils.logger import get_logger

RETRYABLE_STATUS_CODES = (408, 409, 429)
RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    requests_exceptions.ConnectionError,
    requests_exceptions.Timeout,
)

# Past this exponent base * 2**attempt is far beyond any sane max_delay
_MAX_EXPONENT = 62

logger = get_logger("throttling.backoff")


@dataclass(frozen=True)
class RetryDecision:
    """What to do after a failed attempt.

    Attributes:
        action: "retry", "abort" or "retry_after"
        delay: Seconds to wait before the next attempt
        reason: Why the policy aborted ("exhausted", "not_retryable", "declined")
    """

    action: str
    delay: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def retry(cls, delay: float) -> "RetryDecision":
        return cls("retry", delay)

    @classmethod
    def abort(cls, reason: str = "not_retryable") -> "RetryDecision":
        return cls("abort", 0.0, reason)

    @classmethod
    def retry_after(cls, seconds: float) -> "RetryDecision":
        """Retry after exactly the server-supplied delay."""
        return cls("retry_after", seconds)

    @property
    def should_retry(self) -> bool:
        return self.action != "abort"


@dataclass
class RetryContext:
    """Facts about a failed attempt handed to a ``RetryPolicy``.

    ``attempt`` counts retries already made, so the first decision sees 0.
    """

    attempt: int
    status_code: Optional[int] = None
    error: Optional[BaseException] = None
    retry_after: Optional[float] = None
    secondary_rate_limit: bool = False
    method: Optional[str] = None
    url: Optional[str] = None


class BackoffPolicy:
    """Exponential backoff with symmetric jitter.

    ``delay(attempt) = min(max_delay, base * 2**attempt) * (1 + jitter)``
    with ``jitter`` uniform in ``[-jitter_ratio, +jitter_ratio]``, then capped
    at ``max_delay`` again so no delay ever exceeds it.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_ratio: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        if base_delay < 0 or max_delay < 0:
            raise ValueError("Backoff delays must not be negative")
        if not 0 <= jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def base(self, attempt: int) -> float:
        """Un-jittered delay for ``attempt``."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        if attempt >= _MAX_EXPONENT:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**attempt))

    def delay(self, attempt: int) -> float:
        """Jittered delay in seconds for retry number ``attempt`` (0 = first retry)."""
        jitter = self._rng.uniform(-self.jitter_ratio, self.jitter_ratio) if self.jitter_ratio else 0.0
        return min(self.max_delay, max(0.0, self.base(attempt) * (1 + jitter)))


def parse_retry_after(
    headers: Optional[Mapping[str, Any]], clock: Callable[[], float] = time.time
) -> Optional[float]:
    """Extract the server's retry directive in seconds, if any.

    ``Retry-After`` may be delta-seconds or an HTTP date. When the primary
    quota is exhausted (``x-ratelimit-remaining: 0``) the time until
    ``x-ratelimit-reset`` is used instead.
    """
    normalized = normalize_headers(headers)
    raw = normalized.get("retry-after")
    if raw is not None:
        raw = raw.strip()
        if raw.isdigit():
            return float(raw)
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError, IndexError):
            when = None
        if when is not None:
            return max(0.0, when.timestamp() - clock())
    if parse_int_header(normalized, "x-ratelimit-remaining") == 0:
        reset = parse_int_header(normalized, "x-ratelimit-reset")
        if reset is not None:
            return max(0.0, reset - clock())
    return None


class RetryPolicy:
    """Decides whether and when to retry a failed attempt."""

    def decide(self, context: RetryContext) -> RetryDecision:
        raise NotImplementedError


class DefaultRetryPolicy(RetryPolicy):
    """Retry policy for a GitHub-style API.

    - A server-supplied delay (rate limits) always wins: the decision is
      ``retry_after`` with that exact value, and the optional
      ``on_rate_limit`` / ``on_secondary_rate_limit`` callbacks see it
      verbatim. They may return a ``RetryDecision`` or a bool.
    - Statuses in ``do_not_retry`` abort at once.
    - 5xx, 408, 409, 429 and network errors retry with exponential backoff.
    - Everything stops after ``max_retries`` (``max_secondary_retries`` for
      secondary rate limits).
    """

    def __init__(
        self,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: int = 3,
        do_not_retry: Optional[List[int]] = None,
        max_secondary_retries: int = 2,
        on_rate_limit: Optional[Callable[[float, RetryContext], Any]] = None,
        on_secondary_rate_limit: Optional[Callable[[float, RetryContext], Any]] = None,
    ):
        if max_retries < 0 or max_secondary_retries < 0:
            raise ValueError("Retry limits must not be negative")
        self.backoff = backoff or BackoffPolicy()
        self.max_retries = max_retries
        self.do_not_retry = set(do_not_retry if do_not_retry is not None else [400, 401, 404, 422])
        self.max_secondary_retries = max_secondary_retries
        self.on_rate_limit = on_rate_limit
        self.on_secondary_rate_limit = on_secondary_rate_limit

    @classmethod
    def from_config(cls, retry_config, on_rate_limit=None, on_secondary_rate_limit=None, rng=None):
        return cls(
            backoff=BackoffPolicy(
                base_delay=retry_config.base_delay,
                max_delay=retry_config.max_delay,
                jitter_ratio=retry_config.jitter_ratio,
                rng=rng,
            ),
            max_retries=retry_config.max_retries,
            do_not_retry=retry_config.do_not_retry,
            max_secondary_retries=retry_config.max_secondary_retries,
            on_rate_limit=on_rate_limit,
            on_secondary_rate_limit=on_secondary_rate_limit,
        )

    def decide(self, context: RetryContext) -> RetryDecision:
        if context.retry_after is not None:
            return self._decide_rate_limited(context)

        if context.attempt >= self.max_retries:
            return RetryDecision.abort("exhausted")

        status = context.status_code
        if status is not None:
            if status in self.do_not_retry:
                return RetryDecision.abort("not_retryable")
            if status >= 500 or status in RETRYABLE_STATUS_CODES:
                return RetryDecision.retry(self.backoff.delay(context.attempt))
            return RetryDecision.abort("not_retryable")

        if isinstance(context.error, RETRYABLE_EXCEPTIONS):
            return RetryDecision.retry(self.backoff.delay(context.attempt))
        return RetryDecision.abort("not_retryable")

    def _decide_rate_limited(self, context: RetryContext) -> RetryDecision:
        if context.secondary_rate_limit:
            cap, callback = self.max_secondary_retries, self.on_secondary_rate_limit
        else:
            cap, callback = self.max_retries, self.on_rate_limit

        if context.attempt >= cap:
            return RetryDecision.abort("exhausted")
        if callback is None:
            return RetryDecision.retry_after(context.retry_after)

        verdict = callback(context.retry_after, context)
        if isinstance(verdict, RetryDecision):
            return verdict
        if verdict:
            return RetryDecision.retry_after(context.retry_after)
        return RetryDecision.abort("declined")


def wait(seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
    """Wait up to ``seconds``, returning early if ``cancel_event`` is set.

    Returns:
        True if the full delay elapsed, False if cancelled
    """
    if cancel_event is None:
        cancel_event = threading.Event()
    if seconds <= 0:
        return not cancel_event.is_set()
    return not cancel_event.wait(seconds)


async def async_wait(seconds: float, cancel_event: Optional[asyncio.Event] = None) -> bool:
    """Asyncio counterpart of ``wait``; never blocks the event loop."""
    if cancel_event is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return True
    if cancel_event.is_set():
        return False
    if seconds <= 0:
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False


def context_from_error(error: BaseException, attempt: int) -> RetryContext:
    """Build a ``RetryContext`` from whatever an exception exposes."""
    return RetryContext(
        attempt=attempt,
        status_code=getattr(error, "status_code", None),
        error=error,
        retry_after=getattr(error, "retry_after", None),
        secondary_rate_limit=bool(getattr(error, "secondary_rate_limit", False)),
    )


class RetryExecutor:
    """Runs an operation under a ``RetryPolicy`` with a hard bound on attempts.

    The policy bounds the number of retries; ``deadline`` (seconds from the
    start of ``run``) additionally bounds total time, and a set
    ``cancel_event`` aborts any pending wait.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        waiter: Callable[[float, Optional[threading.Event]], bool] = wait,
        clock: Callable[[], float] = time.monotonic,
        on_retry: Optional[Callable[[RetryContext, RetryDecision], None]] = None,
    ):
        self.policy = policy or DefaultRetryPolicy()
        self._waiter = waiter
        self._clock = clock
        self.on_retry = on_retry

    def _next_delay(self, error: Exception, attempt: int, started: float, deadline: Optional[float]) -> float:
        context = context_from_error(error, attempt)
        decision = self.policy.decide(context)
        if not decision.should_retry:
            if decision.reason == "exhausted":
                raise RetryExhaustedError(
                    f"Giving up after {attempt + 1} attempt(s): {error}", attempts=attempt + 1, last_error=error
                ) from error
            raise error
        if deadline is not None and (self._clock() - started) + decision.delay > deadline:
            raise RetryExhaustedError(
                f"Deadline of {deadline}s would be exceeded after {attempt + 1} attempt(s)",
                attempts=attempt + 1,
                last_error=error,
            ) from error
        logger.debug("Retry %d scheduled in %.2fs (%s): %s", attempt + 1, decision.delay, decision.action, error)
        if self.on_retry is not None:
            self.on_retry(context, decision)
        return decision.delay

    def run(
        self,
        operation: Callable[[], Any],
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Call ``operation`` until it succeeds or the policy gives up.

        Raises:
            RetryExhaustedError: Attempts or deadline exhausted
            OperationCancelledError: ``cancel_event`` was set
            Exception: The operation's own error when the policy deems it not retryable
        """
        started = self._clock()
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Operation cancelled before attempt")
            try:
                return operation()
            except (OperationCancelledError, RetryExhaustedError):
                raise
            except Exception as e:
                delay = self._next_delay(e, attempt, started, deadline)
            if not self._waiter(delay, cancel_event):
                raise OperationCancelledError(f"Backoff wait cancelled after {attempt + 1} attempt(s)")
            attempt += 1

    async def run_async(
        self,
        operation: Callable[[], Any],
        deadline: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Asyncio variant of ``run``; ``operation`` returns an awaitable."""
        started = self._clock()
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Operation cancelled before attempt")
            try:
                return await operation()
            except (OperationCancelledError, RetryExhaustedError):
                raise
            except Exception as e:
                delay = self._next_delay(e, attempt, started, deadline)
            if not await async_wait(delay, cancel_event):
                raise OperationCancelledError(f"Backoff wait cancelled after {attempt + 1} attempt(s)")
            attempt += 1
