import threading
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from github_guard.cache.engine import CacheEngine
from github_guard.core.config import ConfigurationManager
from github_guard.core.transport import RequestsTransport, TransportResponse
from github_guard.database.models import CacheEntry, TokenInfo
from github_guard.exceptions import RequestFailedError, WebhookConfigurationError
from github_guard.monitoring.manager import MonitoringManager
from github_guard.throttling.backoff import DefaultRetryPolicy, RetryExecutor, parse_retry_after, wait
from github_guard.throttling.manager import DEFAULT_RESOURCE, RateLimitTracker
from github_guard.tokens.manager import TokenRotationManager
from github_guard.utils.headers import normalize_headers, parse_int_header
from github_guard.utils.logger import configure_logging, get_logger
from github_guard.webhooks.engine import WebhookResult, WebhookSecurityEngine

# Statuses whose retry delay may come from the server
RATE_LIMIT_STATUSES = (403, 429)
# Failures that say something about the credential rather than the request
TOKEN_ERROR_STATUSES = (401, 403, 429)

Transport = Callable[..., TransportResponse]


class GitHubGuard:
    """Main entry point: wires every component from one configuration.

    Outbound calls go through ``execute``, which consults the cache, holds
    the call while the rate-limit window is known to be exhausted, selects
    a token, performs the call through the transport, feeds the rate-limit
    tracker, stores or revalidates the cached body, reports token health,
    and retries failures under the retry policy.

    Inbound webhooks go through ``handle_webhook`` when a webhook secret is
    configured.

    Example:
        >>> config = {
        ...     "token_rotation": {"tokens": ["ghp_one", "ghp_two"]},
        ...     "webhook": {"secret": "a-very-long-secret-value"},
        ... }
        >>> with GitHubGuard(config) as guard:
        ...     repo = guard.execute("GET", "/repos/octocat/hello-world").data
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        transport: Optional[Transport] = None,
        on_rate_limit_warning: Optional[Callable] = None,
        on_rate_limit: Optional[Callable] = None,
        on_secondary_rate_limit: Optional[Callable] = None,
        clock: Callable[[], float] = time.time,
        waiter: Callable[[float, Optional[threading.Event]], bool] = wait,
        rng=None,
    ) -> None:
        """Initialize the guard and all components.

        Args:
            config: Configuration dictionary, merged over the defaults
            transport: Callable performing one HTTP call; defaults to ``RequestsTransport``
            on_rate_limit_warning: Called with a ``RateLimitWarning`` near quota exhaustion
            on_rate_limit: Retry callback for primary rate limits
            on_secondary_rate_limit: Retry callback for secondary rate limits
            clock: Source of the current time, shared by all components
            waiter: Cancellable wait used between retries
            rng: Random source for jitter and random token rotation

        Raises:
            ValueError: If configuration is invalid
        """
        self.config_manager = ConfigurationManager(config or {})
        configure_logging(self.config_manager.logging)
        self.logger = get_logger("core.guard")
        self._clock = clock

        self.cache = CacheEngine.from_config(self.config_manager.cache, clock=clock)
        self.rate_limits = RateLimitTracker.from_config(
            self.config_manager.rate_limit, on_warning=on_rate_limit_warning, clock=clock
        )
        self.tokens = TokenRotationManager.from_config(self.config_manager.token_rotation, clock=clock, rng=rng)
        self.retry_policy = DefaultRetryPolicy.from_config(
            self.config_manager.retry,
            on_rate_limit=on_rate_limit,
            on_secondary_rate_limit=on_secondary_rate_limit,
            rng=rng,
        )
        self.transport = transport or RequestsTransport()

        webhook_config = self.config_manager.webhook
        self.webhooks: Optional[WebhookSecurityEngine] = None
        if webhook_config.secret is not None:
            self.webhooks = WebhookSecurityEngine.from_config(webhook_config, clock=clock)

        self.monitoring = MonitoringManager(self.cache, self.rate_limits, self.tokens, self.webhooks)
        self.executor = RetryExecutor(
            self.retry_policy, waiter=waiter, on_retry=lambda context, decision: self.monitoring.record_retry()
        )

    @property
    def config(self) -> Dict[str, Any]:
        return self.config_manager.config

    def execute(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        required_scopes: Optional[Iterable[str]] = None,
        resource: Optional[str] = None,
        use_cache: bool = True,
        auth_context: Optional[str] = None,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TransportResponse:
        """Perform one logical API call with caching, rotation and retries.

        Only GET responses are cached. A successful non-GET call drops the
        cached GET entry for the same URL and params.

        Args:
            method: HTTP method
            url: Absolute URL or path relative to the transport's base URL
            params: Query parameters
            body: Request body; dicts are sent as JSON by ``RequestsTransport``
            headers: Extra request headers
            required_scopes: Scopes the selected token must grant
            resource: Rate-limit resource; defaults to the response's header
            use_cache: Set False to bypass the cache for this call
            auth_context: Identity that partitions cache entries
            deadline: Upper bound in seconds on the whole retry loop
            cancel_event: Set to abort a pending backoff wait

        Returns:
            The ``TransportResponse``; ``from_cache`` marks cached bodies

        Raises:
            NoAvailableTokenError: No token is eligible
            RequestFailedError: A non-retryable error status
            RetryExhaustedError: Retries or deadline exhausted
            OperationCancelledError: ``cancel_event`` was set
        """
        method = method.upper()
        cacheable = use_cache and method == "GET" and self.cache.enabled
        key = self.cache.generate_cache_key("GET", url, params, auth_context)
        stale = None

        if cacheable:
            # Validators must be read before get() purges an expired entry
            stale = self.cache.get_stale(key)
            entry = self.cache.get(key)
            if entry is not None:
                self.monitoring.record_request(cache_hit=True)
                self.logger.debug("Cache hit: %s", key)
                return self._cached_response(entry)

        def attempt() -> TransportResponse:
            return self._attempt(
                method, url, params, body, headers, required_scopes, resource, key if cacheable else None, stale
            )

        try:
            response = self.executor.run(attempt, deadline=deadline, cancel_event=cancel_event)
        except Exception:
            self.monitoring.record_failure()
            raise
        self.monitoring.record_request(cache_hit=response.from_cache)

        if method != "GET" and response.ok and self.cache.delete(key):
            self.logger.debug("Invalidated %s after %s", key, method)
        return response

    @staticmethod
    def _cached_response(entry: CacheEntry) -> TransportResponse:
        return TransportResponse(status_code=200, headers=dict(entry.headers), data=entry.data, from_cache=True)

    def _select_token(self, required_scopes) -> Optional[TokenInfo]:
        # An empty pool means unauthenticated calls
        if not self.tokens.get_tokens():
            return None
        return self.tokens.get_next_token(required_scopes)

    def _attempt(
        self,
        method: str,
        url: str,
        params,
        body,
        headers,
        required_scopes,
        resource: Optional[str],
        cache_key: Optional[str],
        stale: Optional[CacheEntry],
    ) -> TransportResponse:
        self._check_quota(method, url, resource or DEFAULT_RESOURCE)
        token = self._select_token(required_scopes)
        request_headers = dict(headers or {})
        if token is not None:
            request_headers["Authorization"] = f"Bearer {token.token}"
        if cache_key is not None and stale is not None and stale.has_validators:
            request_headers.update(stale.conditional_headers())

        try:
            response = self.transport(method, url, request_headers, params, body)
        except Exception:
            if token is not None:
                self.tokens.record_error(token)
            raise

        self.rate_limits.update_from_headers(response.headers, resource)
        status = response.status_code

        if status == 304 and cache_key is not None and stale is not None:
            self._report(token, success=True)
            self.cache.set(cache_key, stale)
            entry = self.cache.revalidate(cache_key, headers=response.headers) or stale
            self.logger.debug("Revalidated %s", cache_key)
            return self._cached_response(entry)

        if status >= 400:
            self._report(token, success=status not in TOKEN_ERROR_STATUSES and status < 500)
            raise self._failure(method, url, response)

        self._report(token, success=True)
        if cache_key is not None and status == 200:
            self.cache.store(cache_key, response.data, headers=response.headers)
        return response

    def _check_quota(self, method: str, url: str, resource: str) -> None:
        """Refuse to call out while a known window is exhausted.

        The raised error carries the time until reset as ``retry_after`` so
        the retry executor waits for the window under its usual bounds.
        """
        if not self.rate_limits.is_exhausted(resource):
            return
        seconds = self.rate_limits.seconds_until_reset(resource)
        self.logger.info("Rate limit for '%s' exhausted, %s %s held for %.0fs", resource, method, url, seconds)
        raise RequestFailedError(
            f"Rate limit for '{resource}' exhausted; resets in {seconds:.0f}s",
            retry_after=seconds,
        )

    def _report(self, token: Optional[TokenInfo], success: bool) -> None:
        if token is None:
            return
        if success:
            self.tokens.record_success(token)
        else:
            self.tokens.record_error(token)

    def _failure(self, method: str, url: str, response: TransportResponse) -> RequestFailedError:
        status = response.status_code
        normalized = normalize_headers(response.headers)
        retry_after = None
        secondary = False
        if status in RATE_LIMIT_STATUSES:
            retry_after = parse_retry_after(normalized, self._clock)
        if retry_after is not None:
            message = response.data.get("message", "") if isinstance(response.data, dict) else str(response.data or "")
            secondary = "secondary rate limit" in message.lower() or (
                "retry-after" in normalized and parse_int_header(normalized, "x-ratelimit-remaining") != 0
            )
        self.logger.debug("%s %s failed with status %d", method, url, status)
        return RequestFailedError(
            f"{method} {url} failed with status {status}",
            status_code=status,
            headers=normalized,
            retry_after=retry_after,
            secondary_rate_limit=secondary,
        )

    def handle_webhook(self, payload, headers) -> WebhookResult:
        """Validate and dispatch one inbound webhook delivery.

        Raises:
            WebhookConfigurationError: If no webhook secret is configured
            WebhookError: If the delivery is rejected
        """
        if self.webhooks is None:
            raise WebhookConfigurationError("No webhook secret configured")
        return self.webhooks.handle(payload, headers)

    def get_metrics(self) -> Dict[str, Any]:
        return self.monitoring.get_metrics()

    def clear_cache(self) -> int:
        return self.cache.clear()

    def close(self) -> None:
        """Release transport and dedup store resources. Safe to call twice."""
        close = getattr(self.transport, "close", None)
        if callable(close):
            close()
        if self.webhooks is not None:
            self.webhooks.close()

    def __enter__(self) -> "GitHubGuard":
        return self

    def __exit__(self, exc_type: Optional[type], exc_val: Optional[Exception], exc_tb: Optional[Any]) -> None:
        self.close()
