"""Exception taxonomy for GitHub Guard.

Cache misses and duplicate webhook deliveries are ordinary return values and
never raise. Everything below signals misuse, exhaustion, or a rejected
inbound delivery.
"""

from typing import Optional


class GitHubGuardError(Exception):
    """Base class for all errors raised by this package."""

    pass


class CacheMisuseError(GitHubGuardError, ValueError):
    """Raised at construction time when the cache is configured incorrectly.

    Examples are a negative TTL, a non-positive maximum size, or an
    unsupported storage backend.
    """

    pass


class NoAvailableTokenError(GitHubGuardError):
    """Raised when no configured token is healthy and eligible for selection."""

    def __init__(self, message: str = "No available token", required_scopes=None):
        self.required_scopes = list(required_scopes or [])
        if self.required_scopes:
            message = f"{message} (required scopes: {', '.join(self.required_scopes)})"
        super().__init__(message)


class RateLimitWarning(UserWarning):
    """Non-fatal signal handed to the rate-limit warning callback.

    Never raised by the tracker itself.
    """

    def __init__(self, resource: str, percentage_used: float, window=None):
        self.resource = resource
        self.percentage_used = percentage_used
        self.window = window
        super().__init__(f"Rate limit for '{resource}' is {percentage_used:.1f}% used")


class RequestFailedError(GitHubGuardError):
    """An outbound call came back with an error status.

    Carries what the retry policy needs to decide: the status, the response
    headers, any server-supplied retry delay, and whether the failure was a
    secondary (abuse) rate limit.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers=None,
        retry_after: Optional[float] = None,
        secondary_rate_limit: bool = False,
    ):
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.retry_after = retry_after
        self.secondary_rate_limit = secondary_rate_limit
        super().__init__(message)


class RetryExhaustedError(GitHubGuardError):
    """Raised when the retry loop runs out of attempts or time."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class OperationCancelledError(GitHubGuardError):
    """Raised when a backoff wait is cancelled by the caller."""

    pass


class WebhookError(GitHubGuardError):
    """Base class for webhook rejections.

    Attributes:
        stage: Name of the pipeline stage that rejected the delivery
        status_code: Suggested HTTP status for the transport layer
        delivery_id: Delivery id, when it was known at rejection time
    """

    stage = "received"
    status_code = 400

    def __init__(self, message: str, delivery_id: Optional[str] = None):
        self.delivery_id = delivery_id
        super().__init__(message)


class WebhookConfigurationError(WebhookError, ValueError):
    """Raised when the webhook engine is built with an unusable configuration."""

    stage = "configuration"
    status_code = 500


class WebhookHeaderError(WebhookError):
    """A required webhook header is missing."""

    stage = "header_check"
    status_code = 400


class WebhookDeliveryIdError(WebhookError):
    """The delivery id header is not a UUID."""

    stage = "header_check"
    status_code = 400


class WebhookPayloadTooLargeError(WebhookError):
    """The raw payload exceeds the configured byte ceiling."""

    stage = "size_check"
    status_code = 413


class WebhookSignatureError(WebhookError):
    """The signature header is missing, malformed, disallowed, or wrong."""

    stage = "signature_verification"
    status_code = 401


class WebhookPayloadParseError(WebhookError):
    """The payload is not a JSON object."""

    stage = "parse"
    status_code = 400


class WebhookHandlerError(WebhookError):
    """A registered handler failed; the original exception is chained."""

    stage = "dispatch"
    status_code = 500

    def __init__(self, message: str, event_type: str, delivery_id: Optional[str] = None):
        self.event_type = event_type
        super().__init__(message, delivery_id=delivery_id)
