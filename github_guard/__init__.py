"""GitHub Guard - resilience and correctness layer for GitHub API clients.

Caches responses with TTL and LRU eviction, tracks rate-limit windows,
rotates credentials by health, retries with jittered backoff, and
authenticates and deduplicates inbound webhook deliveries.
"""

from github_guard.cache.engine import CacheEngine
from github_guard.core.guard import GitHubGuard
from github_guard.core.transport import RequestsTransport, TransportResponse
from github_guard.exceptions import (
    CacheMisuseError,
    GitHubGuardError,
    NoAvailableTokenError,
    OperationCancelledError,
    RateLimitWarning,
    RequestFailedError,
    RetryExhaustedError,
    WebhookError,
)
from github_guard.security.manager import SecurityManager, generate_webhook_secret, sign_payload
from github_guard.throttling.backoff import BackoffPolicy, DefaultRetryPolicy, RetryDecision, RetryExecutor
from github_guard.throttling.manager import RateLimitTracker
from github_guard.tokens.manager import TokenRotationManager
from github_guard.webhooks.engine import WebhookSecurityEngine
from github_guard.webhooks.store import InMemoryDeliveryStore, SQLiteDeliveryStore

__version__ = "0.1.0"

__all__ = [
    "GitHubGuard",
    "CacheEngine",
    "RateLimitTracker",
    "TokenRotationManager",
    "BackoffPolicy",
    "DefaultRetryPolicy",
    "RetryDecision",
    "RetryExecutor",
    "WebhookSecurityEngine",
    "InMemoryDeliveryStore",
    "SQLiteDeliveryStore",
    "SecurityManager",
    "RequestsTransport",
    "TransportResponse",
    "generate_webhook_secret",
    "sign_payload",
    "GitHubGuardError",
    "CacheMisuseError",
    "NoAvailableTokenError",
    "RateLimitWarning",
    "RequestFailedError",
    "RetryExhaustedError",
    "OperationCancelledError",
    "WebhookError",
]
