"""
WebhookSecurityEngine: authenticate, deduplicate, parse and dispatch inbound webhooks.
"""

import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from github_guard.exceptions import (
    WebhookDeliveryIdError,
    WebhookError,
    WebhookHandlerError,
    WebhookHeaderError,
    WebhookPayloadParseError,
    WebhookPayloadTooLargeError,
    WebhookSignatureError,
)
from github_guard.core.config import DEFAULT_MAX_PAYLOAD_BYTES
from github_guard.database.models import WebhookEvent
from github_guard.security.manager import SecurityManager
from github_guard.utils.headers import normalize_headers
from github_guard.utils.logger import get_logger
from github_guard.webhooks.store import DeliveryStore, InMemoryDeliveryStore, SQLiteDeliveryStore

SIGNATURE_256_HEADER = "x-hub-signature-256"
SIGNATURE_SHA1_HEADER = "x-hub-signature"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"

# Pipeline stages, in order
RECEIVED = "RECEIVED"
HEADER_CHECKED = "HEADER_CHECKED"
SIZE_CHECKED = "SIZE_CHECKED"
SIGNATURE_VERIFIED = "SIGNATURE_VERIFIED"
DEDUPLICATED = "DEDUPLICATED"
PARSED = "PARSED"
DISPATCHED = "DISPATCHED"
REJECTED = "REJECTED"

SUPPORTED_EVENTS = (
    "check_run",
    "check_suite",
    "create",
    "delete",
    "issue_comment",
    "issues",
    "ping",
    "pull_request",
    "pull_request_review",
    "pull_request_review_comment",
    "push",
    "release",
    "repository",
    "star",
    "workflow_run",
)

WebhookHandler = Callable[[WebhookEvent], Any]


@dataclass
class WebhookResult:
    """Outcome of an accepted delivery.

    Attributes:
        delivery_id: The delivery id
        event_type: Value of the event-type header
        stage: Last stage reached (DISPATCHED, or DEDUPLICATED for duplicates)
        duplicate: True if the id was already processed; no handler ran
        handled: True if a registered handler was invoked
        event: The parsed event, None for duplicates
        handler_result: Whatever the handler returned
    """

    delivery_id: str
    event_type: str
    stage: str
    duplicate: bool = False
    handled: bool = False
    event: Optional[WebhookEvent] = None
    handler_result: Any = None
    stages: List[str] = field(default_factory=list)


class WebhookSecurityEngine:
    """Validates and dispatches inbound webhook deliveries.

    The pipeline fails fast, from cheapest to most expensive check:
    header presence, delivery-id format, payload size, HMAC signature,
    replay check, JSON parse, dispatch. Every rejection raises a
    ``WebhookError`` subclass naming its stage and an HTTP status.

    Example:
        >>> engine = WebhookSecurityEngine("a-very-long-secret-value")
        >>> @engine.on("issues")
        ... def handle_issue(event):
        ...     return event.action
        >>> engine.handle(body, request_headers)
    """

    def __init__(
        self,
        secret: Optional[Union[str, bytes]],
        store: Optional[DeliveryStore] = None,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        compatibility_mode_allow_sha1: bool = False,
        min_secret_length: int = 16,
        clock: Callable[[], float] = time.time,
    ):
        if max_payload_bytes <= 0:
            raise ValueError("max_payload_bytes must be positive")
        self.security = SecurityManager(
            secret, allow_sha1=compatibility_mode_allow_sha1, min_secret_length=min_secret_length
        )
        self.store = store or InMemoryDeliveryStore(clock=clock)
        self.max_payload_bytes = max_payload_bytes
        self.compatibility_mode_allow_sha1 = compatibility_mode_allow_sha1
        self._clock = clock
        self._handlers: Dict[str, WebhookHandler] = {}
        self.lock = threading.Lock()
        self.stats: Dict[str, Any] = {
            "received": 0,
            "dispatched": 0,
            "duplicates": 0,
            "unhandled": 0,
            "rejected": {},
        }
        self.logger = get_logger("webhooks.engine")

    @classmethod
    def from_config(cls, webhook_config, clock: Callable[[], float] = time.time):
        """Build an engine from a ``WebhookConfig``; a database path selects the SQLite store."""
        if webhook_config.dedup_database_path:
            store = SQLiteDeliveryStore(
                webhook_config.dedup_database_path,
                retention_seconds=webhook_config.dedup_retention,
                max_entries=webhook_config.dedup_max_entries,
                clock=clock,
            )
        else:
            store = InMemoryDeliveryStore(
                retention_seconds=webhook_config.dedup_retention,
                max_entries=webhook_config.dedup_max_entries,
                clock=clock,
            )
        return cls(
            webhook_config.secret,
            store=store,
            max_payload_bytes=webhook_config.max_payload_bytes,
            compatibility_mode_allow_sha1=webhook_config.compatibility_mode_allow_sha1,
            min_secret_length=webhook_config.min_secret_length,
            clock=clock,
        )

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        """Register the handler for ``event_type``, replacing any previous one."""
        if not callable(handler):
            raise TypeError("handler must be callable")
        with self.lock:
            self._handlers[event_type] = handler

    def unregister(self, event_type: str) -> bool:
        with self.lock:
            return self._handlers.pop(event_type, None) is not None

    def on(self, event_type: str) -> Callable[[WebhookHandler], WebhookHandler]:
        """Decorator form of ``register``."""

        def decorator(handler: WebhookHandler) -> WebhookHandler:
            self.register(event_type, handler)
            return handler

        return decorator

    def _reject(self, error: WebhookError) -> WebhookError:
        with self.lock:
            rejected = self.stats["rejected"]
            rejected[error.stage] = rejected.get(error.stage, 0) + 1
        self.logger.warning(
            "Rejected webhook delivery %s at %s: %s", error.delivery_id or "<unknown>", error.stage, error
        )
        return error

    def _check_headers(self, headers: Dict[str, str]):
        event_type = headers.get(EVENT_HEADER, "").strip()
        delivery_id = headers.get(DELIVERY_HEADER, "").strip()
        if not event_type:
            raise WebhookHeaderError("Missing X-GitHub-Event header", delivery_id=delivery_id or None)
        if not delivery_id:
            raise WebhookHeaderError("Missing X-GitHub-Delivery header")
        try:
            uuid.UUID(delivery_id)
        except ValueError:
            raise WebhookDeliveryIdError("X-GitHub-Delivery is not a valid UUID") from None
        return event_type, delivery_id

    def _check_signature(self, body: bytes, headers: Dict[str, str], delivery_id: str) -> None:
        signature = headers.get(SIGNATURE_256_HEADER)
        if signature is None and SIGNATURE_SHA1_HEADER in headers:
            if not self.compatibility_mode_allow_sha1:
                raise WebhookSignatureError("sha1 signatures are not allowed", delivery_id=delivery_id)
            signature = headers[SIGNATURE_SHA1_HEADER]
        if signature is None:
            raise WebhookSignatureError("Missing signature header", delivery_id=delivery_id)
        try:
            valid = self.security.verify(body, signature)
        except WebhookSignatureError as e:
            e.delivery_id = delivery_id
            raise
        if not valid:
            raise WebhookSignatureError("Signature mismatch", delivery_id=delivery_id)

    def _parse(self, body: bytes, delivery_id: str) -> Dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise WebhookPayloadParseError(f"Payload is not valid JSON: {e}", delivery_id=delivery_id) from e
        if not isinstance(payload, dict):
            raise WebhookPayloadParseError("Payload must be a JSON object", delivery_id=delivery_id)
        return payload

    def handle(self, payload: Union[str, bytes], headers: Optional[Mapping[str, Any]]) -> WebhookResult:
        """Run one delivery through the pipeline.

        Args:
            payload: Raw request body exactly as received
            headers: Request headers, any casing

        Returns:
            A ``WebhookResult``; duplicates come back with ``duplicate=True``

        Raises:
            WebhookError: A subclass naming the failing stage and status code
        """
        with self.lock:
            self.stats["received"] += 1
        stages = [RECEIVED]
        body = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload or b"")
        normalized = normalize_headers(headers)

        try:
            event_type, delivery_id = self._check_headers(normalized)
            stages.append(HEADER_CHECKED)

            if len(body) > self.max_payload_bytes:
                raise WebhookPayloadTooLargeError(
                    f"Payload of {len(body)} bytes exceeds {self.max_payload_bytes}", delivery_id=delivery_id
                )
            stages.append(SIZE_CHECKED)

            self._check_signature(body, normalized, delivery_id)
            stages.append(SIGNATURE_VERIFIED)
        except WebhookError as e:
            raise self._reject(e)

        if not self.store.check_and_insert(delivery_id):
            stages.append(DEDUPLICATED)
            with self.lock:
                self.stats["duplicates"] += 1
            self.logger.info("Duplicate webhook delivery %s ignored", delivery_id)
            return WebhookResult(delivery_id, event_type, DEDUPLICATED, duplicate=True, stages=stages)
        stages.append(DEDUPLICATED)

        try:
            data = self._parse(body, delivery_id)
        except WebhookPayloadParseError as e:
            self.store.release(delivery_id)
            raise self._reject(e)
        stages.append(PARSED)

        action = data.get("action") if isinstance(data.get("action"), str) else None
        event = WebhookEvent(type=event_type, delivery_id=delivery_id, payload=data, action=action)

        with self.lock:
            handler = self._handlers.get(event_type)

        result = WebhookResult(delivery_id, event_type, DISPATCHED, event=event, stages=stages)
        if handler is None:
            self.logger.debug("No handler registered for '%s'; delivery %s accepted", event_type, delivery_id)
            with self.lock:
                self.stats["unhandled"] += 1
        else:
            try:
                result.handler_result = handler(event)
            except Exception as e:
                self.store.release(delivery_id)
                raise self._reject(
                    WebhookHandlerError(f"Handler for {event_type} event failed", event_type, delivery_id)
                ) from e
            result.handled = True
            with self.lock:
                self.stats["dispatched"] += 1
        stages.append(DISPATCHED)
        self.logger.debug("Webhook delivery %s (%s) processed", delivery_id, event_type)
        return result

    def get_configuration(self) -> Dict[str, Any]:
        with self.lock:
            registered = sorted(self._handlers)
        return {
            "supported_events": sorted(set(SUPPORTED_EVENTS) | set(registered)),
            "registered_events": registered,
            "max_payload_bytes": self.max_payload_bytes,
            "compatibility_mode_allow_sha1": self.compatibility_mode_allow_sha1,
            "signature_algorithms": list(self.security.allowed_algorithms),
        }

    def metrics(self) -> Dict[str, Any]:
        with self.lock:
            stats = dict(self.stats)
            stats["rejected"] = dict(self.stats["rejected"])
        stats["tracked_deliveries"] = self.store.size()
        return stats

    def close(self) -> None:
        self.store.close()
