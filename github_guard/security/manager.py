"""Security manager implementation for webhook signature operations."""

import base64
import hashlib
import hmac
import secrets
from typing import Optional, Tuple, Union

from github_guard.exceptions import WebhookConfigurationError, WebhookSignatureError

# Algorithm prefix -> (hashlib constructor, hex digest length)
SIGNATURE_ALGORITHMS = {
    "sha256": (hashlib.sha256, 64),
    "sha1": (hashlib.sha1, 40),
}

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def generate_webhook_secret() -> str:
    """Generate a cryptographically secure webhook secret.

    Returns:
        A URL-safe base64-encoded 256-bit random secret

    Example:
        >>> secret = generate_webhook_secret()
        >>> len(secret) >= 43
        True
    """
    key_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(key_bytes).decode("ascii").rstrip("=")


def compute_signature(payload: Union[str, bytes], secret: Union[str, bytes], algorithm: str = "sha256") -> str:
    """Return the hex HMAC digest of ``payload``."""
    if algorithm not in SIGNATURE_ALGORITHMS:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")
    digestmod = SIGNATURE_ALGORITHMS[algorithm][0]
    return hmac.new(_to_bytes(secret), _to_bytes(payload), digestmod).hexdigest()


def sign_payload(payload: Union[str, bytes], secret: Union[str, bytes], algorithm: str = "sha256") -> str:
    """Return a signature header value such as ``sha256=<hex>``.

    Example:
        >>> sign_payload(b"{}", "a-very-long-secret-value")[:7]
        'sha256='
    """
    return f"{algorithm}={compute_signature(payload, secret, algorithm)}"


def parse_signature_header(value: Optional[str]) -> Tuple[str, str]:
    """Split ``<algo>=<hex>`` into its parts.

    Raises:
        WebhookSignatureError: Missing header, unknown prefix, non-hex digest, or wrong length
    """
    if not value:
        raise WebhookSignatureError("Missing signature header")
    algorithm, sep, digest = value.strip().partition("=")
    if not sep:
        raise WebhookSignatureError("Malformed signature header")
    algorithm = algorithm.lower()
    if algorithm not in SIGNATURE_ALGORITHMS:
        raise WebhookSignatureError("Unsupported signature algorithm")
    expected_length = SIGNATURE_ALGORITHMS[algorithm][1]
    if len(digest) != expected_length or not set(digest) <= _HEX_DIGITS:
        raise WebhookSignatureError("Malformed signature digest")
    return algorithm, digest.lower()


class SecurityManager:
    """Holds the webhook secret and verifies HMAC signatures.

    Verification always uses ``hmac.compare_digest`` over the raw payload
    bytes. ``sha1`` signatures are only accepted when ``allow_sha1`` is set.

    Example:
        >>> manager = SecurityManager("a-very-long-secret-value")
        >>> manager.verify(b"{}", manager.sign(b"{}"))
        True
    """

    def __init__(self, secret: Optional[Union[str, bytes]], allow_sha1: bool = False, min_secret_length: int = 16):
        """Initialize SecurityManager.

        Args:
            secret: Shared HMAC secret
            allow_sha1: Accept legacy ``sha1=`` signatures
            min_secret_length: Minimum accepted secret length

        Raises:
            WebhookConfigurationError: If the secret is missing or too short
        """
        self.validate_secret(secret, min_secret_length)
        self._secret = _to_bytes(secret)
        self.allow_sha1 = allow_sha1
        self.min_secret_length = min_secret_length

    @staticmethod
    def validate_secret(secret: Optional[Union[str, bytes]], min_secret_length: int = 16) -> None:
        if secret is None or len(secret) == 0:
            raise WebhookConfigurationError("Webhook secret is required")
        if len(secret) < min_secret_length:
            raise WebhookConfigurationError(f"Webhook secret must be at least {min_secret_length} characters")

    @property
    def allowed_algorithms(self) -> Tuple[str, ...]:
        return ("sha256", "sha1") if self.allow_sha1 else ("sha256",)

    def sign(self, payload: Union[str, bytes], algorithm: str = "sha256") -> str:
        return sign_payload(payload, self._secret, algorithm)

    def verify(self, payload: bytes, signature_header: Optional[str]) -> bool:
        """Verify ``signature_header`` against ``payload``.

        Returns:
            True if the signature matches

        Raises:
            WebhookSignatureError: Malformed header or disallowed algorithm;
                a mismatch returns False
        """
        algorithm, digest = parse_signature_header(signature_header)
        if algorithm not in self.allowed_algorithms:
            raise WebhookSignatureError(f"Signature algorithm '{algorithm}' is not allowed")
        expected = compute_signature(payload, self._secret, algorithm)
        return hmac.compare_digest(expected.encode("ascii"), digest.encode("ascii"))
