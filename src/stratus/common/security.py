"""Security utilities shared across Stratus services."""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Union

import structlog

LOGGER = structlog.get_logger("stratus.security")

SIGNATURE_PREFIX = "sha256="

SecretLike = Union[str, bytes]


def _as_bytes(value: SecretLike) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(secret: SecretLike, body: bytes) -> str:
    """Return the ``X-Hub-Signature-256`` header value GitHub would send for ``body``."""

    digest = hmac.new(_as_bytes(secret), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_webhook_signature(
    body: bytes,
    signature: Optional[str],
    secret: SecretLike,
    client_ip: str,
) -> bool:
    """Check the HMAC-SHA256 signature of a raw webhook body.

    ``body`` must be the bytes exactly as received; re-serialising the parsed
    JSON does not reproduce them. Failures are logged with ``client_ip`` for
    security monitoring; successes are not logged. Never raises.
    """

    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        LOGGER.warning("Invalid webhook signature format", client_ip=client_ip)
        return False

    provided = signature[len(SIGNATURE_PREFIX) :]
    expected = hmac.new(_as_bytes(secret), body, hashlib.sha256).hexdigest()
    valid = hmac.compare_digest(provided.encode("utf-8"), expected.encode("ascii"))
    if not valid:
        LOGGER.warning("Webhook signature mismatch", client_ip=client_ip)
    return valid


def secrets_match(provided: Optional[str], expected: SecretLike) -> bool:
    """Constant-time comparison for shared-secret headers; empty values never match."""

    if not provided:
        return False
    expected_bytes = _as_bytes(expected)
    if not expected_bytes:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected_bytes)
