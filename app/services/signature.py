"""
Signature & Timestamp Validator.

Request signature:
    hex(HMAC-SHA256(secret, f"{METHOD}|{route}|{domain}|{timestamp}|" + raw_body))

Webhook signature:
    hex(HMAC-SHA256(webhook_secret, raw_body))

Both fail closed and share one replay window.
"""

import hashlib
import hmac
import time

from structlog import get_logger

from app.config import settings
from app.exceptions import AuthenticationError, InvalidTimestampError

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-AFFCD-Signature"
TIMESTAMP_HEADER = "X-AFFCD-Timestamp"


def compute_signature(
    method: str,
    route: str,
    domain: str,
    timestamp: str,
    body: bytes,
    secret: str,
) -> str:
    """Compute the request signature over the canonical string and raw body."""
    canonical = f"{method.upper()}|{route}|{domain}|{timestamp}|".encode() + body
    return hmac.new(secret.encode("utf-8"), canonical, hashlib.sha256).hexdigest()


def compute_body_signature(body: bytes, secret: str) -> str:
    """Signature used for inbound and outbound webhooks."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def check_timestamp(timestamp: str | None, now: float | None = None) -> int:
    """
    Parse and bound-check a unix timestamp header.

    Raises:
        AuthenticationError: timestamp missing
        InvalidTimestampError: not an integer, or outside the skew window
    """
    max_skew = settings.signature_max_skew_seconds
    if not timestamp:
        raise AuthenticationError("missing timestamp")
    try:
        value = int(timestamp)
    except ValueError as exc:
        raise InvalidTimestampError(timestamp, max_skew) from exc

    current = time.time() if now is None else now
    if abs(current - value) > max_skew:
        raise InvalidTimestampError(timestamp, max_skew)
    return value


class SignatureValidator:
    """Verifies signed requests. Every failure raises; nothing returns False."""

    def verify_request(
        self,
        *,
        method: str,
        route: str,
        domain: str,
        timestamp: str | None,
        body: bytes,
        signature: str | None,
        secret: str | None,
        now: float | None = None,
    ) -> None:
        if not secret:
            raise AuthenticationError("missing signing secret")
        if not signature:
            raise AuthenticationError("missing signature")
        check_timestamp(timestamp, now)

        expected = compute_signature(method, route, domain, timestamp or "", body, secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("signature_mismatch", route=route, domain=domain)
            raise AuthenticationError("invalid signature")

    def verify_webhook(
        self,
        *,
        body: bytes,
        timestamp: str | None,
        signature: str | None,
        secret: str | None,
        now: float | None = None,
    ) -> None:
        if not secret:
            raise AuthenticationError("webhook secret not configured")
        if not signature:
            raise AuthenticationError("missing signature")
        check_timestamp(timestamp, now)

        expected = compute_body_signature(body, secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("webhook_signature_mismatch")
            raise AuthenticationError("invalid signature")
