"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error carries the machine-readable ``error_code`` and the HTTP status the
API layer maps it to.
"""

from datetime import datetime
from decimal import Decimal


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    error_code = "internal_error"
    http_status = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(GatewayError):
    """Raised when input is malformed. Never retried server-side."""

    error_code = "validation_error"
    http_status = 400

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(f"{field}: {message}" if field else message)


class BelowThresholdError(ValidationError):
    """Raised when a sale is below the commission minimum threshold."""

    def __init__(self, amount: Decimal, threshold: Decimal) -> None:
        self.amount = amount
        self.threshold = threshold
        super().__init__(
            f"Sale amount {amount} is below minimum threshold {threshold}",
            field="sale_amount",
        )


class AuthenticationError(GatewayError):
    """Raised when authentication fails (bad or missing key or signature)."""

    error_code = "authentication_failed"
    http_status = 401

    def __init__(self, message: str) -> None:
        super().__init__(f"Authentication failed: {message}")


class InvalidTimestampError(AuthenticationError):
    """Raised when the request timestamp is outside the replay window."""

    error_code = "invalid_timestamp"

    def __init__(self, timestamp: str | None, max_skew_seconds: int) -> None:
        self.timestamp = timestamp
        self.max_skew_seconds = max_skew_seconds
        super().__init__(f"timestamp outside the {max_skew_seconds}s window")


class AuthorizationError(GatewayError):
    """Raised when a domain is not authorized or lacks an endpoint permission."""

    error_code = "domain_unauthorized"
    http_status = 403

    def __init__(self, reason: str, required_permission: str | None = None) -> None:
        self.reason = reason
        self.required_permission = required_permission
        if required_permission:
            self.error_code = "endpoint_forbidden"
            super().__init__(f"Authorization failed: missing permission {required_permission}")
        else:
            super().__init__(f"Authorization failed: {reason}")


class NotFoundError(GatewayError):
    """Raised when a domain, code, or addon does not exist."""

    error_code = "not_found"
    http_status = 404

    def __init__(self, resource: str, key: str) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}")


class ConflictError(GatewayError):
    """Raised when a unique resource already exists."""

    error_code = "conflict"
    http_status = 409


class DomainExistsError(ConflictError):
    """Raised when a domain is already registered."""

    error_code = "domain_exists"

    def __init__(self, domain_url: str) -> None:
        self.domain_url = domain_url
        super().__init__(f"Domain already registered: {domain_url}")


class DuplicateCodeError(ConflictError):
    """Raised when a vanity code is already taken."""

    error_code = "duplicate_code"

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Vanity code already exists: {code}")


class RateLimitError(GatewayError):
    """Raised when a rate-limit window is exhausted. Caller must back off."""

    error_code = "rate_limited"
    http_status = 429

    def __init__(
        self,
        identifier: str,
        action_type: str,
        limit: int,
        reset_at: datetime,
        retry_after: int,
    ) -> None:
        self.identifier = identifier
        self.action_type = action_type
        self.limit = limit
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {action_type}. Retry after {retry_after}s")


class FeatureUnavailableError(GatewayError):
    """Raised when the backing feature of an endpoint is disabled."""

    error_code = "feature_unavailable"
    http_status = 501

    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Feature unavailable: {feature}")


class DependencyError(GatewayError):
    """Raised when an outbound call (verification, webhook, directory) fails."""

    error_code = "dependency_error"
    http_status = 502

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service} failed: {message}")


class InternalError(GatewayError):
    """Raised when persistence fails unexpectedly."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Internal error: {message}")
