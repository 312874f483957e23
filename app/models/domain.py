"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from app.models.api import (
    DomainStatus,
    EventStatus,
    EventType,
    InvalidCodeReason,
    Permission,
    SecurityLevel,
    VanityCodeStatus,
    VerificationStatus,
)


@dataclass(frozen=True)
class DomainRecord:
    """Immutable snapshot of an authorized domain. Never carries secrets."""

    domain_id: UUID
    domain_url: str
    api_key_prefix: str
    status: DomainStatus
    verification_status: VerificationStatus
    verification_failures: int
    security_level: SecurityLevel
    rate_limit_per_minute: int | None
    rate_limit_per_hour: int | None
    max_daily_requests: int | None
    allowed_endpoints: tuple[str, ...]
    webhook_url: str | None
    webhook_events: tuple[str, ...]
    created_at: datetime
    suspended_reason: str | None = None
    last_verified_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate domain record fields."""
        if not self.domain_url:
            raise ValueError("domain_url cannot be empty")
        if self.verification_failures < 0:
            raise ValueError(f"verification_failures cannot be negative: {self.verification_failures}")

    def is_authorized(self, now: datetime, provisioning_window: timedelta) -> bool:
        """Active + verified domains pass; pending ones only inside the provisioning window."""
        if (
            self.status is DomainStatus.ACTIVE
            and self.verification_status is VerificationStatus.VERIFIED
        ):
            return True
        return (
            self.status is DomainStatus.PENDING
            and self.verification_status is not VerificationStatus.FAILED
            and now - self.created_at <= provisioning_window
        )

    def permits(self, permission: Permission) -> bool:
        """Empty allowed_endpoints means every permission is granted."""
        return not self.allowed_endpoints or permission.value in self.allowed_endpoints


@dataclass(frozen=True)
class IssuedCredentials:
    """Plaintext credentials, returned exactly once at creation or rotation."""

    domain_id: UUID
    api_key: str
    api_secret: str
    api_key_prefix: str

    def __post_init__(self) -> None:
        if len(self.api_key) < 20:
            raise ValueError("api_key must be at least 20 characters")


@dataclass(frozen=True)
class RequestContext:
    """Who is calling: resolved once per request by the API layer."""

    ip_address: str | None
    user_agent: str | None = None
    referrer: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate-limit check."""

    allowed: bool
    identifier: str
    action_type: str
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one outbound domain verification."""

    domain_id: UUID
    success: bool
    status_code: int | None
    error: str | None
    verification_failures: int
    status: DomainStatus
    verification_status: VerificationStatus
    network_error: bool = False

    @property
    def suspended(self) -> bool:
        return self.status is DomainStatus.SUSPENDED


@dataclass(frozen=True)
class VanityCodeSnapshot:
    """Cached view of a vanity code used by the resolver."""

    vanity_code_id: UUID
    vanity_code: str
    affiliate_id: int
    affiliate_code: str
    status: VanityCodeStatus
    expires_at: datetime | None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass(frozen=True)
class CodeValidation:
    """Result of resolving a vanity or affiliate code."""

    valid: bool
    affiliate_id: int | None = None
    affiliate_code: str | None = None
    reason: InvalidCodeReason | None = None
    vanity_code_id: UUID | None = None

    def __post_init__(self) -> None:
        if self.valid and self.reason is not None:
            raise ValueError("A valid code cannot carry a failure reason")
        if not self.valid and self.reason is None:
            raise ValueError("An invalid code must carry a failure reason")

    @classmethod
    def rejected(cls, reason: InvalidCodeReason) -> "CodeValidation":
        return cls(valid=False, reason=reason)


@dataclass(frozen=True)
class AffiliateProfile:
    """Affiliate as exposed by the external Affiliate Directory."""

    affiliate_id: int
    affiliate_code: str
    status: str
    group: str | None = None
    created_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class PerformanceMetrics:
    """Rolling performance aggregates used for bonus rules."""

    monthly_volume: Decimal = Decimal("0")
    transactions: int = 0
    conversion_rate: Decimal = Decimal("0")
    consistency_score: Decimal = Decimal("0")


@dataclass(frozen=True)
class CommissionBreakdown:
    base_commission: Decimal
    bonus_multiplier: Decimal
    performance_bonus: Decimal
    time_multiplier: Decimal
    time_adjustment: Decimal
    rules_applied: tuple[str, ...]
    calculation_method: str


@dataclass(frozen=True)
class CommissionResult:
    """Outcome of one commission calculation."""

    commission_amount: Decimal
    currency: str
    affiliate_code: str
    sale_amount: Decimal
    effective_rate: Decimal
    calculated_at: datetime
    breakdown: CommissionBreakdown

    def __post_init__(self) -> None:
        if self.commission_amount < 0:
            raise ValueError(f"Commission cannot be negative: {self.commission_amount}")


@dataclass(frozen=True)
class IngestedEvent:
    """A persisted usage event as returned to callers."""

    event_id: UUID
    event_type: EventType
    status: EventStatus
    created_at: datetime
    commission_amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class BatchItemOutcome:
    index: int
    success: bool
    event_id: UUID | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchResult:
    """Per-item results of a batch, in input order."""

    outcomes: tuple[BatchItemOutcome, ...] = field(default_factory=tuple)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return self.processed - self.succeeded


@dataclass(frozen=True)
class SweepReport:
    domains_verified: int = 0
    domains_failed: int = 0
    codes_expired: int = 0
    security_logs_deleted: int = 0
    rate_windows_deleted: int = 0
    errors: tuple[str, ...] = ()
