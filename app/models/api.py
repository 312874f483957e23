"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Free-form ``metadata``/``configuration`` payloads are the only exception: they
are caller-owned key/value bags stored as JSONB.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

CODE_PATTERN = r"^[A-Za-z0-9_-]{3,50}$"
ADDON_SLUG_PATTERN = r"^[a-z0-9_-]{1,64}$"


class DomainStatus(str, Enum):
    """Authorized domain status enumeration."""

    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class VerificationStatus(str, Enum):
    """Domain verification status enumeration."""

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"


class SecurityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VanityCodeStatus(str, Enum):
    """Vanity code status enumeration."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class EventType(str, Enum):
    """Usage event type enumeration."""

    VALIDATION = "validation"
    CONVERSION = "conversion"
    TRACK = "track"


class EventStatus(str, Enum):
    """Usage event status enumeration."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    TIMEOUT = "timeout"


class Severity(str, Enum):
    """Security log severity enumeration."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Permission(str, Enum):
    """Endpoint permission names checked against a domain's allowed_endpoints."""

    TRACK_EVENTS = "track_events"
    VALIDATE_CODES = "validate_codes"
    VIEW_CONFIGURATION = "view_configuration"
    MANAGE_CONFIGURATION = "manage_configuration"
    VIEW_ADDONS = "view_addons"
    MANAGE_ADDONS = "manage_addons"


class RateLimitTier(str, Enum):
    """Rate-limit class selected by the route being called."""

    REGISTRATION = "registration"
    TRACKING = "tracking"
    CONFIGURATION = "configuration"
    DEFAULT = "default"


class InvalidCodeReason(str, Enum):
    """Typed reasons a code fails validation."""

    INVALID_CODE = "invalid_code"
    INACTIVE_CODE = "inactive_code"
    EXPIRED_CODE = "expired_code"
    UNAUTHORISED_DOMAIN = "unauthorised_domain"


# ============================================================================
# Common Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Error body returned with every non-2xx response."""

    success: bool = False
    error: str
    message: str


class HealthResponse(BaseModel):
    """GET /v1/health response."""

    success: bool
    ok: bool
    time: datetime
    version: str


# ============================================================================
# Event Ingestion Models
# ============================================================================


def _normalize_currency(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValueError(f"Invalid currency code: {value}")
    return value


class TrackRequest(BaseModel):
    """POST /v1/track request body."""

    code: str = Field(..., pattern=CODE_PATTERN)
    domain_to: str | None = Field(None, max_length=255)
    idempotency_key: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConvertRequest(BaseModel):
    """POST /v1/convert request body."""

    code: str = Field(..., pattern=CODE_PATTERN)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)
    reference: str | None = Field(None, max_length=255)
    domain_to: str | None = Field(None, max_length=255)
    idempotency_key: str | None = Field(None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _normalize_currency(v)


class TrackBatchItem(TrackRequest):
    """One track event inside a batch."""

    type: Literal["track"]


class ConvertBatchItem(ConvertRequest):
    """One conversion event inside a batch."""

    type: Literal["convert"]


BatchItem = Annotated[TrackBatchItem | ConvertBatchItem, Field(discriminator="type")]


class BatchRequest(BaseModel):
    """
    POST /v1/batch request body.

    Items stay raw here so one malformed event is reported per item
    instead of rejecting the whole request.
    """

    events: list[dict[str, Any]] = Field(..., min_length=1)


class EventResponse(BaseModel):
    """Response for a single ingested event."""

    success: bool
    event_id: UUID
    event_type: EventType
    status: EventStatus
    commission_amount: Decimal | None = None
    currency: str | None = None
    tracked_at: datetime


class BatchItemResult(BaseModel):
    """Per-item outcome of a batch, in input order."""

    index: int
    success: bool
    event_id: UUID | None = None
    error: str | None = None


class BatchResponse(BaseModel):
    """POST /v1/batch response."""

    success: bool
    processed: int
    succeeded: int
    failed: int
    results: list[BatchItemResult]
    tracked_at: datetime


# ============================================================================
# Code Validation Models
# ============================================================================


class ValidateCodeRequest(BaseModel):
    """POST /v1/validate-code request body."""

    code: str = Field(..., min_length=1, max_length=100)
    domain: str | None = Field(None, max_length=255)
    session_id: str | None = Field(None, max_length=255)
    referrer: str | None = Field(None, max_length=2048)


class ValidateCodeResponse(BaseModel):
    """POST /v1/validate-code response."""

    success: bool
    valid: bool
    affiliate_id: int | None = None
    affiliate_code: str | None = None
    reason: InvalidCodeReason | None = None


# ============================================================================
# Webhook Models
# ============================================================================


class ReferralUpdateRequest(BaseModel):
    """POST /v1/webhook/referral-update request body."""

    referral_id: str = Field(..., min_length=1, max_length=255)
    affiliate_code: str = Field(..., pattern=CODE_PATTERN)
    status: str = Field(..., min_length=1, max_length=50)
    amount: Decimal | None = Field(None, ge=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(None, min_length=3, max_length=3)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _normalize_currency(v)


class ReferralUpdateResponse(BaseModel):
    success: bool
    event_id: UUID
    received_at: datetime


# ============================================================================
# Addon Models
# ============================================================================


class AddonRegisterRequest(BaseModel):
    """POST /v1/addons/register request body."""

    addon_slug: str = Field(..., pattern=ADDON_SLUG_PATTERN)
    addon_name: str = Field(..., min_length=1, max_length=255)
    version: str = Field(..., min_length=1, max_length=50)
    capabilities: list[str] = Field(default_factory=list)


class AddonUnregisterRequest(BaseModel):
    """POST /v1/addons/unregister request body."""

    addon_slug: str = Field(..., pattern=ADDON_SLUG_PATTERN)


class AddonInfo(BaseModel):
    """An addon registered by a satellite domain."""

    name: str
    version: str
    capabilities: list[str] = Field(default_factory=list)
    registered_at: datetime
    last_seen: datetime
    status: str = "active"


class AddonRegisterResponse(BaseModel):
    success: bool
    addon_slug: str
    registered_at: datetime
    message: str


class AddonUnregisterResponse(BaseModel):
    success: bool
    addon_slug: str
    message: str


class AddonStatusResponse(BaseModel):
    """GET /v1/addons/status response (single addon or summary)."""

    success: bool
    addon_slug: str | None = None
    addon: AddonInfo | None = None
    total_addons: int
    registered_addons: dict[str, AddonInfo] = Field(default_factory=dict)


class AddonListResponse(BaseModel):
    success: bool
    domain: str
    addons: dict[str, AddonInfo]
    total: int


# ============================================================================
# Configuration Models
# ============================================================================


class RateLimitSettings(BaseModel):
    per_minute: int | None
    per_hour: int | None
    max_daily: int | None


class CacheSettings(BaseModel):
    enabled: bool = True
    duration: int = 900


class SecuritySettings(BaseModel):
    require_https: bool = True
    signature_required: bool
    timestamp_window: int
    security_level: SecurityLevel


class ClientConfig(BaseModel):
    """Per-domain configuration served to satellites."""

    api_version: str
    domain: str
    endpoints: list[str]
    rate_limits: RateLimitSettings
    cache: CacheSettings
    security: SecuritySettings
    features: list[str]
    configuration: dict[str, Any] = Field(default_factory=dict)


class ClientConfigResponse(BaseModel):
    success: bool
    config: ClientConfig
    retrieved_at: datetime


class ConfigUpdateRequest(BaseModel):
    """POST /v1/config/sync and PUT /v1/config/update request body."""

    config: dict[str, Any] = Field(default_factory=dict)


class ConfigurationResponse(BaseModel):
    success: bool
    configuration: dict[str, Any]
    timestamp: datetime


# ============================================================================
# Admin - Domain Models
# ============================================================================


class DomainCreateRequest(BaseModel):
    """POST /v1/admin/domains request body."""

    domain_url: str = Field(..., min_length=1, max_length=255)
    security_level: SecurityLevel = SecurityLevel.MEDIUM
    rate_limit_per_minute: int | None = Field(None, gt=0)
    rate_limit_per_hour: int | None = Field(None, gt=0)
    max_daily_requests: int | None = Field(None, gt=0)
    allowed_endpoints: list[Permission] = Field(default_factory=list)
    webhook_url: str | None = Field(None, max_length=2048)
    webhook_secret: str | None = Field(None, min_length=16, max_length=255)
    webhook_events: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("https://", "http://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return v


class DomainUpdateRequest(BaseModel):
    """PUT /v1/admin/domains/{id} request body. Only set fields are applied."""

    status: DomainStatus | None = None
    security_level: SecurityLevel | None = None
    rate_limit_per_minute: int | None = Field(None, gt=0)
    rate_limit_per_hour: int | None = Field(None, gt=0)
    max_daily_requests: int | None = Field(None, gt=0)
    allowed_endpoints: list[Permission] | None = None
    webhook_url: str | None = Field(None, max_length=2048)
    webhook_secret: str | None = Field(None, min_length=16, max_length=255)
    webhook_events: list[str] | None = None
    metadata: dict[str, Any] | None = None


class DomainStatusRequest(BaseModel):
    status: DomainStatus
    reason: str | None = Field(None, max_length=255)


class DomainResponse(BaseModel):
    """Authorized domain as exposed to administrators. Never carries secrets."""

    domain_id: UUID
    domain_url: str
    status: DomainStatus
    verification_status: VerificationStatus
    verification_failures: int
    security_level: SecurityLevel
    rate_limit_per_minute: int | None
    rate_limit_per_hour: int | None
    max_daily_requests: int | None
    allowed_endpoints: list[str]
    webhook_url: str | None
    webhook_events: list[str]
    api_key_prefix: str
    suspended_reason: str | None
    last_verified_at: datetime | None
    created_at: datetime


class DomainCredentialsResponse(BaseModel):
    """Issued credentials. The plaintext key and secret are shown once."""

    success: bool
    domain: DomainResponse
    api_key: str
    api_secret: str


class DomainListResponse(BaseModel):
    success: bool
    domains: list[DomainResponse]
    total: int
    page: int
    per_page: int


class VerificationResponse(BaseModel):
    success: bool
    domain_id: UUID
    status_code: int | None
    error: str | None
    verification_failures: int
    status: DomainStatus
    verification_status: VerificationStatus


# ============================================================================
# Admin - Vanity Code Models
# ============================================================================


class VanityCodeCreateRequest(BaseModel):
    """POST /v1/admin/vanity-codes request body."""

    vanity_code: str = Field(..., pattern=CODE_PATTERN)
    affiliate_id: int = Field(..., gt=0)
    affiliate_code: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=1000)
    expires_at: datetime | None = None


class VanityCodeUpdateRequest(BaseModel):
    description: str | None = Field(None, max_length=1000)
    status: VanityCodeStatus | None = None
    expires_at: datetime | None = None


class VanityCodeResponse(BaseModel):
    vanity_code_id: UUID
    vanity_code: str
    affiliate_id: int
    affiliate_code: str
    description: str | None
    status: VanityCodeStatus
    expires_at: datetime | None
    usage_count: int
    conversion_count: int
    revenue_generated: Decimal
    created_at: datetime


class VanityCodeListResponse(BaseModel):
    success: bool
    codes: list[VanityCodeResponse]
    total: int
    page: int
    per_page: int


class VanityCodeBulkRequest(BaseModel):
    action: Literal["activate", "deactivate", "delete"]
    ids: list[UUID] = Field(..., min_length=1, max_length=500)


class BulkOperationResponse(BaseModel):
    success: bool
    action: str
    affected: int


# ============================================================================
# Admin - Commission Models
# ============================================================================


class CommissionCalculateRequest(BaseModel):
    """POST /v1/admin/commissions/calculate request body."""

    sale_amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    affiliate_code: str = Field(..., min_length=1, max_length=100)
    currency: str | None = Field(None, min_length=3, max_length=3)
    apply_bonuses: bool = True
    apply_time_adjustments: bool = True
    include_breakdown: bool = False
    validate_thresholds: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _normalize_currency(v)


class CommissionBreakdownResponse(BaseModel):
    base_commission: Decimal
    bonus_multiplier: Decimal
    performance_bonus: Decimal
    time_multiplier: Decimal
    time_adjustment: Decimal
    rules_applied: list[str]
    calculation_method: str


class CommissionResponse(BaseModel):
    success: bool
    commission_amount: Decimal
    currency: str
    affiliate_code: str
    sale_amount: Decimal
    effective_rate: Decimal
    calculated_at: datetime
    breakdown: CommissionBreakdownResponse | None = None


# ============================================================================
# Admin - Security / Diagnostics Models
# ============================================================================


class SecurityLogResponse(BaseModel):
    log_id: UUID
    event_type: str
    severity: Severity
    ip_address: str | None
    actor: str | None
    domain_id: UUID | None
    context: dict[str, Any]
    created_at: datetime


class SecurityLogListResponse(BaseModel):
    success: bool
    logs: list[SecurityLogResponse]
    total: int
    page: int
    per_page: int


class SecurityStatsResponse(BaseModel):
    success: bool
    days: int
    by_severity: dict[str, int]
    by_event_type: dict[str, int]


class SweepResponse(BaseModel):
    success: bool
    domains_verified: int
    domains_failed: int
    codes_expired: int
    security_logs_deleted: int
    rate_windows_deleted: int
    errors: list[str]


class DiagnosticsResponse(BaseModel):
    """GET /v1/diagnostics response."""

    success: bool
    version: str
    database_ok: bool
    migrations: dict[str, Any]
    table_counts: dict[str, int]
    usage_last_24h: dict[str, int]
    active_domains: int
    verified_domains: int
    security_events_today: dict[str, int]
    blocked_rate_windows: int
    generated_at: datetime
