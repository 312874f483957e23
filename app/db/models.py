"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class AuthorizedDomain(Base):
    """
    ORM model for authorized_domains table.

    One row per satellite domain. Holds credentials (hashed), status,
    rate-limit configuration, webhook subscription, and free-form metadata
    (registered addons and the configuration overlay).
    """

    __tablename__ = "authorized_domains"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Canonical bare host (see app.services.credentials.normalize_domain)
    domain_url: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Credentials (hashed with Argon2id)
    api_key_prefix: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    api_key_hash: Mapped[str] = mapped_column(Text, nullable=False)
    api_secret_hash: Mapped[str] = mapped_column(Text, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    verification_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="unverified"
    )
    verification_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_verification_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    suspended_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Limits and permissions
    rate_limit_per_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rate_limit_per_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_daily_requests: Mapped[int | None] = mapped_column(Integer, nullable=True)
    security_level: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    allowed_endpoints: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, default=list
    )

    # Webhook subscription
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_events: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    webhook_last_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    webhook_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Metadata (registered addons, configuration overlay)
    # Note: Database column is "metadata", but Python uses "domain_metadata" to avoid SQLAlchemy conflicts
    domain_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    # Audit
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'inactive', 'suspended')",
            name="ck_authorized_domains_status",
        ),
        CheckConstraint(
            "verification_status IN ('unverified', 'verified', 'failed')",
            name="ck_authorized_domains_verification_status",
        ),
        CheckConstraint(
            "security_level IN ('low', 'medium', 'high')",
            name="ck_authorized_domains_security_level",
        ),
        CheckConstraint("verification_failures >= 0", name="ck_authorized_domains_failures"),
        Index("idx_authorized_domains_status", "status"),
        Index("idx_authorized_domains_last_attempt", "last_verification_attempt_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AuthorizedDomain(id={self.id}, domain_url={self.domain_url}, "
            f"status={self.status}, verification_status={self.verification_status})>"
        )


class VanityCode(Base):
    """
    ORM model for vanity_codes table.

    Human-friendly alias mapped to an affiliate code.
    """

    __tablename__ = "vanity_codes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    vanity_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    affiliate_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    affiliate_code: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Counters (incremented atomically in SQL)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conversion_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    revenue_generated: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    usages: Mapped[list["VanityCodeUsage"]] = relationship(
        back_populates="vanity_code",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive', 'expired', 'suspended')",
            name="ck_vanity_codes_status",
        ),
        CheckConstraint("usage_count >= 0", name="ck_vanity_codes_usage_count"),
        Index("idx_vanity_codes_affiliate_id", "affiliate_id"),
        Index("idx_vanity_codes_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<VanityCode(id={self.id}, code={self.vanity_code}, "
            f"affiliate_id={self.affiliate_id}, status={self.status})>"
        )


class VanityCodeUsage(Base):
    """ORM model for vanity_code_usage table. One row per successful validation."""

    __tablename__ = "vanity_code_usage"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    vanity_code_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("vanity_codes.id", ondelete="CASCADE"),
        nullable=False,
    )
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    converted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conversion_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    vanity_code: Mapped[VanityCode] = relationship(back_populates="usages")

    __table_args__ = (
        Index("idx_vanity_code_usage_code_created", "vanity_code_id", "created_at"),
    )


class UsageEvent(Base):
    """
    ORM model for usage_events table.

    Append-only record of validation/conversion/tracking calls.
    """

    __tablename__ = "usage_events"

    # Generated in Python so callers always get the id back
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    domain_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("authorized_domains.id", ondelete="SET NULL"),
        nullable=True,
    )
    domain_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    affiliate_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Monetary fields - fixed precision, never floats
    conversion_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(8, 4), nullable=True)
    commission_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # At-least-once delivery: stored for callers, never deduplicated
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    api_version: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('validation', 'conversion', 'track')",
            name="ck_usage_events_event_type",
        ),
        CheckConstraint(
            "status IN ('success', 'failed', 'pending', 'timeout')",
            name="ck_usage_events_status",
        ),
        CheckConstraint(
            "conversion_value IS NULL OR conversion_value >= 0",
            name="ck_usage_events_conversion_value",
        ),
        Index("idx_usage_events_domain_created", "domain_id", "created_at"),
        Index("idx_usage_events_code_created", "code", "created_at"),
        Index("idx_usage_events_type_created", "event_type", "created_at"),
        Index("idx_usage_events_idempotency_key", "idempotency_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageEvent(id={self.id}, event_type={self.event_type}, "
            f"status={self.status}, code={self.code})>"
        )


class RateLimitWindow(Base):
    """
    ORM model for rate_limit_windows table.

    One row per identifier x action x window, incremented atomically.
    """

    __tablename__ = "rate_limit_windows"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint(
            "identifier", "action_type", "window_start", name="uq_rate_limit_windows_key"
        ),
        CheckConstraint("request_count >= 0", name="ck_rate_limit_windows_count"),
        Index("idx_rate_limit_windows_window_end", "window_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitWindow(identifier={self.identifier}, action={self.action_type}, "
            f"start={self.window_start}, count={self.request_count})>"
        )


class SecurityLogEntry(Base):
    """
    ORM model for security_logs table.

    Append-only audit trail of security-relevant events.
    """

    __tablename__ = "security_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    context: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_security_logs_severity",
        ),
        Index("idx_security_logs_created", "created_at"),
        Index("idx_security_logs_severity_created", "severity", "created_at"),
        Index("idx_security_logs_event_type", "event_type"),
    )


class CommissionRule(Base):
    """ORM model for commission_rules table. One rule layer per scope/key."""

    __tablename__ = "commission_rules"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    scope_key: Mapped[str] = mapped_column(String(100), nullable=False, default="*")
    rules: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("scope", "scope_key", name="uq_commission_rules_scope_key"),
        CheckConstraint(
            "scope IN ('global', 'affiliate', 'group')", name="ck_commission_rules_scope"
        ),
    )


class CommissionLog(Base):
    """
    ORM model for commission_logs table.

    Audit record of every commission calculation, with its full breakdown.
    """

    __tablename__ = "commission_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    affiliate_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    affiliate_code: Mapped[str] = mapped_column(String(100), nullable=False)
    sale_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    effective_rate: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    calculation_method: Mapped[str] = mapped_column(String(20), nullable=False)
    bonus_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    time_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    breakdown: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("sale_amount > 0", name="ck_commission_logs_sale_amount"),
        CheckConstraint("commission_amount >= 0", name="ck_commission_logs_commission"),
        Index("idx_commission_logs_affiliate_created", "affiliate_id", "created_at"),
    )
