"""Initial gateway schema.

Revision ID: 2026_10_18_0001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import INET, JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        )
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.text("NOW()"),
            )
        )
    return columns


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def upgrade() -> None:
    """Create the gateway tables."""

    # ========================================================================
    # authorized_domains
    # ========================================================================
    op.create_table(
        "authorized_domains",
        _uuid_pk(),
        sa.Column("domain_url", sa.String(255), nullable=False),
        sa.Column("api_key_prefix", sa.String(20), nullable=False),
        sa.Column("api_key_hash", sa.Text(), nullable=False),
        sa.Column("api_secret_hash", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "verification_status", sa.String(20), nullable=False, server_default="unverified"
        ),
        sa.Column("verification_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_verification_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_reason", sa.String(255), nullable=True),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=True),
        sa.Column("rate_limit_per_hour", sa.Integer(), nullable=True),
        sa.Column("max_daily_requests", sa.Integer(), nullable=True),
        sa.Column("security_level", sa.String(10), nullable=False, server_default="medium"),
        sa.Column(
            "allowed_endpoints",
            sa.ARRAY(sa.String()),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("webhook_secret", sa.String(255), nullable=True),
        sa.Column(
            "webhook_events", sa.ARRAY(sa.String()), nullable=False, server_default=sa.text("'{}'")
        ),
        sa.Column("webhook_last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("domain_url", name="uq_authorized_domains_domain_url"),
        sa.UniqueConstraint("api_key_prefix", name="uq_authorized_domains_api_key_prefix"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'inactive', 'suspended')",
            name="ck_authorized_domains_status",
        ),
        sa.CheckConstraint(
            "verification_status IN ('unverified', 'verified', 'failed')",
            name="ck_authorized_domains_verification_status",
        ),
        sa.CheckConstraint(
            "security_level IN ('low', 'medium', 'high')",
            name="ck_authorized_domains_security_level",
        ),
        sa.CheckConstraint("verification_failures >= 0", name="ck_authorized_domains_failures"),
    )
    op.create_index("idx_authorized_domains_status", "authorized_domains", ["status"])
    op.create_index(
        "idx_authorized_domains_last_attempt",
        "authorized_domains",
        ["last_verification_attempt_at"],
    )

    # ========================================================================
    # vanity_codes / vanity_code_usage
    # ========================================================================
    op.create_table(
        "vanity_codes",
        _uuid_pk(),
        sa.Column("vanity_code", sa.String(50), nullable=False),
        sa.Column("affiliate_id", sa.BigInteger(), nullable=False),
        sa.Column("affiliate_code", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revenue_generated", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("vanity_code", name="uq_vanity_codes_vanity_code"),
        sa.CheckConstraint(
            "status IN ('active', 'inactive', 'expired', 'suspended')",
            name="ck_vanity_codes_status",
        ),
        sa.CheckConstraint("usage_count >= 0", name="ck_vanity_codes_usage_count"),
    )
    op.create_index("idx_vanity_codes_affiliate_id", "vanity_codes", ["affiliate_id"])
    op.create_index("idx_vanity_codes_status_expires", "vanity_codes", ["status", "expires_at"])

    op.create_table(
        "vanity_code_usage",
        _uuid_pk(),
        sa.Column("vanity_code_id", UUID(as_uuid=True), nullable=False),
        sa.Column("domain", sa.String(255), nullable=True),
        sa.Column("ip_address", INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("converted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["vanity_code_id"],
            ["vanity_codes.id"],
            name="fk_vanity_code_usage_code",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "idx_vanity_code_usage_code_created", "vanity_code_usage", ["vanity_code_id", "created_at"]
    )

    # ========================================================================
    # usage_events
    # ========================================================================
    op.create_table(
        "usage_events",
        _uuid_pk(),
        sa.Column("domain_id", UUID(as_uuid=True), nullable=True),
        sa.Column("domain_from", sa.String(255), nullable=True),
        sa.Column("domain_to", sa.String(255), nullable=True),
        sa.Column("code", sa.String(100), nullable=True),
        sa.Column("affiliate_id", sa.BigInteger(), nullable=True),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("ip_address", INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("conversion_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("commission_rate", sa.Numeric(8, 4), nullable=True),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("api_version", sa.String(20), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["domain_id"],
            ["authorized_domains.id"],
            name="fk_usage_events_domain",
            ondelete="SET NULL",
        ),
        sa.CheckConstraint(
            "event_type IN ('validation', 'conversion', 'track')",
            name="ck_usage_events_event_type",
        ),
        sa.CheckConstraint(
            "status IN ('success', 'failed', 'pending', 'timeout')",
            name="ck_usage_events_status",
        ),
        sa.CheckConstraint(
            "conversion_value IS NULL OR conversion_value >= 0",
            name="ck_usage_events_conversion_value",
        ),
    )
    op.create_index("idx_usage_events_domain_created", "usage_events", ["domain_id", "created_at"])
    op.create_index("idx_usage_events_code_created", "usage_events", ["code", "created_at"])
    op.create_index("idx_usage_events_type_created", "usage_events", ["event_type", "created_at"])
    op.create_index(
        "idx_usage_events_idempotency_key",
        "usage_events",
        ["idempotency_key"],
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )

    # ========================================================================
    # rate_limit_windows
    # ========================================================================
    op.create_table(
        "rate_limit_windows",
        _uuid_pk(),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.UniqueConstraint(
            "identifier", "action_type", "window_start", name="uq_rate_limit_windows_key"
        ),
        sa.CheckConstraint("request_count >= 0", name="ck_rate_limit_windows_count"),
    )
    op.create_index("idx_rate_limit_windows_window_end", "rate_limit_windows", ["window_end"])

    # ========================================================================
    # security_logs
    # ========================================================================
    op.create_table(
        "security_logs",
        _uuid_pk(),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("ip_address", INET(), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("domain_id", UUID(as_uuid=True), nullable=True),
        sa.Column("context", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "severity IN ('low', 'medium', 'high', 'critical')",
            name="ck_security_logs_severity",
        ),
    )
    op.create_index("idx_security_logs_created", "security_logs", ["created_at"])
    op.create_index(
        "idx_security_logs_severity_created", "security_logs", ["severity", "created_at"]
    )
    op.create_index("idx_security_logs_event_type", "security_logs", ["event_type"])

    # ========================================================================
    # commission_rules / commission_logs
    # ========================================================================
    op.create_table(
        "commission_rules",
        _uuid_pk(),
        sa.Column("scope", sa.String(20), nullable=False),
        sa.Column("scope_key", sa.String(100), nullable=False, server_default="*"),
        sa.Column("rules", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("scope", "scope_key", name="uq_commission_rules_scope_key"),
        sa.CheckConstraint(
            "scope IN ('global', 'affiliate', 'group')", name="ck_commission_rules_scope"
        ),
    )

    op.create_table(
        "commission_logs",
        _uuid_pk(),
        sa.Column("affiliate_id", sa.BigInteger(), nullable=False),
        sa.Column("affiliate_code", sa.String(100), nullable=False),
        sa.Column("sale_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("effective_rate", sa.Numeric(8, 4), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("calculation_method", sa.String(20), nullable=False),
        sa.Column("bonus_multiplier", sa.Numeric(8, 4), nullable=False),
        sa.Column("time_multiplier", sa.Numeric(8, 4), nullable=False),
        sa.Column("breakdown", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(updated=False),
        sa.CheckConstraint("sale_amount > 0", name="ck_commission_logs_sale_amount"),
        sa.CheckConstraint("commission_amount >= 0", name="ck_commission_logs_commission"),
    )
    op.create_index(
        "idx_commission_logs_affiliate_created",
        "commission_logs",
        ["affiliate_id", "created_at"],
    )


def downgrade() -> None:
    """Drop the gateway tables."""
    op.drop_index("idx_commission_logs_affiliate_created", table_name="commission_logs")
    op.drop_table("commission_logs")
    op.drop_table("commission_rules")

    op.drop_index("idx_security_logs_event_type", table_name="security_logs")
    op.drop_index("idx_security_logs_severity_created", table_name="security_logs")
    op.drop_index("idx_security_logs_created", table_name="security_logs")
    op.drop_table("security_logs")

    op.drop_index("idx_rate_limit_windows_window_end", table_name="rate_limit_windows")
    op.drop_table("rate_limit_windows")

    op.drop_index("idx_usage_events_idempotency_key", table_name="usage_events")
    op.drop_index("idx_usage_events_type_created", table_name="usage_events")
    op.drop_index("idx_usage_events_code_created", table_name="usage_events")
    op.drop_index("idx_usage_events_domain_created", table_name="usage_events")
    op.drop_table("usage_events")

    op.drop_index("idx_vanity_code_usage_code_created", table_name="vanity_code_usage")
    op.drop_table("vanity_code_usage")
    op.drop_index("idx_vanity_codes_status_expires", table_name="vanity_codes")
    op.drop_index("idx_vanity_codes_affiliate_id", table_name="vanity_codes")
    op.drop_table("vanity_codes")

    op.drop_index("idx_authorized_domains_last_attempt", table_name="authorized_domains")
    op.drop_index("idx_authorized_domains_status", table_name="authorized_domains")
    op.drop_table("authorized_domains")
