"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "AFFCD Gateway"
    api_version: str = "1.0.0"
    api_description: str = "Cross-domain affiliate tracking gateway"
    environment: str = "production"  # production, staging, development, test

    # Credentials
    # Derives the per-domain HMAC secret from the API key (openssl rand -hex 32)
    signing_master_key: str = ""
    api_key_prefix: str = "affcd_"

    # Admin Authentication - HS256 JWT issued by the operator's identity provider
    admin_jwt_secret: str = ""
    admin_jwt_algorithm: str = "HS256"
    admin_role: str = "admin"

    # Signature & Timestamp validation
    signed_endpoints_required: bool = True
    signature_max_skew_seconds: int = 300

    # Rate limiting (requests per hour per tier)
    rate_limit_registration_per_hour: int = 100
    rate_limit_tracking_per_hour: int = 10_000
    rate_limit_configuration_per_hour: int = 500
    rate_limit_default_per_hour: int = 1_000
    rate_limit_allowlist: str = ""  # Comma-separated IPs or key prefixes
    rate_limit_denylist: str = ""  # Comma-separated IPs or key prefixes
    failure_block_threshold_per_minute: int = 10
    failure_block_threshold_per_hour: int = 60
    failure_block_minutes: int = 30

    # Domain authorization
    provisioning_window_hours: int = 24
    verification_path: str = "/wp-json/wp/v2/"
    verification_timeout_seconds: float = 30.0
    max_verification_failures: int = 5
    verification_sweep_delay_seconds: float = 1.0
    verification_sweep_min_interval_hours: int = 20

    # Caching (seconds)
    domain_cache_ttl: int = 300
    negative_domain_cache_ttl: int = 60
    vanity_code_cache_ttl: int = 300
    cors_allowlist_cache_ttl: int = 60
    affiliate_cache_ttl: int = 300
    cache_max_entries: int = 10_000

    # CORS
    cors_extra_origins: str = ""  # Comma-separated allow-list entries

    # Event ingestion
    max_batch_size: int = 100
    default_currency: str = "USD"

    # Commission
    currency_rates: dict[str, Decimal] = {
        "USD_EUR": Decimal("0.85"),
        "USD_GBP": Decimal("0.73"),
        "EUR_USD": Decimal("1.18"),
        "GBP_USD": Decimal("1.37"),
    }
    performance_window_days: int = 30

    # Affiliate Directory (external business object store)
    affiliate_directory_url: str = ""
    affiliate_directory_token: str = ""
    affiliate_directory_timeout_seconds: float = 5.0

    # Webhooks
    webhook_timeout_seconds: float = 10.0
    referral_webhook_enabled: bool = True
    alert_webhook_url: str = ""

    # Security log
    security_log_retention_days: int = 90

    # Periodic sweeps
    sweeps_enabled: bool = False
    sweep_interval_seconds: int = 86_400

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "affcd-gateway"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        # Without a master key every domain would share a guessable signing secret
        if self.environment == "production" and len(self.signing_master_key) < 32:
            errors.append("SIGNING_MASTER_KEY must be at least 32 characters in production")

        if self.admin_jwt_secret and len(self.admin_jwt_secret) < 32:
            errors.append("ADMIN_JWT_SECRET must be at least 32 characters when set")

        if self.max_verification_failures < 1:
            errors.append("MAX_VERIFICATION_FAILURES must be at least 1")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def cors_extra_origin_list(self) -> list[str]:
        """CORS allow-list entries configured outside the domain registry."""
        return _split_csv(self.cors_extra_origins)

    @property
    def rate_limit_allowlist_entries(self) -> frozenset[str]:
        return frozenset(_split_csv(self.rate_limit_allowlist))

    @property
    def rate_limit_denylist_entries(self) -> frozenset[str]:
        return frozenset(_split_csv(self.rate_limit_denylist))


def _split_csv(value: str) -> list[str]:
    items = []
    for item in value.split(","):
        item = item.strip()
        if item and item not in items:
            items.append(item)
    return items


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
