"""
Diagnostics - Read-only health snapshot for operators.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.migration_runner import check_migrations_status
from app.db.models import (
    AuthorizedDomain,
    CommissionLog,
    CommissionRule,
    RateLimitWindow,
    SecurityLogEntry,
    UsageEvent,
    VanityCode,
    VanityCodeUsage,
)
from app.db.repositories import (
    DomainRepository,
    RateLimitRepository,
    SecurityLogRepository,
    UsageEventRepository,
    count_rows,
)
from app.models.api import DiagnosticsResponse

logger = get_logger(__name__)

COUNTED_TABLES = (
    AuthorizedDomain,
    VanityCode,
    VanityCodeUsage,
    UsageEvent,
    RateLimitWindow,
    SecurityLogEntry,
    CommissionRule,
    CommissionLog,
)


async def database_ok(db: AsyncSession) -> bool:
    """One SELECT 1 round trip."""
    try:
        await db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error("database_check_failed", error=str(e))
        return False


class DiagnosticsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def migrations(self) -> dict[str, Any]:
        # Alembic's API is synchronous
        return await asyncio.to_thread(check_migrations_status)

    async def table_counts(self) -> dict[str, int]:
        return {model.__tablename__: await count_rows(self.db, model) for model in COUNTED_TABLES}

    async def snapshot(self) -> DiagnosticsResponse:
        now = datetime.now(UTC)
        ok = await database_ok(self.db)
        if not ok:
            return DiagnosticsResponse(
                success=False,
                version=settings.api_version,
                database_ok=False,
                migrations={},
                table_counts={},
                usage_last_24h={},
                active_domains=0,
                verified_domains=0,
                security_events_today={},
                blocked_rate_windows=0,
                generated_at=now,
            )

        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        by_status = await DomainRepository(self.db).count_by_status()
        return DiagnosticsResponse(
            success=True,
            version=settings.api_version,
            database_ok=True,
            migrations=await self.migrations(),
            table_counts=await self.table_counts(),
            usage_last_24h=await UsageEventRepository(self.db).counts_since(now - timedelta(hours=24)),
            active_domains=by_status.get("active", 0),
            verified_domains=await DomainRepository(self.db).count_verified_active(),
            security_events_today=await SecurityLogRepository(self.db).counts_by_severity(start_of_day),
            blocked_rate_windows=await RateLimitRepository(self.db).count_blocked(now),
            generated_at=now,
        )
