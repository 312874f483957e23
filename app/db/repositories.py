"""
Repositories - Typed, parameterized data access per entity.

NO STRING SQL - Every statement is built with the SQLAlchemy expression API.
Counters are changed with single atomic statements (UPDATE ... RETURNING,
INSERT ... ON CONFLICT DO UPDATE) so concurrent requests never lose updates.
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

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


class DomainRepository:
    """Data access for authorized_domains."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, domain_id: UUID) -> AuthorizedDomain | None:
        stmt = select(AuthorizedDomain).where(AuthorizedDomain.id == domain_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_url(self, domain_url: str) -> AuthorizedDomain | None:
        stmt = select(AuthorizedDomain).where(AuthorizedDomain.domain_url == domain_url)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_key_prefix(self, key_prefix: str) -> AuthorizedDomain | None:
        stmt = select(AuthorizedDomain).where(AuthorizedDomain.api_key_prefix == key_prefix)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_page(
        self, status: str | None, offset: int, limit: int
    ) -> tuple[Sequence[AuthorizedDomain], int]:
        stmt = select(AuthorizedDomain)
        count_stmt = select(func.count()).select_from(AuthorizedDomain)
        if status:
            stmt = stmt.where(AuthorizedDomain.status == status)
            count_stmt = count_stmt.where(AuthorizedDomain.status == status)
        stmt = stmt.order_by(AuthorizedDomain.created_at.desc()).offset(offset).limit(limit)

        rows = (await self.db.execute(stmt)).scalars().all()
        total = (await self.db.execute(count_stmt)).scalar_one()
        return rows, total

    async def active_hosts(self) -> list[str]:
        stmt = select(AuthorizedDomain.domain_url).where(AuthorizedDomain.status == "active")
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def active_ids(self) -> list[UUID]:
        stmt = (
            select(AuthorizedDomain.id)
            .where(AuthorizedDomain.status == "active")
            .order_by(AuthorizedDomain.last_verification_attempt_at.asc().nulls_first())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def claim_for_verification(self, domain_id: UUID, now: datetime, cutoff: datetime) -> bool:
        """Stamp the attempt time only if nobody verified this domain since ``cutoff``."""
        stmt = (
            update(AuthorizedDomain)
            .where(
                AuthorizedDomain.id == domain_id,
                or_(
                    AuthorizedDomain.last_verification_attempt_at.is_(None),
                    AuthorizedDomain.last_verification_attempt_at < cutoff,
                ),
            )
            .values(last_verification_attempt_at=now)
            .returning(AuthorizedDomain.id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def increment_verification_failures(self, domain_id: UUID) -> int:
        stmt = (
            update(AuthorizedDomain)
            .where(AuthorizedDomain.id == domain_id)
            .values(
                verification_failures=AuthorizedDomain.verification_failures + 1,
                verification_status="failed",
            )
            .returning(AuthorizedDomain.verification_failures)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def suspend(self, domain_id: UUID, reason: str, now: datetime) -> bool:
        """Suspend unless already suspended. True when this call did it."""
        stmt = (
            update(AuthorizedDomain)
            .where(AuthorizedDomain.id == domain_id, AuthorizedDomain.status != "suspended")
            .values(status="suspended", suspended_at=now, suspended_reason=reason)
            .returning(AuthorizedDomain.id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record_webhook_result(self, domain_id: UUID, success: bool, now: datetime) -> None:
        if success:
            values: dict[str, Any] = {"webhook_failures": 0, "webhook_last_sent_at": now}
        else:
            values = {"webhook_failures": AuthorizedDomain.webhook_failures + 1}
        stmt = update(AuthorizedDomain).where(AuthorizedDomain.id == domain_id).values(**values)
        await self.db.execute(stmt)

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(AuthorizedDomain.status, func.count()).group_by(AuthorizedDomain.status)
        result = await self.db.execute(stmt)
        return {status: count for status, count in result.all()}

    async def count_verified_active(self) -> int:
        stmt = (
            select(func.count())
            .select_from(AuthorizedDomain)
            .where(
                AuthorizedDomain.status == "active",
                AuthorizedDomain.verification_status == "verified",
            )
        )
        return (await self.db.execute(stmt)).scalar_one()


class VanityCodeRepository:
    """Data access for vanity_codes and vanity_code_usage."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, code_id: UUID) -> VanityCode | None:
        stmt = select(VanityCode).where(VanityCode.id == code_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> VanityCode | None:
        stmt = select(VanityCode).where(VanityCode.vanity_code == code)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_page(
        self, status: str | None, offset: int, limit: int
    ) -> tuple[Sequence[VanityCode], int]:
        stmt = select(VanityCode)
        count_stmt = select(func.count()).select_from(VanityCode)
        if status:
            stmt = stmt.where(VanityCode.status == status)
            count_stmt = count_stmt.where(VanityCode.status == status)
        stmt = stmt.order_by(VanityCode.created_at.desc()).offset(offset).limit(limit)

        rows = (await self.db.execute(stmt)).scalars().all()
        total = (await self.db.execute(count_stmt)).scalar_one()
        return rows, total

    async def codes_for_ids(self, code_ids: Sequence[UUID]) -> list[str]:
        stmt = select(VanityCode.vanity_code).where(VanityCode.id.in_(code_ids))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def increment_usage(self, code_id: UUID) -> int:
        stmt = (
            update(VanityCode)
            .where(VanityCode.id == code_id)
            .values(usage_count=VanityCode.usage_count + 1)
            .returning(VanityCode.usage_count)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def record_conversion(self, code: str, value: Decimal) -> None:
        stmt = (
            update(VanityCode)
            .where(VanityCode.vanity_code == code)
            .values(
                conversion_count=VanityCode.conversion_count + 1,
                revenue_generated=VanityCode.revenue_generated + value,
            )
        )
        await self.db.execute(stmt)

    async def add_usage(self, usage: VanityCodeUsage) -> None:
        self.db.add(usage)
        await self.db.flush()

    async def expire_due(self, now: datetime) -> list[str]:
        """Flip active codes past expires_at to expired. Returns the affected codes."""
        stmt = (
            update(VanityCode)
            .where(
                VanityCode.status == "active",
                VanityCode.expires_at.is_not(None),
                VanityCode.expires_at < now,
            )
            .values(status="expired")
            .returning(VanityCode.vanity_code)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def set_status(self, code_ids: Sequence[UUID], status: str) -> int:
        stmt = (
            update(VanityCode)
            .where(VanityCode.id.in_(code_ids))
            .values(status=status)
            .returning(VanityCode.id)
        )
        result = await self.db.execute(stmt)
        return len(result.scalars().all())

    async def delete_many(self, code_ids: Sequence[UUID]) -> int:
        stmt = delete(VanityCode).where(VanityCode.id.in_(code_ids)).returning(VanityCode.id)
        result = await self.db.execute(stmt)
        return len(result.scalars().all())


class UsageEventRepository:
    """Data access for usage_events (append-only)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, event: UsageEvent) -> UsageEvent:
        self.db.add(event)
        await self.db.flush()
        return event

    async def counts_since(self, since: datetime) -> dict[str, int]:
        stmt = (
            select(UsageEvent.event_type, UsageEvent.status, func.count())
            .where(UsageEvent.created_at >= since)
            .group_by(UsageEvent.event_type, UsageEvent.status)
        )
        result = await self.db.execute(stmt)
        return {f"{event_type}:{status}": count for event_type, status, count in result.all()}


class RateLimitRepository:
    """Data access for rate_limit_windows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def try_increment(
        self,
        identifier: str,
        action_type: str,
        window_start: datetime,
        window_end: datetime,
        limit: int,
    ) -> int | None:
        """
        Atomically count one request in the window unless it is already full.

        Returns the new count, or None when the window was at its limit (the
        row is left untouched in that case).
        """
        stmt = (
            pg_insert(RateLimitWindow)
            .values(
                id=uuid4(),
                identifier=identifier,
                action_type=action_type,
                window_start=window_start,
                window_end=window_end,
                request_count=1,
                is_blocked=False,
            )
            .on_conflict_do_update(
                constraint="uq_rate_limit_windows_key",
                set_={"request_count": RateLimitWindow.request_count + 1},
                where=RateLimitWindow.request_count < limit,
            )
            .returning(RateLimitWindow.request_count)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_blocked(self, identifier: str, action_type: str, window_start: datetime) -> None:
        stmt = (
            update(RateLimitWindow)
            .where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.action_type == action_type,
                RateLimitWindow.window_start == window_start,
            )
            .values(is_blocked=True)
        )
        await self.db.execute(stmt)

    async def block(self, identifier: str, now: datetime, until: datetime) -> None:
        """Record a hard block for ``identifier`` until ``until``."""
        stmt = (
            pg_insert(RateLimitWindow)
            .values(
                id=uuid4(),
                identifier=identifier,
                action_type="blocked",
                window_start=now,
                window_end=until,
                request_count=0,
                is_blocked=True,
            )
            .on_conflict_do_nothing(constraint="uq_rate_limit_windows_key")
        )
        await self.db.execute(stmt)

    async def blocked_until(self, identifier: str, now: datetime) -> datetime | None:
        stmt = select(func.max(RateLimitWindow.window_end)).where(
            RateLimitWindow.identifier == identifier,
            RateLimitWindow.action_type == "blocked",
            RateLimitWindow.is_blocked.is_(True),
            RateLimitWindow.window_end > now,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_expired(self, before: datetime) -> int:
        stmt = (
            delete(RateLimitWindow)
            .where(RateLimitWindow.window_end < before)
            .returning(RateLimitWindow.id)
        )
        result = await self.db.execute(stmt)
        return len(result.scalars().all())

    async def count_blocked(self, now: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(RateLimitWindow)
            .where(RateLimitWindow.is_blocked.is_(True), RateLimitWindow.window_end > now)
        )
        return (await self.db.execute(stmt)).scalar_one()


class SecurityLogRepository:
    """Data access for security_logs (append-only)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, entry: SecurityLogEntry) -> SecurityLogEntry:
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_page(
        self,
        severity: str | None,
        event_type: str | None,
        offset: int,
        limit: int,
    ) -> tuple[Sequence[SecurityLogEntry], int]:
        stmt = select(SecurityLogEntry)
        count_stmt = select(func.count()).select_from(SecurityLogEntry)
        if severity:
            stmt = stmt.where(SecurityLogEntry.severity == severity)
            count_stmt = count_stmt.where(SecurityLogEntry.severity == severity)
        if event_type:
            stmt = stmt.where(SecurityLogEntry.event_type == event_type)
            count_stmt = count_stmt.where(SecurityLogEntry.event_type == event_type)
        stmt = stmt.order_by(SecurityLogEntry.created_at.desc()).offset(offset).limit(limit)

        rows = (await self.db.execute(stmt)).scalars().all()
        total = (await self.db.execute(count_stmt)).scalar_one()
        return rows, total

    async def counts_by_severity(self, since: datetime) -> dict[str, int]:
        stmt = (
            select(SecurityLogEntry.severity, func.count())
            .where(SecurityLogEntry.created_at >= since)
            .group_by(SecurityLogEntry.severity)
        )
        result = await self.db.execute(stmt)
        return {severity: count for severity, count in result.all()}

    async def counts_by_event_type(self, since: datetime) -> dict[str, int]:
        stmt = (
            select(SecurityLogEntry.event_type, func.count())
            .where(SecurityLogEntry.created_at >= since)
            .group_by(SecurityLogEntry.event_type)
        )
        result = await self.db.execute(stmt)
        return {event_type: count for event_type, count in result.all()}

    async def delete_older_than(self, before: datetime) -> int:
        stmt = (
            delete(SecurityLogEntry)
            .where(SecurityLogEntry.created_at < before)
            .returning(SecurityLogEntry.id)
        )
        result = await self.db.execute(stmt)
        return len(result.scalars().all())


class CommissionRepository:
    """Data access for commission_rules and commission_logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_rule(self, scope: str, scope_key: str) -> CommissionRule | None:
        stmt = select(CommissionRule).where(
            CommissionRule.scope == scope,
            CommissionRule.scope_key == scope_key,
            CommissionRule.is_active.is_(True),
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_rule(self, scope: str, scope_key: str, rules: dict[str, Any]) -> None:
        stmt = (
            pg_insert(CommissionRule)
            .values(id=uuid4(), scope=scope, scope_key=scope_key, rules=rules, is_active=True)
            .on_conflict_do_update(
                constraint="uq_commission_rules_scope_key",
                set_={"rules": rules, "is_active": True, "updated_at": func.now()},
            )
        )
        await self.db.execute(stmt)

    async def add_log(self, log: CommissionLog) -> None:
        self.db.add(log)
        await self.db.flush()

    async def performance_aggregates(
        self, affiliate_id: int, since: datetime
    ) -> tuple[Decimal | None, int, Decimal | None, Decimal | None]:
        """Return (volume, transactions, avg effective rate, stddev effective rate)."""
        stmt = select(
            func.sum(CommissionLog.sale_amount),
            func.count(CommissionLog.id),
            func.avg(CommissionLog.effective_rate),
            func.stddev(CommissionLog.effective_rate),
        ).where(CommissionLog.affiliate_id == affiliate_id, CommissionLog.created_at >= since)
        result = await self.db.execute(stmt)
        volume, transactions, avg_rate, stddev_rate = result.one()
        return volume, transactions or 0, avg_rate, stddev_rate


async def count_rows(db: AsyncSession, model: type[Any]) -> int:
    stmt = select(func.count()).select_from(model)
    return (await db.execute(stmt)).scalar_one()
