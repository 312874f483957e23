"""
Rate Limiter - Fixed-window counters stored in rate_limit_windows.

Checking and recording are one atomic statement per window (conditional
upsert), so concurrent requests can never both take the last slot.

Identifiers:
    key:<api key prefix>   authenticated callers
    ip:<client ip>         public/webhook endpoints and the failure counter
"""

import ipaddress
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.repositories import RateLimitRepository
from app.exceptions import InternalError, RateLimitError
from app.models.api import RateLimitTier, Severity
from app.models.domain import DomainRecord, RateLimitDecision
from app.observability.metrics import metrics
from app.services.security_log import IP_BLOCKED, RATE_LIMIT_EXCEEDED, SecurityLogService

logger = get_logger(__name__)

MINUTE = 60
HOUR = 3600
DAY = 86400

FAILURE_ACTION = "auth_failure"
_NO_CEILING = 2**31 - 1
DENYLIST_RETRY_SECONDS = HOUR

FORWARDED_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def window_bounds(now: datetime, seconds: int) -> tuple[datetime, datetime]:
    """Fixed window containing ``now``, aligned to the unix epoch."""
    epoch = int(now.timestamp())
    start = epoch - (epoch % seconds)
    window_start = datetime.fromtimestamp(start, UTC)
    return window_start, window_start + timedelta(seconds=seconds)


def _is_public(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def resolve_client_ip(headers: Mapping[str, str], peer: str | None) -> str | None:
    """
    First public address from the forwarding headers, else the peer address.

    ``headers`` must be case-insensitive (starlette Headers) or lowercase.
    """
    for header in FORWARDED_HEADERS:
        value = headers.get(header)
        if not value:
            continue
        for candidate in value.split(","):
            candidate = candidate.strip()
            if _is_public(candidate):
                return candidate
    return peer


def rate_limit_identifier(api_key_prefix: str | None, client_ip: str | None) -> str:
    if api_key_prefix:
        return f"key:{api_key_prefix}"
    return f"ip:{client_ip or 'unknown'}"


def tier_limit(tier: RateLimitTier) -> int:
    match tier:
        case RateLimitTier.REGISTRATION:
            return settings.rate_limit_registration_per_hour
        case RateLimitTier.TRACKING:
            return settings.rate_limit_tracking_per_hour
        case RateLimitTier.CONFIGURATION:
            return settings.rate_limit_configuration_per_hour
        case RateLimitTier.DEFAULT:
            return settings.rate_limit_default_per_hour


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Headers attached to every response that went through the limiter."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(decision.remaining, 0)),
        "X-RateLimit-Reset": str(int(decision.reset_at.timestamp())),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(decision.retry_after)
    return headers


def _listed(identifier: str, entries: frozenset[str]) -> bool:
    # Entries are bare IPs / key prefixes or fully qualified identifiers
    _, _, bare = identifier.partition(":")
    return identifier in entries or bare in entries


class RateLimiter:
    """Per-identifier, per-tier request budgets."""

    def __init__(self, db: AsyncSession, security_log: SecurityLogService | None = None):
        self.db = db
        self.repo = RateLimitRepository(db)
        self.security_log = security_log

    def windows_for(
        self, tier: RateLimitTier, domain: DomainRecord | None
    ) -> list[tuple[str, int, int]]:
        """(action_type, window seconds, limit) for every window that applies."""
        hourly = tier_limit(tier)
        windows: list[tuple[str, int, int]] = []
        if domain is not None and domain.rate_limit_per_minute:
            windows.append((f"{tier.value}:minute", MINUTE, domain.rate_limit_per_minute))
        if domain is not None and domain.rate_limit_per_hour:
            hourly = min(hourly, domain.rate_limit_per_hour)
        windows.append((tier.value, HOUR, hourly))
        if domain is not None and domain.max_daily_requests:
            windows.append((f"{tier.value}:day", DAY, domain.max_daily_requests))
        return windows

    async def allow(
        self,
        identifier: str,
        action_type: str,
        limit: int,
        window_seconds: int = HOUR,
        now: datetime | None = None,
    ) -> RateLimitDecision:
        """Count one request in a single window. Never raises."""
        now = now or datetime.now(UTC)
        window_start, window_end = window_bounds(now, window_seconds)
        count = await self.repo.try_increment(
            identifier, action_type, window_start, window_end, limit
        )
        if count is None:
            await self.repo.mark_blocked(identifier, action_type, window_start)
            return RateLimitDecision(
                allowed=False,
                identifier=identifier,
                action_type=action_type,
                limit=limit,
                remaining=0,
                reset_at=window_end,
                retry_after=max(1, int((window_end - now).total_seconds())),
            )
        return RateLimitDecision(
            allowed=True,
            identifier=identifier,
            action_type=action_type,
            limit=limit,
            remaining=limit - count,
            reset_at=window_end,
            retry_after=0,
        )

    async def check_and_record(
        self,
        identifier: str,
        tier: RateLimitTier,
        domain: DomainRecord | None = None,
        ip_address: str | None = None,
        now: datetime | None = None,
    ) -> RateLimitDecision:
        """
        Admit or reject one request across every window for the tier.

        Returns the tightest allowed decision (for response headers).

        Raises:
            RateLimitError: denylisted, hard-blocked, or any window exhausted
        """
        now = now or datetime.now(UTC)
        action_type = tier.value

        if _listed(identifier, settings.rate_limit_denylist_entries):
            reset_at = now + timedelta(seconds=DENYLIST_RETRY_SECONDS)
            metrics.record_rate_limit(action_type, False)
            logger.warning("rate_limit_denylisted", identifier=identifier)
            raise RateLimitError(identifier, action_type, 0, reset_at, DENYLIST_RETRY_SECONDS)

        if _listed(identifier, settings.rate_limit_allowlist_entries):
            limit = tier_limit(tier)
            metrics.record_rate_limit(action_type, True)
            return RateLimitDecision(
                allowed=True,
                identifier=identifier,
                action_type=action_type,
                limit=limit,
                remaining=limit,
                reset_at=window_bounds(now, HOUR)[1],
                retry_after=0,
            )

        # A blocked IP stays blocked even when it presents an API key
        candidates = [identifier]
        if ip_address and f"ip:{ip_address}" != identifier:
            candidates.append(f"ip:{ip_address}")
        for blocked_identifier in candidates:
            blocked_until = await self.repo.blocked_until(blocked_identifier, now)
            if blocked_until is not None:
                retry_after = max(1, int((blocked_until - now).total_seconds()))
                metrics.record_rate_limit(action_type, False)
                raise RateLimitError(blocked_identifier, "blocked", 0, blocked_until, retry_after)

        tightest: RateLimitDecision | None = None
        for window_action, seconds, limit in self.windows_for(tier, domain):
            decision = await self.allow(identifier, window_action, limit, seconds, now)
            if not decision.allowed:
                await self.db.commit()
                metrics.record_rate_limit(action_type, False)
                logger.warning(
                    "rate_limit_exceeded",
                    identifier=identifier,
                    action_type=window_action,
                    limit=limit,
                    retry_after=decision.retry_after,
                )
                if self.security_log is not None:
                    await self.security_log.log_event(
                        RATE_LIMIT_EXCEEDED,
                        Severity.MEDIUM,
                        ip_address=ip_address,
                        actor=identifier,
                        domain_id=domain.domain_id if domain else None,
                        context={"action_type": window_action, "limit": limit},
                    )
                raise RateLimitError(
                    identifier, window_action, limit, decision.reset_at, decision.retry_after
                )
            if tightest is None or decision.remaining < tightest.remaining:
                tightest = decision

        await self.db.commit()
        metrics.record_rate_limit(action_type, True)
        if tightest is None:
            raise InternalError(f"no rate-limit window applies to {action_type}")
        return tightest

    async def record_failure(self, ip_address: str | None, now: datetime | None = None) -> bool:
        """
        Count a failed authentication from ``ip_address``.

        Past the per-minute or per-hour threshold the IP is blocked for
        FAILURE_BLOCK_MINUTES. Returns True when this call created the block.
        """
        if not ip_address:
            return False
        now = now or datetime.now(UTC)
        identifier = f"ip:{ip_address}"

        # Counting never denies: the limit is only a ceiling for the upsert
        per_minute = await self.allow(identifier, f"{FAILURE_ACTION}:minute", _NO_CEILING, MINUTE, now)
        per_hour = await self.allow(identifier, FAILURE_ACTION, _NO_CEILING, HOUR, now)
        minute_count = per_minute.limit - per_minute.remaining
        hour_count = per_hour.limit - per_hour.remaining

        if (
            minute_count <= settings.failure_block_threshold_per_minute
            and hour_count <= settings.failure_block_threshold_per_hour
        ):
            await self.db.commit()
            return False

        if await self.repo.blocked_until(identifier, now) is not None:
            await self.db.commit()
            return False

        until = now + timedelta(minutes=settings.failure_block_minutes)
        await self.repo.block(identifier, now, until)
        await self.db.commit()

        if self.security_log is not None:
            await self.security_log.log_event(
                IP_BLOCKED,
                Severity.CRITICAL,
                ip_address=ip_address,
                actor=identifier,
                context={
                    "failures_last_minute": minute_count,
                    "failures_last_hour": hour_count,
                    "blocked_until": until.isoformat(),
                },
            )
        else:
            logger.critical("ip_blocked", ip_address=ip_address, blocked_until=until.isoformat())
        return True

    async def cleanup(self, older_than: timedelta = timedelta(days=1)) -> int:
        """Delete windows that ended more than ``older_than`` ago."""
        deleted = await self.repo.delete_expired(datetime.now(UTC) - older_than)
        await self.db.commit()
        logger.info("rate_limit_windows_cleaned", deleted=deleted)
        return deleted
