"""
Tests for the fixed-window rate limiter.

The repository is replaced by an in-memory fake with the same conditional
increment semantics as the PostgreSQL upsert.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from starlette.datastructures import Headers

from app.config import settings
from app.exceptions import InternalError, RateLimitError
from app.models.api import RateLimitTier, Severity
from app.models.domain import RateLimitDecision
from app.services.rate_limiter import (
    HOUR,
    RateLimiter,
    rate_limit_headers,
    rate_limit_identifier,
    resolve_client_ip,
    tier_limit,
    window_bounds,
)
from app.services.security_log import IP_BLOCKED, RATE_LIMIT_EXCEEDED
from tests.conftest import make_domain_record


class FakeRateLimitRepository:
    """Dict-backed stand-in for RateLimitRepository."""

    def __init__(self) -> None:
        self.counts: dict[tuple[str, str, datetime], int] = {}
        self.blocked_windows: set[tuple[str, str, datetime]] = set()
        self.blocks: dict[str, datetime] = {}

    async def try_increment(self, identifier, action_type, window_start, window_end, limit):
        key = (identifier, action_type, window_start)
        current = self.counts.get(key, 0)
        if current >= limit:
            return None
        self.counts[key] = current + 1
        return current + 1

    async def mark_blocked(self, identifier, action_type, window_start):
        self.blocked_windows.add((identifier, action_type, window_start))

    async def block(self, identifier, now, until):
        self.blocks.setdefault(identifier, until)

    async def blocked_until(self, identifier, now):
        until = self.blocks.get(identifier)
        return until if until is not None and until > now else None


@pytest.fixture
def fake_repo() -> FakeRateLimitRepository:
    return FakeRateLimitRepository()


@pytest.fixture
def security_log() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def limiter(db_session, fake_repo, security_log) -> RateLimiter:
    limiter = RateLimiter(db_session, security_log)
    limiter.repo = fake_repo
    return limiter


class TestWindowBounds:
    def test_aligned_to_window(self, fixed_datetime: datetime):
        start, end = window_bounds(fixed_datetime + timedelta(minutes=17, seconds=5), HOUR)
        assert start == fixed_datetime
        assert end == fixed_datetime + timedelta(hours=1)

    def test_boundary_belongs_to_next_window(self, fixed_datetime: datetime):
        start, _ = window_bounds(fixed_datetime + timedelta(hours=1), HOUR)
        assert start == fixed_datetime + timedelta(hours=1)


class TestResolveClientIp:
    def test_first_public_forwarded_address(self):
        headers = Headers({"X-Forwarded-For": "10.0.0.1, 8.8.8.8, 1.1.1.1"})
        assert resolve_client_ip(headers, "172.16.0.5") == "8.8.8.8"

    def test_private_only_falls_back_to_peer(self):
        headers = Headers({"X-Forwarded-For": "10.0.0.1, 192.168.1.1"})
        assert resolve_client_ip(headers, "172.16.0.5") == "172.16.0.5"

    def test_garbage_ignored(self):
        headers = Headers({"X-Real-IP": "not-an-ip"})
        assert resolve_client_ip(headers, None) is None

    def test_identifier_prefers_key(self):
        assert rate_limit_identifier("affcd_abc", "203.0.113.9") == "key:affcd_abc"
        assert rate_limit_identifier(None, "203.0.113.9") == "ip:203.0.113.9"
        assert rate_limit_identifier(None, None) == "ip:unknown"


class TestCheckAndRecord:
    """N requests pass, the N+1th is rejected, the next window starts fresh."""

    @pytest.mark.asyncio
    async def test_limit_enforced_per_window(
        self, limiter: RateLimiter, monkeypatch: pytest.MonkeyPatch, fixed_datetime: datetime
    ):
        monkeypatch.setattr(settings, "rate_limit_registration_per_hour", 3)

        for expected_remaining in (2, 1, 0):
            decision = await limiter.check_and_record(
                "key:affcd_abc", RateLimitTier.REGISTRATION, now=fixed_datetime
            )
            assert decision.allowed
            assert decision.remaining == expected_remaining

        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check_and_record(
                "key:affcd_abc", RateLimitTier.REGISTRATION, now=fixed_datetime + timedelta(minutes=5)
            )
        assert exc_info.value.limit == 3
        assert exc_info.value.reset_at == fixed_datetime + timedelta(hours=1)
        assert exc_info.value.retry_after == 55 * 60

        # First request of the next window succeeds
        decision = await limiter.check_and_record(
            "key:affcd_abc", RateLimitTier.REGISTRATION, now=fixed_datetime + timedelta(hours=1)
        )
        assert decision.allowed
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_rejection_is_logged_and_window_marked(
        self,
        limiter: RateLimiter,
        fake_repo: FakeRateLimitRepository,
        security_log: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
        fixed_datetime: datetime,
    ):
        monkeypatch.setattr(settings, "rate_limit_registration_per_hour", 1)
        await limiter.check_and_record("ip:203.0.113.9", RateLimitTier.REGISTRATION, now=fixed_datetime)

        with pytest.raises(RateLimitError):
            await limiter.check_and_record(
                "ip:203.0.113.9", RateLimitTier.REGISTRATION, now=fixed_datetime
            )

        assert ("ip:203.0.113.9", "registration", fixed_datetime) in fake_repo.blocked_windows
        security_log.log_event.assert_awaited_once()
        assert security_log.log_event.call_args[0][:2] == (RATE_LIMIT_EXCEEDED, Severity.MEDIUM)

    @pytest.mark.asyncio
    async def test_identifiers_are_independent(
        self, limiter: RateLimiter, monkeypatch: pytest.MonkeyPatch, fixed_datetime: datetime
    ):
        monkeypatch.setattr(settings, "rate_limit_registration_per_hour", 1)
        await limiter.check_and_record("key:a", RateLimitTier.REGISTRATION, now=fixed_datetime)
        decision = await limiter.check_and_record("key:b", RateLimitTier.REGISTRATION, now=fixed_datetime)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_domain_minute_and_daily_windows(
        self, limiter: RateLimiter, fixed_datetime: datetime
    ):
        domain = make_domain_record(rate_limit_per_minute=2, max_daily_requests=100)

        await limiter.check_and_record("key:x", RateLimitTier.TRACKING, domain, now=fixed_datetime)
        await limiter.check_and_record("key:x", RateLimitTier.TRACKING, domain, now=fixed_datetime)
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check_and_record("key:x", RateLimitTier.TRACKING, domain, now=fixed_datetime)
        assert exc_info.value.action_type == "tracking:minute"

        decision = await limiter.check_and_record(
            "key:x", RateLimitTier.TRACKING, domain, now=fixed_datetime + timedelta(minutes=1)
        )
        assert decision.allowed

    def test_domain_hourly_override_only_tightens(self):
        limiter = RateLimiter(AsyncMock())
        loose = make_domain_record(rate_limit_per_hour=10**9)
        tight = make_domain_record(rate_limit_per_hour=50)

        assert limiter.windows_for(RateLimitTier.TRACKING, loose) == [
            ("tracking", HOUR, tier_limit(RateLimitTier.TRACKING))
        ]
        assert limiter.windows_for(RateLimitTier.TRACKING, tight) == [("tracking", HOUR, 50)]

    @pytest.mark.asyncio
    async def test_allowlist_skips_counting(
        self,
        limiter: RateLimiter,
        fake_repo: FakeRateLimitRepository,
        monkeypatch: pytest.MonkeyPatch,
    ):
        monkeypatch.setattr(settings, "rate_limit_allowlist", "203.0.113.9")
        decision = await limiter.check_and_record("ip:203.0.113.9", RateLimitTier.TRACKING)
        assert decision.allowed
        assert fake_repo.counts == {}

    @pytest.mark.asyncio
    async def test_denylist_always_rejects(
        self, limiter: RateLimiter, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "rate_limit_denylist", "key:affcd_bad")
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check_and_record("key:affcd_bad", RateLimitTier.TRACKING)
        assert exc_info.value.limit == 0

    @pytest.mark.asyncio
    async def test_blocked_ip_rejected_even_with_key(
        self,
        limiter: RateLimiter,
        fake_repo: FakeRateLimitRepository,
        fixed_datetime: datetime,
    ):
        fake_repo.blocks["ip:203.0.113.9"] = fixed_datetime + timedelta(minutes=10)
        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check_and_record(
                "key:affcd_abc",
                RateLimitTier.TRACKING,
                ip_address="203.0.113.9",
                now=fixed_datetime,
            )
        assert exc_info.value.identifier == "ip:203.0.113.9"
        assert exc_info.value.retry_after == 600

    @pytest.mark.asyncio
    async def test_no_applicable_window_is_an_internal_error(
        self, limiter: RateLimiter, monkeypatch: pytest.MonkeyPatch, fixed_datetime: datetime
    ):
        monkeypatch.setattr(limiter, "windows_for", lambda tier, domain: [])

        with pytest.raises(InternalError):
            await limiter.check_and_record("key:affcd_abc", RateLimitTier.DEFAULT, now=fixed_datetime)


class TestRecordFailure:
    @pytest.mark.asyncio
    async def test_blocks_after_threshold(
        self,
        limiter: RateLimiter,
        fake_repo: FakeRateLimitRepository,
        security_log: AsyncMock,
        monkeypatch: pytest.MonkeyPatch,
        fixed_datetime: datetime,
    ):
        monkeypatch.setattr(settings, "failure_block_threshold_per_minute", 3)

        results = [
            await limiter.record_failure("203.0.113.9", now=fixed_datetime) for _ in range(5)
        ]

        # Block is created exactly once, on the first failure past the threshold
        assert results == [False, False, False, True, False]
        assert fake_repo.blocks["ip:203.0.113.9"] == fixed_datetime + timedelta(
            minutes=settings.failure_block_minutes
        )
        security_log.log_event.assert_awaited_once()
        assert security_log.log_event.call_args[0][:2] == (IP_BLOCKED, Severity.CRITICAL)

    @pytest.mark.asyncio
    async def test_no_ip_is_ignored(self, limiter: RateLimiter, fake_repo):
        assert await limiter.record_failure(None) is False
        assert fake_repo.counts == {}


class TestRateLimitHeaders:
    def test_allowed(self, fixed_datetime: datetime):
        decision = RateLimitDecision(
            allowed=True,
            identifier="key:a",
            action_type="tracking",
            limit=100,
            remaining=99,
            reset_at=fixed_datetime,
            retry_after=0,
        )
        headers = rate_limit_headers(decision)
        assert headers == {
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "99",
            "X-RateLimit-Reset": str(int(fixed_datetime.timestamp())),
        }

    def test_denied_includes_retry_after(self, fixed_datetime: datetime):
        decision = RateLimitDecision(
            allowed=False,
            identifier="key:a",
            action_type="tracking",
            limit=100,
            remaining=-1,
            reset_at=fixed_datetime,
            retry_after=30,
        )
        headers = rate_limit_headers(decision)
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "30"
