"""
Tests for domain authorization and outbound verification.

Verification runs against a fake repository holding one real row, and an
httpx.MockTransport answering with a scripted sequence of responses.
"""

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from app.db.models import AuthorizedDomain
from app.exceptions import AuthorizationError, NotFoundError, ValidationError
from app.models.api import DomainStatus, Permission, Severity, VerificationStatus
from app.services.domains import DomainService, authorize_domain, suspension_reason
from app.services.events import DomainSuspended, DomainVerified, EventBus
from app.services.security_log import DOMAIN_SUSPENDED
from tests.conftest import make_domain_record, make_domain_row, make_result


class TestAuthorizeDomain:
    """authorize_domain must raise for everything that is not allowed."""

    def test_active_verified_passes(self, fixed_datetime: datetime):
        authorize_domain(make_domain_record(), Permission.TRACK_EVENTS, now=fixed_datetime)

    def test_pending_inside_provisioning_window_passes(self, fixed_datetime: datetime):
        record = make_domain_record(
            status=DomainStatus.PENDING,
            verification_status=VerificationStatus.UNVERIFIED,
            created_at=fixed_datetime - timedelta(hours=2),
        )
        authorize_domain(record, now=fixed_datetime)

    def test_pending_after_provisioning_window_rejected(self, fixed_datetime: datetime):
        record = make_domain_record(
            status=DomainStatus.PENDING,
            verification_status=VerificationStatus.UNVERIFIED,
            created_at=fixed_datetime - timedelta(hours=25),
        )
        with pytest.raises(AuthorizationError) as exc_info:
            authorize_domain(record, now=fixed_datetime)
        assert exc_info.value.error_code == "domain_unauthorized"

    def test_pending_with_failed_verification_rejected(self, fixed_datetime: datetime):
        record = make_domain_record(
            status=DomainStatus.PENDING,
            verification_status=VerificationStatus.FAILED,
            created_at=fixed_datetime - timedelta(hours=1),
        )
        with pytest.raises(AuthorizationError):
            authorize_domain(record, now=fixed_datetime)

    @pytest.mark.parametrize("status", [DomainStatus.SUSPENDED, DomainStatus.INACTIVE])
    def test_non_active_rejected(self, status: DomainStatus, fixed_datetime: datetime):
        with pytest.raises(AuthorizationError):
            authorize_domain(make_domain_record(status=status), now=fixed_datetime)

    def test_active_but_unverified_rejected(self, fixed_datetime: datetime):
        record = make_domain_record(verification_status=VerificationStatus.UNVERIFIED)
        with pytest.raises(AuthorizationError):
            authorize_domain(record, now=fixed_datetime)

    def test_missing_permission_is_endpoint_forbidden(self, fixed_datetime: datetime):
        record = make_domain_record(allowed_endpoints=["validate_codes"])
        with pytest.raises(AuthorizationError) as exc_info:
            authorize_domain(record, Permission.TRACK_EVENTS, now=fixed_datetime)
        assert exc_info.value.error_code == "endpoint_forbidden"
        assert exc_info.value.required_permission == "track_events"

    def test_listed_permission_passes(self, fixed_datetime: datetime):
        record = make_domain_record(allowed_endpoints=["validate_codes"])
        authorize_domain(record, Permission.VALIDATE_CODES, now=fixed_datetime)


# ============================================================================
# Verification
# ============================================================================


class FakeDomainRepository:
    """Single-row stand-in with the same semantics as DomainRepository."""

    def __init__(self, row: AuthorizedDomain):
        self.row = row

    async def get(self, domain_id):
        return self.row if domain_id == self.row.id else None

    async def increment_verification_failures(self, domain_id):
        self.row.verification_failures += 1
        self.row.verification_status = VerificationStatus.FAILED.value
        return self.row.verification_failures

    async def suspend(self, domain_id, reason, now):
        if self.row.status == DomainStatus.SUSPENDED.value:
            return False
        self.row.status = DomainStatus.SUSPENDED.value
        self.row.suspended_reason = reason
        self.row.suspended_at = now
        return True

    async def active_ids(self):
        return [self.row.id]

    async def claim_for_verification(self, domain_id, now, cutoff):
        return True


def scripted_client(statuses: list[int | Exception]) -> httpx.AsyncClient:
    """HTTP client answering each request with the next scripted status."""
    script: Iterator[int | Exception] = iter(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        outcome = next(script)
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def build_service(db_session, cache, row: AuthorizedDomain, statuses, bus=None):
    bus = bus or EventBus()
    service = DomainService(
        db_session, cache, scripted_client(statuses), bus, security_log=AsyncMock()
    )
    fake = FakeDomainRepository(row)
    service.repo = fake
    service.credentials.repo = fake
    return service


class TestVerification:
    @pytest.mark.asyncio
    async def test_verification_url(self, db_session, cache):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        row = make_domain_row(domain_url="shop.example.com")
        service = DomainService(
            db_session,
            cache,
            httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            EventBus(),
            security_log=AsyncMock(),
        )
        service.repo = FakeDomainRepository(row)

        await service.verify(row.id)
        assert str(seen[0].url) == "https://shop.example.com/wp-json/wp/v2/"

    @pytest.mark.asyncio
    async def test_suspended_after_five_consecutive_failures(self, db_session, cache):
        """Five failures suspend exactly once; later failures do not re-suspend."""
        row = make_domain_row()
        bus = EventBus()
        suspended: list[DomainSuspended] = []

        async def on_suspended(event: DomainSuspended) -> None:
            suspended.append(event)

        bus.subscribe(DomainSuspended, on_suspended)
        service = build_service(db_session, cache, row, [500] * 6, bus=bus)

        results = [await service.verify(row.id) for _ in range(4)]
        assert [r.verification_failures for r in results] == [1, 2, 3, 4]
        assert all(r.status is DomainStatus.ACTIVE for r in results)
        assert results[-1].verification_status is VerificationStatus.FAILED

        fifth = await service.verify(row.id)
        assert fifth.status is DomainStatus.SUSPENDED
        assert row.suspended_reason == suspension_reason()
        assert len(suspended) == 1
        service.security_log.log_event.assert_awaited_once()
        assert service.security_log.log_event.call_args[0][:2] == (DOMAIN_SUSPENDED, Severity.HIGH)

        sixth = await service.verify(row.id)
        assert sixth.verification_failures == 6
        assert len(suspended) == 1

    @pytest.mark.asyncio
    async def test_success_while_suspended_keeps_failure_count(self, db_session, cache):
        row = make_domain_row(
            status=DomainStatus.SUSPENDED,
            verification_status=VerificationStatus.FAILED,
            verification_failures=5,
        )
        service = build_service(db_session, cache, row, [200, 200])

        result = await service.verify(row.id)
        assert result.success
        assert result.status is DomainStatus.SUSPENDED
        assert result.verification_status is VerificationStatus.VERIFIED
        assert result.verification_failures == 5

        # Reactivation followed by a success resets the counter
        await service.set_status(row.id, DomainStatus.ACTIVE)
        result = await service.verify(row.id)
        assert result.status is DomainStatus.ACTIVE
        assert result.verification_failures == 0

    @pytest.mark.asyncio
    async def test_success_promotes_pending(self, db_session, cache):
        row = make_domain_row(
            status=DomainStatus.PENDING, verification_status=VerificationStatus.UNVERIFIED
        )
        bus = EventBus()
        verified: list[DomainVerified] = []

        async def on_verified(event: DomainVerified) -> None:
            verified.append(event)

        bus.subscribe(DomainVerified, on_verified)
        service = build_service(db_session, cache, row, [200], bus=bus)

        result = await service.verify(row.id)
        assert result.status is DomainStatus.ACTIVE
        assert result.verification_status is VerificationStatus.VERIFIED
        assert row.last_verified_at is not None
        assert [event.domain_id for event in verified] == [row.id]

    @pytest.mark.asyncio
    async def test_network_error_counts_as_failure(self, db_session, cache):
        row = make_domain_row()
        service = build_service(db_session, cache, row, [httpx.ConnectError("refused")])

        result = await service.verify(row.id)
        assert not result.success
        assert result.network_error
        assert result.status_code is None
        assert result.verification_failures == 1
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_non_200_is_failure(self, db_session, cache):
        row = make_domain_row()
        service = build_service(db_session, cache, row, [404])

        result = await service.verify(row.id)
        assert not result.success
        assert not result.network_error
        assert result.error == "unexpected status 404"

    @pytest.mark.asyncio
    async def test_unknown_domain(self, db_session, cache):
        row = make_domain_row()
        service = build_service(db_session, cache, row, [])
        with pytest.raises(NotFoundError):
            await service.verify(make_domain_row().id)

    @pytest.mark.asyncio
    async def test_verify_all_counts(self, db_session, cache):
        row = make_domain_row()
        service = build_service(db_session, cache, row, [500])
        assert await service.verify_all(delay=0) == (0, 1)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, db_session, cache, bus):
        service = DomainService(db_session, cache, AsyncMock(), bus, security_log=AsyncMock())
        with pytest.raises(ValidationError):
            await service.update(make_domain_row().id, {"api_key_hash": "x"})
        db_session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_applies_fields(self, db_session, cache, bus):
        row = make_domain_row()
        db_session.execute = AsyncMock(return_value=make_result(row))
        service = DomainService(db_session, cache, AsyncMock(), bus, security_log=AsyncMock())

        record = await service.update(
            row.id,
            {
                "rate_limit_per_minute": 30,
                "allowed_endpoints": ["track_events"],
                "metadata": {"plan": "pro"},
                "status": "suspended",
            },
        )

        assert record.rate_limit_per_minute == 30
        assert record.allowed_endpoints == ("track_events",)
        assert record.status is DomainStatus.SUSPENDED
        assert row.domain_metadata == {"plan": "pro"}
        assert row.suspended_reason == "manual"

    @pytest.mark.asyncio
    async def test_delete_unknown(self, db_session, cache, bus):
        service = DomainService(db_session, cache, AsyncMock(), bus, security_log=AsyncMock())
        with pytest.raises(NotFoundError):
            await service.delete(make_domain_row().id)

    @pytest.mark.asyncio
    async def test_list_domains(self, db_session, cache, bus):
        rows = [make_domain_row(domain_url="a.example.com"), make_domain_row(domain_url="b.example.com")]
        db_session.execute = AsyncMock(
            side_effect=[make_result(rows=rows), make_result(scalar=2)]
        )
        service = DomainService(db_session, cache, AsyncMock(), bus, security_log=AsyncMock())

        records, total = await service.list_domains(page=1, per_page=10)
        assert [r.domain_url for r in records] == ["a.example.com", "b.example.com"]
        assert total == 2


def test_suspension_reason_names_threshold():
    assert suspension_reason() == "verification_failed_5_times"


def test_record_is_authorized_uses_created_at():
    now = datetime.now(UTC)
    record = make_domain_record(
        status=DomainStatus.PENDING,
        verification_status=VerificationStatus.UNVERIFIED,
        created_at=now - timedelta(hours=1),
    )
    assert record.is_authorized(now, timedelta(hours=24))
    assert not record.is_authorized(now, timedelta(minutes=30))
