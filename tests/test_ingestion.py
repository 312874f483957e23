"""
Tests for the event ingestion pipeline.

The resolver and commission service are mocked; the batch tests use a
savepoint-aware fake session to check per-item isolation.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import settings
from app.exceptions import BelowThresholdError, DependencyError, ValidationError
from app.models.api import EventStatus, EventType, InvalidCodeReason
from app.models.domain import CodeValidation, RequestContext
from app.services.cache import MemoryCache
from app.services.commission import CommissionService
from app.services.events import (
    ConversionRecorded,
    EventBus,
    EventTracked,
    ReferralUpdateReceived,
)
from app.services.ingestion import IngestionService, normalize_amount, normalize_currency

VALID = CodeValidation(valid=True, affiliate_id=42, affiliate_code="PARTNER42")
CONTEXT = RequestContext(ip_address="8.8.8.8", user_agent="pytest", request_id="req-1")


def make_resolver() -> MagicMock:
    """Resolver that knows PARTNER42, rejects UNKNOWN and fails on DOWN1."""

    async def lookup(code, domain=None, now=None):
        if code == "DOWN1":
            raise DependencyError("affiliate_directory", "timeout")
        if code == "PARTNER42":
            return VALID, None
        return CodeValidation.rejected(InvalidCodeReason.INVALID_CODE), None

    resolver = MagicMock()
    resolver.cache = MemoryCache()
    resolver.lookup = AsyncMock(side_effect=lookup)
    return resolver


def make_commissions(amount: str = "5.00") -> AsyncMock:
    commissions = AsyncMock()
    commissions.calculate = AsyncMock(
        return_value=MagicMock(commission_amount=Decimal(amount), effective_rate=Decimal("0.1000"))
    )
    return commissions


class Recorder:
    def __init__(self, bus: EventBus, *event_types: type) -> None:
        self.events: list[object] = []
        for event_type in event_types:
            bus.subscribe(event_type, self.record)

    async def record(self, event: object) -> None:
        self.events.append(event)


class TestNormalization:
    def test_amount_quantized(self):
        assert normalize_amount(Decimal("49.995")) == Decimal("50.00")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_amount_must_be_positive(self, amount: Decimal):
        with pytest.raises(ValidationError):
            normalize_amount(amount)

    def test_currency_defaults_and_uppercases(self):
        assert normalize_currency(None) == settings.default_currency
        assert normalize_currency(" eur ") == "EUR"

    @pytest.mark.parametrize("currency", ["EU", "EURO", "E1R"])
    def test_currency_invalid(self, currency: str):
        with pytest.raises(ValidationError):
            normalize_currency(currency)


class TestTrack:
    @pytest.mark.asyncio
    async def test_persists_and_publishes(self, db_session, bus, domain_record):
        recorder = Recorder(bus, EventTracked)
        service = IngestionService(db_session, make_resolver(), make_commissions(), bus)

        event = await service.track(
            domain_record, "PARTNER42", {"page": "/checkout"}, CONTEXT, idempotency_key="k1"
        )

        row = db_session.add.call_args[0][0]
        assert row.id == event.event_id
        assert row.event_type == "track"
        assert row.status == "success"
        assert row.affiliate_id == 42
        assert row.domain_from == domain_record.domain_url
        assert row.idempotency_key == "k1"
        assert row.event_metadata == {"page": "/checkout", "request_id": "req-1"}
        db_session.commit.assert_awaited_once()
        assert [e.event_id for e in recorder.events] == [event.event_id]

    @pytest.mark.asyncio
    async def test_unresolved_code_still_persisted(self, db_session, bus, domain_record):
        service = IngestionService(db_session, make_resolver(), make_commissions(), bus)

        event = await service.track(domain_record, "UNKNOWN", None, CONTEXT)

        row = db_session.add.call_args[0][0]
        assert event.status is EventStatus.FAILED
        assert row.event_metadata["failure_reason"] == "invalid_code"
        assert row.affiliate_id is None


class TestConvert:
    @pytest.mark.asyncio
    async def test_commission_attached(self, db_session, bus, domain_record):
        recorder = Recorder(bus, ConversionRecorded)
        commissions = make_commissions("4.99")
        service = IngestionService(db_session, make_resolver(), commissions, bus)

        event = await service.convert(
            domain_record, "PARTNER42", Decimal("49.99"), "eur", {}, CONTEXT, reference="order-1"
        )

        assert event.event_type is EventType.CONVERSION
        assert event.commission_amount == Decimal("4.99")
        assert event.currency == "EUR"
        row = db_session.add.call_args[0][0]
        assert row.conversion_value == Decimal("49.99")
        assert row.event_metadata["reference"] == "order-1"
        assert commissions.calculate.call_args.kwargs["commit"] is False
        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_commission_failure_keeps_conversion(self, db_session, bus, domain_record):
        commissions = AsyncMock()
        commissions.calculate = AsyncMock(
            side_effect=BelowThresholdError(Decimal("49.99"), Decimal("100.00"))
        )
        service = IngestionService(db_session, make_resolver(), commissions, bus)

        event = await service.convert(domain_record, "PARTNER42", Decimal("49.99"), None, {}, CONTEXT)

        assert event.status is EventStatus.SUCCESS
        assert event.commission_amount is None
        row = db_session.add.call_args[0][0]
        assert row.event_metadata["commission_error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_unresolved_code_skips_commission(self, db_session, bus, domain_record):
        recorder = Recorder(bus, ConversionRecorded)
        commissions = make_commissions()
        service = IngestionService(db_session, make_resolver(), commissions, bus)

        event = await service.convert(domain_record, "UNKNOWN", Decimal("10"), None, {}, CONTEXT)

        assert event.status is EventStatus.FAILED
        commissions.calculate.assert_not_awaited()
        assert recorder.events == []


class TestValidationAndReferral:
    @pytest.mark.asyncio
    async def test_record_validation(self, db_session, bus, domain_record):
        service = IngestionService(db_session, make_resolver(), make_commissions(), bus)
        rejected = CodeValidation.rejected(InvalidCodeReason.EXPIRED_CODE)

        event = await service.record_validation(domain_record, "OLD1", rejected, CONTEXT)

        assert event.event_type is EventType.VALIDATION
        assert event.status is EventStatus.FAILED
        assert db_session.add.call_args[0][0].event_metadata["failure_reason"] == "expired_code"

    @pytest.mark.asyncio
    async def test_referral_update(self, db_session, bus, domain_record):
        recorder = Recorder(bus, ReferralUpdateReceived)
        service = IngestionService(db_session, make_resolver(), make_commissions(), bus)

        event = await service.record_referral_update(
            domain_record, "ref-9", "PARTNER42", "approved", {"source": "crm"}, CONTEXT
        )

        row = db_session.add.call_args[0][0]
        assert row.event_type == "track"
        assert row.event_metadata["kind"] == "referral_update"
        assert row.event_metadata["referral_status"] == "approved"
        assert row.event_metadata["source"] == "crm"
        assert recorder.events[0].event_id == event.event_id
        assert recorder.events[0].referral_id == "ref-9"


class TestBatch:
    """One bad item never aborts the others."""

    @pytest.mark.asyncio
    async def test_partial_failure_in_order(self, savepoint_session, bus, domain_record):
        recorder = Recorder(bus, EventTracked, ConversionRecorded)
        service = IngestionService(savepoint_session, make_resolver(), make_commissions(), bus)

        result = await service.batch(
            domain_record,
            [
                {"type": "track", "code": "PARTNER42"},
                {"type": "track"},
                {"type": "convert", "code": "PARTNER42", "amount": "49.99"},
                {"type": "track", "code": "DOWN1"},
                {"type": "track", "code": "UNKNOWN"},
                {"type": "refund", "code": "PARTNER42"},
            ],
            CONTEXT,
        )

        assert [o.index for o in result.outcomes] == [0, 1, 2, 3, 4, 5]
        assert [o.success for o in result.outcomes] == [True, False, True, False, False, False]
        assert result.processed == 6
        assert result.succeeded == 2
        assert result.failed == 4

        assert "code" in result.outcomes[1].error
        assert result.outcomes[1].event_id is None
        assert "affiliate_directory" in result.outcomes[3].error
        # Unresolved codes are still persisted
        assert result.outcomes[4].event_id is not None
        assert result.outcomes[4].error == "code_not_resolved"

        assert savepoint_session.rolled_back_savepoints == 1
        assert len(savepoint_session.added) == 3
        assert savepoint_session.commits == 1
        # Published after the commit: two tracks plus one conversion
        assert len(recorder.events) == 3

    @pytest.mark.asyncio
    async def test_conflicting_commission_rules_stay_in_their_item(
        self, savepoint_session, bus, domain_record, directory
    ):
        layers = {
            ("global", "*"): {
                "calculation_method": "tiered",
                "tiers": [{"min_amount": "0", "max_amount": None, "rate": "0.05"}],
            },
            ("affiliate", "42"): {"tiers": []},
        }
        commissions = CommissionService(savepoint_session, directory)
        commissions.repo = AsyncMock()
        commissions.repo.get_rule = AsyncMock(
            side_effect=lambda scope, key: MagicMock(rules=layers[(scope, key)])
            if (scope, key) in layers
            else None
        )
        service = IngestionService(savepoint_session, make_resolver(), commissions, bus)

        result = await service.batch(
            domain_record,
            [
                {"type": "convert", "code": "PARTNER42", "amount": "250.00"},
                {"type": "track", "code": "PARTNER42"},
            ],
            CONTEXT,
        )

        assert [o.success for o in result.outcomes] == [True, True]
        conversion = savepoint_session.added[0]
        assert conversion.event_metadata["commission_error"] == "validation_error"
        assert conversion.commission_amount is None
        assert len(savepoint_session.added) == 2
        assert savepoint_session.commits == 1

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, savepoint_session, bus, domain_record):
        service = IngestionService(savepoint_session, make_resolver(), make_commissions(), bus)
        with pytest.raises(ValidationError):
            await service.batch(domain_record, [], CONTEXT)

    @pytest.mark.asyncio
    async def test_oversized_batch_rejected(
        self, savepoint_session, bus, domain_record, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "max_batch_size", 2)
        service = IngestionService(savepoint_session, make_resolver(), make_commissions(), bus)
        with pytest.raises(ValidationError):
            await service.batch(
                domain_record, [{"type": "track", "code": "PARTNER42"}] * 3, CONTEXT
            )
        assert savepoint_session.added == []
