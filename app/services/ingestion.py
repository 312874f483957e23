"""
Event Ingestion Pipeline - track, convert and batch.

NO DICTIONARIES - Callers get IngestedEvent / BatchResult.

Every call persists exactly one usage_events row with a Python-generated id,
whether or not the code resolves. Delivery is at-least-once: idempotency keys
are stored for the caller but never deduplicated.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import uuid4

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import UsageEvent
from app.db.repositories import UsageEventRepository
from app.exceptions import GatewayError, ValidationError
from app.models.api import (
    BatchItem,
    ConvertBatchItem,
    EventStatus,
    EventType,
    TrackBatchItem,
)
from app.models.domain import (
    BatchItemOutcome,
    BatchResult,
    CodeValidation,
    DomainRecord,
    IngestedEvent,
    RequestContext,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.commission import CommissionOptions, CommissionService
from app.services.events import ConversionRecorded, EventBus, EventTracked, ReferralUpdateReceived
from app.services.vanity_codes import CodeResolver, VanityCodeService

logger = get_logger(__name__)

_batch_item_adapter: TypeAdapter[TrackBatchItem | ConvertBatchItem] = TypeAdapter(BatchItem)


def normalize_amount(amount: Decimal) -> Decimal:
    if amount <= 0:
        raise ValidationError("Amount must be positive", field="amount")
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def normalize_currency(currency: str | None) -> str:
    value = (currency or settings.default_currency).strip().upper()
    if len(value) != 3 or not value.isalpha():
        raise ValidationError(f"Invalid currency code: {currency}", field="currency")
    return value


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid event"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}" if location else str(first.get("msg"))


class IngestionService:
    """Persists usage events for a calling domain."""

    def __init__(
        self,
        db: AsyncSession,
        resolver: CodeResolver,
        commissions: CommissionService,
        bus: EventBus,
    ):
        self.db = db
        self.resolver = resolver
        self.commissions = commissions
        self.bus = bus
        self.repo = UsageEventRepository(db)
        self.vanity_codes = VanityCodeService(db, resolver.cache)

    def _event_row(
        self,
        domain: DomainRecord,
        event_type: EventType,
        code: str | None,
        resolution: CodeValidation | None,
        context: RequestContext,
        metadata: dict[str, Any],
        domain_to: str | None = None,
        idempotency_key: str | None = None,
    ) -> UsageEvent:
        metadata = dict(metadata)
        status = EventStatus.SUCCESS
        if resolution is not None and not resolution.valid:
            status = EventStatus.FAILED
            metadata["failure_reason"] = resolution.reason.value if resolution.reason else None
        if context.request_id:
            metadata.setdefault("request_id", context.request_id)

        return UsageEvent(
            id=uuid4(),
            domain_id=domain.domain_id,
            domain_from=domain.domain_url,
            domain_to=domain_to,
            code=code,
            affiliate_id=resolution.affiliate_id if resolution else None,
            event_type=event_type.value,
            status=status.value,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            idempotency_key=idempotency_key,
            retry_count=0,
            event_metadata=metadata,
            api_version=settings.api_version,
            created_at=datetime.now(UTC),
        )

    # ========================================================================
    # Single events (persist without committing; public methods commit)
    # ========================================================================

    async def _track(
        self,
        domain: DomainRecord,
        code: str,
        metadata: dict[str, Any],
        context: RequestContext,
        domain_to: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[IngestedEvent, EventTracked]:
        resolution, _ = await self.resolver.lookup(code)
        row = self._event_row(
            domain, EventType.TRACK, code, resolution, context, metadata, domain_to, idempotency_key
        )
        await self.repo.add(row)
        metrics.record_event_ingested(row.event_type, row.status)
        event = IngestedEvent(
            event_id=row.id,
            event_type=EventType.TRACK,
            status=EventStatus(row.status),
            created_at=row.created_at,
        )
        return event, EventTracked(
            domain_id=domain.domain_id, event_id=row.id, code=code, occurred_at=row.created_at
        )

    async def _convert(
        self,
        domain: DomainRecord,
        code: str,
        amount: Decimal,
        currency: str | None,
        metadata: dict[str, Any],
        context: RequestContext,
        domain_to: str | None = None,
        idempotency_key: str | None = None,
        reference: str | None = None,
    ) -> tuple[IngestedEvent, ConversionRecorded | None]:
        amount = normalize_amount(amount)
        currency = normalize_currency(currency)
        metadata = dict(metadata)
        if reference:
            metadata["reference"] = reference

        resolution, snapshot = await self.resolver.lookup(code)
        commission_amount: Decimal | None = None
        commission_rate: Decimal | None = None

        if resolution.valid and resolution.affiliate_code:
            try:
                result = await self.commissions.calculate(
                    amount,
                    resolution.affiliate_code,
                    CommissionOptions(currency=currency),
                    commit=False,
                )
                commission_amount = result.commission_amount
                commission_rate = result.effective_rate
            except GatewayError as e:
                # The conversion still counts; only the commission is missing
                metadata["commission_error"] = e.error_code
                metadata["commission_error_message"] = e.message
                logger.info(
                    "conversion_commission_skipped",
                    code=code,
                    error_code=e.error_code,
                    error=e.message,
                )

        row = self._event_row(
            domain,
            EventType.CONVERSION,
            code,
            resolution,
            context,
            metadata,
            domain_to,
            idempotency_key,
        )
        row.conversion_value = amount
        row.currency = currency
        row.commission_amount = commission_amount
        row.commission_rate = commission_rate
        await self.repo.add(row)

        if snapshot is not None and resolution.valid:
            await self.vanity_codes.record_conversion(snapshot.vanity_code, amount)

        metrics.record_event_ingested(row.event_type, row.status)
        event = IngestedEvent(
            event_id=row.id,
            event_type=EventType.CONVERSION,
            status=EventStatus(row.status),
            created_at=row.created_at,
            commission_amount=commission_amount,
            currency=currency,
        )
        published = None
        if resolution.valid:
            published = ConversionRecorded(
                domain_id=domain.domain_id,
                event_id=row.id,
                code=code,
                affiliate_id=resolution.affiliate_id,
                amount=amount,
                currency=currency,
                commission_amount=commission_amount,
                occurred_at=row.created_at,
            )
        return event, published

    # ========================================================================
    # Public operations
    # ========================================================================

    async def track(
        self,
        domain: DomainRecord,
        code: str,
        metadata: dict[str, Any] | None,
        context: RequestContext,
        domain_to: str | None = None,
        idempotency_key: str | None = None,
    ) -> IngestedEvent:
        event, published = await self._track(
            domain, code, metadata or {}, context, domain_to, idempotency_key
        )
        await self.db.commit()
        logger.info(
            "event_tracked",
            event_id=str(event.event_id),
            domain=domain.domain_url,
            code=code,
            status=event.status.value,
        )
        await self.bus.publish(published)
        return event

    async def convert(
        self,
        domain: DomainRecord,
        code: str,
        amount: Decimal,
        currency: str | None,
        metadata: dict[str, Any] | None,
        context: RequestContext,
        domain_to: str | None = None,
        idempotency_key: str | None = None,
        reference: str | None = None,
    ) -> IngestedEvent:
        event, published = await self._convert(
            domain,
            code,
            amount,
            currency,
            metadata or {},
            context,
            domain_to,
            idempotency_key,
            reference,
        )
        await self.db.commit()
        logger.info(
            "conversion_recorded",
            event_id=str(event.event_id),
            domain=domain.domain_url,
            code=code,
            amount=str(amount),
            currency=event.currency,
            status=event.status.value,
            commission_amount=str(event.commission_amount) if event.commission_amount else None,
        )
        if published is not None:
            await self.bus.publish(published)
        return event

    async def record_validation(
        self,
        domain: DomainRecord,
        code: str,
        resolution: CodeValidation,
        context: RequestContext,
        metadata: dict[str, Any] | None = None,
    ) -> IngestedEvent:
        """Append a validation event for a validate-code call."""
        row = self._event_row(
            domain, EventType.VALIDATION, code, resolution, context, metadata or {}
        )
        await self.repo.add(row)
        await self.db.commit()
        metrics.record_event_ingested(row.event_type, row.status)
        return IngestedEvent(
            event_id=row.id,
            event_type=EventType.VALIDATION,
            status=EventStatus(row.status),
            created_at=row.created_at,
        )

    async def record_referral_update(
        self,
        domain: DomainRecord,
        referral_id: str,
        affiliate_code: str,
        status: str,
        metadata: dict[str, Any],
        context: RequestContext,
    ) -> IngestedEvent:
        """Inbound referral webhook, stored as a track event tagged referral_update."""
        metadata = {
            **metadata,
            "kind": "referral_update",
            "referral_id": referral_id,
            "referral_status": status,
        }
        event, _ = await self._track(domain, affiliate_code, metadata, context)
        await self.db.commit()
        logger.info(
            "referral_update_received",
            event_id=str(event.event_id),
            domain=domain.domain_url,
            referral_id=referral_id,
            referral_status=status,
        )
        await self.bus.publish(
            ReferralUpdateReceived(
                domain_id=domain.domain_id,
                event_id=event.event_id,
                referral_id=referral_id,
                affiliate_code=affiliate_code,
                status=status,
                occurred_at=event.created_at,
            )
        )
        return event

    async def batch(
        self,
        domain: DomainRecord,
        items: list[dict[str, Any]],
        context: RequestContext,
    ) -> BatchResult:
        """
        Ingest up to MAX_BATCH_SIZE raw events with per-item isolation.

        Each item is validated on its own and persisted inside its own
        SAVEPOINT, so one bad item never aborts the others.
        """
        if not items:
            raise ValidationError("Batch must contain at least one event", field="events")
        if len(items) > settings.max_batch_size:
            raise ValidationError(
                f"Batch exceeds maximum of {settings.max_batch_size} events", field="events"
            )

        outcomes: list[BatchItemOutcome] = []
        published: list[object] = []

        with trace_operation("event_batch", domain=domain.domain_url, size=len(items)):
            for index, raw in enumerate(items):
                try:
                    item = _batch_item_adapter.validate_python(raw)
                except PydanticValidationError as e:
                    outcomes.append(
                        BatchItemOutcome(index=index, success=False, error=_first_error(e))
                    )
                    continue

                try:
                    async with self.db.begin_nested():
                        if isinstance(item, ConvertBatchItem):
                            event, message = await self._convert(
                                domain,
                                item.code,
                                item.amount,
                                item.currency,
                                item.metadata,
                                context,
                                item.domain_to,
                                item.idempotency_key,
                                item.reference,
                            )
                        else:
                            event, message = await self._track(
                                domain,
                                item.code,
                                item.metadata,
                                context,
                                item.domain_to,
                                item.idempotency_key,
                            )
                except (GatewayError, SQLAlchemyError) as e:
                    logger.warning("batch_item_failed", index=index, error=str(e))
                    outcomes.append(BatchItemOutcome(index=index, success=False, error=str(e)))
                    continue

                if message is not None:
                    published.append(message)
                outcomes.append(
                    BatchItemOutcome(
                        index=index,
                        success=event.status is EventStatus.SUCCESS,
                        event_id=event.event_id,
                        error=None if event.status is EventStatus.SUCCESS else "code_not_resolved",
                    )
                )

        await self.db.commit()
        metrics.batch_size.observe(len(items))

        result = BatchResult(outcomes=tuple(outcomes))
        logger.info(
            "batch_ingested",
            domain=domain.domain_url,
            processed=result.processed,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        for message in published:
            await self.bus.publish(message)
        return result

