"""
Outbound Webhooks - Signed, fire-and-forget notifications to domains.

The dispatcher subscribes to bus events and schedules one delivery task per
subscribed domain. The triggering request never waits on delivery, and a
failed delivery is logged and counted, never raised.
"""

import json
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.repositories import DomainRepository
from app.exceptions import DependencyError
from app.observability.metrics import metrics
from app.services.events import (
    ConversionRecorded,
    DomainSuspended,
    DomainVerified,
    EventBus,
    ReferralUpdateReceived,
    TaskTracker,
)
from app.services.signature import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_body_signature

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

EVENT_NAMES: dict[type, str] = {
    ConversionRecorded: "conversion.recorded",
    DomainSuspended: "domain.suspended",
    DomainVerified: "domain.verified",
    ReferralUpdateReceived: "referral.updated",
}


def wants_event(webhook_events: list[str] | tuple[str, ...], event_name: str) -> bool:
    """Empty subscription means everything; '*' also means everything."""
    return not webhook_events or "*" in webhook_events or event_name in webhook_events


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def build_payload(event_name: str, event: Any) -> bytes:
    data = {name: _jsonable(getattr(event, name)) for name in event.__dataclass_fields__}
    body = {"event": event_name, "data": data, "sent_at": datetime.now(UTC).isoformat()}
    return json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")


class WebhookDispatcher:
    """Delivers bus events to each domain's webhook_url."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session_factory: SessionFactory,
        tasks: TaskTracker,
    ):
        self.http_client = http_client
        self.session_factory = session_factory
        self.tasks = tasks

    def register(self, bus: EventBus) -> None:
        for event_type in EVENT_NAMES:
            bus.subscribe(event_type, self.handle)

    async def handle(self, event: Any) -> None:
        event_name = EVENT_NAMES[type(event)]
        self.tasks.spawn(
            self.deliver(event.domain_id, event_name, event),
            name=f"webhook:{event_name}:{event.domain_id}",
        )

    async def deliver(self, domain_id: UUID, event_name: str, event: Any) -> bool:
        """Send one delivery. Returns True on HTTP 2xx; never raises."""
        async with self.session_factory() as session:
            repo = DomainRepository(session)
            row = await repo.get(domain_id)
            if row is None or not row.webhook_url:
                return False
            if not wants_event(row.webhook_events or [], event_name):
                logger.debug("webhook_skipped", domain_id=str(domain_id), event_name=event_name)
                return False

            body = build_payload(event_name, event)
            timestamp = str(int(time.time()))
            headers = {"Content-Type": "application/json", TIMESTAMP_HEADER: timestamp}
            if row.webhook_secret:
                headers[SIGNATURE_HEADER] = compute_body_signature(body, row.webhook_secret)

            success = False
            try:
                try:
                    response = await self.http_client.post(
                        row.webhook_url,
                        content=body,
                        headers=headers,
                        timeout=settings.webhook_timeout_seconds,
                    )
                except httpx.HTTPError as e:
                    raise DependencyError("webhook", str(e) or type(e).__name__) from e
                if not 200 <= response.status_code < 300:
                    raise DependencyError("webhook", f"unexpected status {response.status_code}")
                success = True
            except DependencyError as e:
                logger.warning(
                    "webhook_delivery_failed",
                    domain_id=str(domain_id),
                    event_name=event_name,
                    url=row.webhook_url,
                    error=e.message,
                )

            await repo.record_webhook_result(domain_id, success, datetime.now(UTC))
            await session.commit()

        metrics.record_webhook(event_name, success)
        if success:
            logger.info("webhook_delivered", domain_id=str(domain_id), event_name=event_name)
        return success
