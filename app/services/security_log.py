"""
Security Audit Log - Append-only record of security-relevant events.

Every rejection at the gateway (bad signature, unknown key, unauthorized
domain, rate-limit trip, IP block, auto-suspension) lands here with the actor
IP and context. Critical entries are fanned out as SecurityAlert events.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import SecurityLogEntry
from app.db.repositories import SecurityLogRepository
from app.models.api import Severity
from app.observability.metrics import metrics
from app.services.events import EventBus, SecurityAlert, TaskTracker

logger = get_logger(__name__)

# Rejection event names
SIGNATURE_INVALID = "signature_invalid"
TIMESTAMP_INVALID = "timestamp_invalid"
API_KEY_INVALID = "api_key_invalid"
DOMAIN_UNAUTHORIZED = "domain_unauthorized"
ENDPOINT_FORBIDDEN = "endpoint_forbidden"
RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
IP_BLOCKED = "ip_blocked"
DOMAIN_SUSPENDED = "domain_auto_suspended"
WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"

REJECTION_SEVERITY: dict[str, Severity] = {
    SIGNATURE_INVALID: Severity.HIGH,
    TIMESTAMP_INVALID: Severity.HIGH,
    WEBHOOK_SIGNATURE_INVALID: Severity.HIGH,
    API_KEY_INVALID: Severity.MEDIUM,
    DOMAIN_UNAUTHORIZED: Severity.MEDIUM,
    ENDPOINT_FORBIDDEN: Severity.MEDIUM,
    RATE_LIMIT_EXCEEDED: Severity.MEDIUM,
    IP_BLOCKED: Severity.CRITICAL,
    DOMAIN_SUSPENDED: Severity.HIGH,
}


def rejection_severity(event_type: str) -> Severity:
    return REJECTION_SEVERITY.get(event_type, Severity.MEDIUM)


class SecurityLogService:
    """Writes and reads the security audit trail."""

    def __init__(self, db: AsyncSession, bus: EventBus | None = None):
        self.db = db
        self.bus = bus
        self.repo = SecurityLogRepository(db)

    async def log_event(
        self,
        event_type: str,
        severity: Severity,
        ip_address: str | None = None,
        actor: str | None = None,
        domain_id: UUID | None = None,
        context: dict[str, Any] | None = None,
    ) -> SecurityLogEntry:
        """Persist one entry and emit it at the log level matching its severity."""
        entry = SecurityLogEntry(
            event_type=event_type,
            severity=severity.value,
            ip_address=ip_address,
            actor=actor,
            domain_id=domain_id,
            context=dict(context or {}),
            created_at=datetime.now(UTC),
        )
        await self.repo.add(entry)
        await self.db.commit()

        log_kwargs = {
            "event_type": event_type,
            "severity": severity.value,
            "ip_address": ip_address,
            "actor": actor,
            "domain_id": str(domain_id) if domain_id else None,
            "context": context or {},
        }
        match severity:
            case Severity.LOW:
                logger.info("security_event", **log_kwargs)
            case Severity.MEDIUM:
                logger.warning("security_event", **log_kwargs)
            case Severity.HIGH:
                logger.error("security_event", **log_kwargs)
            case Severity.CRITICAL:
                logger.critical("security_event", **log_kwargs)
        metrics.record_security_event(event_type, severity.value)

        if severity is Severity.CRITICAL and self.bus is not None:
            await self.bus.publish(
                SecurityAlert(
                    event_type=event_type,
                    severity=severity,
                    ip_address=ip_address,
                    domain_id=domain_id,
                    occurred_at=entry.created_at,
                    context=dict(context or {}),
                )
            )
        return entry

    async def list_entries(
        self,
        severity: Severity | None = None,
        event_type: str | None = None,
        page: int = 1,
        per_page: int = 50,
    ) -> tuple[list[SecurityLogEntry], int]:
        rows, total = await self.repo.list_page(
            severity.value if severity else None,
            event_type,
            offset=(page - 1) * per_page,
            limit=per_page,
        )
        return list(rows), total

    async def stats(self, days: int = 7) -> tuple[dict[str, int], dict[str, int]]:
        """Counts by severity and by event type over the last ``days``."""
        since = datetime.now(UTC) - timedelta(days=days)
        by_severity = await self.repo.counts_by_severity(since)
        by_event_type = await self.repo.counts_by_event_type(since)
        return by_severity, by_event_type

    async def cleanup(self, older_than_days: int | None = None) -> int:
        days = older_than_days if older_than_days is not None else settings.security_log_retention_days
        cutoff = datetime.now(UTC) - timedelta(days=days)
        deleted = await self.repo.delete_older_than(cutoff)
        await self.db.commit()
        logger.info("security_logs_cleaned", deleted=deleted, older_than_days=days)
        return deleted


class AdminAlertNotifier:
    """
    Default SecurityAlert subscriber.

    Always logs ``security_alert``. When ALERT_WEBHOOK_URL is set the alert is
    also POSTed there in the background; delivery failures are only logged.
    """

    def __init__(self, http_client: httpx.AsyncClient, tasks: TaskTracker, url: str = ""):
        self.http_client = http_client
        self.tasks = tasks
        self.url = url

    async def __call__(self, alert: SecurityAlert) -> None:
        logger.critical(
            "security_alert",
            event_type=alert.event_type,
            ip_address=alert.ip_address,
            domain_id=str(alert.domain_id) if alert.domain_id else None,
            occurred_at=alert.occurred_at.isoformat(),
        )
        if self.url:
            self.tasks.spawn(self._deliver(alert), name=f"alert:{alert.event_type}")

    async def _deliver(self, alert: SecurityAlert) -> None:
        payload = {
            "event_type": alert.event_type,
            "severity": alert.severity.value,
            "ip_address": alert.ip_address,
            "domain_id": str(alert.domain_id) if alert.domain_id else None,
            "occurred_at": alert.occurred_at.isoformat(),
            "context": alert.context,
        }
        try:
            response = await self.http_client.post(
                self.url, json=payload, timeout=settings.webhook_timeout_seconds
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("security_alert_delivery_failed", url=self.url, error=str(e))
