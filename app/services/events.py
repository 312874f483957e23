"""
Event Bus - Typed events with explicitly ordered subscribers.

Subscribers run in registration order. A failing subscriber is logged and
never aborts the publisher or the subscribers after it.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from structlog import get_logger

from app.models.api import Severity

logger = get_logger(__name__)


@dataclass(frozen=True)
class DomainSuspended:
    domain_id: UUID
    domain_url: str
    reason: str
    occurred_at: datetime


@dataclass(frozen=True)
class DomainVerified:
    domain_id: UUID
    domain_url: str
    occurred_at: datetime


@dataclass(frozen=True)
class EventTracked:
    domain_id: UUID
    event_id: UUID
    code: str
    occurred_at: datetime


@dataclass(frozen=True)
class ConversionRecorded:
    domain_id: UUID
    event_id: UUID
    code: str
    affiliate_id: int | None
    amount: Decimal
    currency: str
    commission_amount: Decimal | None
    occurred_at: datetime


@dataclass(frozen=True)
class ReferralUpdateReceived:
    domain_id: UUID
    event_id: UUID
    referral_id: str
    affiliate_code: str
    status: str
    occurred_at: datetime


@dataclass(frozen=True)
class SecurityAlert:
    event_type: str
    severity: Severity
    ip_address: str | None
    domain_id: UUID | None
    occurred_at: datetime
    context: dict[str, Any] = field(default_factory=dict)


E = TypeVar("E")
Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """In-process publish/subscribe with deterministic ordering."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribers(self, event_type: type) -> list[Handler]:
        return list(self._handlers.get(event_type, []))

    async def publish(self, event: object) -> None:
        for handler in self._handlers.get(type(event), []):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "event_subscriber_failed",
                    event_name=type(event).__name__,
                    subscriber=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )


class TaskTracker:
    """
    Holds references to fire-and-forget tasks until they finish.

    The event loop only keeps weak references to tasks, so untracked tasks
    can be garbage collected mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=task.get_name(), error=str(exc))

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight tasks on shutdown; cancel what is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("background_tasks_cancelled", count=len(still_pending))
        logger.info("background_tasks_drained", completed=len(done))
