"""
Periodic Sweeps - Daily maintenance jobs.

Every job is idempotent and runs in its own session, so a failing job never
stops the others and concurrent runs are safe.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.models.domain import SweepReport
from app.observability.metrics import metrics
from app.services.cache import Cache
from app.services.domains import DomainService
from app.services.events import EventBus
from app.services.rate_limiter import RateLimiter
from app.services.security_log import SecurityLogService
from app.services.vanity_codes import VanityCodeService

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class SweepRunner:
    def __init__(
        self,
        session_factory: SessionFactory,
        cache: Cache,
        http_client: httpx.AsyncClient,
        bus: EventBus,
        verification_delay: float | None = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.http_client = http_client
        self.bus = bus
        self.verification_delay = verification_delay

    async def _verify_domains(self, db: AsyncSession) -> dict[str, int]:
        security_log = SecurityLogService(db, self.bus)
        service = DomainService(db, self.cache, self.http_client, self.bus, security_log)
        verified, failed = await service.verify_all(self.verification_delay)
        return {"domains_verified": verified, "domains_failed": failed}

    async def _expire_codes(self, db: AsyncSession) -> dict[str, int]:
        return {"codes_expired": await VanityCodeService(db, self.cache).expire_codes()}

    async def _cleanup_security_logs(self, db: AsyncSession) -> dict[str, int]:
        return {"security_logs_deleted": await SecurityLogService(db, self.bus).cleanup()}

    async def _cleanup_rate_windows(self, db: AsyncSession) -> dict[str, int]:
        return {"rate_windows_deleted": await RateLimiter(db).cleanup()}

    async def _run_job(
        self, name: str, job: Callable[[AsyncSession], Awaitable[dict[str, int]]]
    ) -> dict[str, int]:
        async with self.session_factory() as db:
            try:
                return await job(db)
            except Exception as e:
                await db.rollback()
                logger.error("sweep_job_failed", job=name, error=str(e), exc_info=True)
                metrics.record_error(type(e).__name__, f"sweep_{name}")
                raise

    async def run_once(self) -> SweepReport:
        jobs: list[tuple[str, Callable[[AsyncSession], Awaitable[dict[str, int]]]]] = [
            ("verify_domains", self._verify_domains),
            ("expire_codes", self._expire_codes),
            ("cleanup_security_logs", self._cleanup_security_logs),
            ("cleanup_rate_windows", self._cleanup_rate_windows),
        ]
        counts: dict[str, int] = {}
        errors: list[str] = []
        for name, job in jobs:
            try:
                counts.update(await self._run_job(name, job))
            except Exception as e:
                errors.append(f"{name}: {e}")

        report = SweepReport(**counts, errors=tuple(errors))
        logger.info("sweeps_completed", **counts, errors=len(errors))
        return report

    async def run_forever(self, interval_seconds: float) -> None:
        """In-process loop; cancelled by the lifespan on shutdown."""
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("sweep_loop_failed", error=str(e), exc_info=True)
            await asyncio.sleep(interval_seconds)
