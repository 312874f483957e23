"""
Service Container - Process-wide collaborators built once by the lifespan.

Request-scoped services (anything holding an AsyncSession) are built per
request from these shared pieces.
"""

from dataclasses import dataclass, field

import httpx
from structlog import get_logger

from app.config import Settings
from app.services.affiliates import (
    AffiliateDirectory,
    HttpAffiliateDirectory,
    StaticAffiliateDirectory,
)
from app.services.admin_auth import AdminAuthService
from app.services.cache import Cache, MemoryCache
from app.services.events import EventBus, SecurityAlert, TaskTracker
from app.services.security_log import AdminAlertNotifier
from app.services.sweeps import SessionFactory, SweepRunner
from app.services.webhooks import WebhookDispatcher

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    cache: Cache
    bus: EventBus
    tasks: TaskTracker
    http_client: httpx.AsyncClient
    directory: AffiliateDirectory
    session_factory: SessionFactory
    admin_auth: AdminAuthService
    webhooks: WebhookDispatcher = field(init=False)

    def __post_init__(self) -> None:
        self.webhooks = WebhookDispatcher(self.http_client, self.session_factory, self.tasks)
        self.webhooks.register(self.bus)
        self.bus.subscribe(
            SecurityAlert,
            AdminAlertNotifier(self.http_client, self.tasks, self.settings.alert_webhook_url),
        )

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory: SessionFactory,
        http_client: httpx.AsyncClient | None = None,
        directory: AffiliateDirectory | None = None,
    ) -> "ServiceContainer":
        cache = MemoryCache(max_entries=settings.cache_max_entries)
        client = http_client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
        if directory is None:
            if settings.affiliate_directory_url:
                directory = HttpAffiliateDirectory(
                    client,
                    cache,
                    settings.affiliate_directory_url,
                    settings.affiliate_directory_token,
                    settings.affiliate_directory_timeout_seconds,
                )
            else:
                logger.warning("affiliate_directory_not_configured")
                directory = StaticAffiliateDirectory()
        return cls(
            settings=settings,
            cache=cache,
            bus=EventBus(),
            tasks=TaskTracker(),
            http_client=client,
            directory=directory,
            session_factory=session_factory,
            admin_auth=AdminAuthService(
                settings.admin_jwt_secret, settings.admin_jwt_algorithm, settings.admin_role
            ),
        )

    def sweeps(self) -> SweepRunner:
        return SweepRunner(self.session_factory, self.cache, self.http_client, self.bus)

    async def close(self) -> None:
        await self.tasks.drain()
        await self.http_client.aclose()
