"""
Tests for periodic sweeps, addon registry, domain configuration and admin auth.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import jwt
import pytest

from app.config import settings
from app.exceptions import (
    AuthenticationError,
    AuthorizationError,
    FeatureUnavailableError,
    NotFoundError,
)
from app.models.api import Permission
from app.services.addons import REGISTRY_KEY, AddonRegistry
from app.services.admin_auth import AdminAuthService
from app.services.cache import domain_url_cache_key
from app.services.credentials import to_record
from app.services.domain_config import CONFIGURATION_KEY, DomainConfigService
from app.services.events import EventBus
from app.services.sweeps import SweepRunner
from tests.conftest import make_domain_row

JWT_SECRET = "unit-test-secret-key-at-least-32-chars"


class TestSweepRunner:
    def runner(self, db_session, cache, http_client) -> SweepRunner:
        @asynccontextmanager
        async def session_factory():
            yield db_session

        return SweepRunner(session_factory, cache, http_client, EventBus(), verification_delay=0)

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_others(self, db_session, cache, http_client):
        runner = self.runner(db_session, cache, http_client)
        runner._verify_domains = AsyncMock(side_effect=RuntimeError("verification pool exhausted"))
        runner._expire_codes = AsyncMock(return_value={"codes_expired": 3})
        runner._cleanup_security_logs = AsyncMock(return_value={"security_logs_deleted": 10})
        runner._cleanup_rate_windows = AsyncMock(return_value={"rate_windows_deleted": 250})

        report = await runner.run_once()

        assert report.codes_expired == 3
        assert report.security_logs_deleted == 10
        assert report.rate_windows_deleted == 250
        assert report.domains_verified == 0
        assert report.errors == ("verify_domains: verification pool exhausted",)
        db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_all_jobs_run_in_order(self, db_session, cache, http_client):
        runner = self.runner(db_session, cache, http_client)
        order: list[str] = []

        def job(name: str, counts: dict[str, int]) -> AsyncMock:
            async def run(db):
                order.append(name)
                return counts

            return AsyncMock(side_effect=run)

        runner._verify_domains = job("verify", {"domains_verified": 2, "domains_failed": 1})
        runner._expire_codes = job("expire", {"codes_expired": 0})
        runner._cleanup_security_logs = job("logs", {"security_logs_deleted": 0})
        runner._cleanup_rate_windows = job("windows", {"rate_windows_deleted": 0})

        report = await runner.run_once()

        assert order == ["verify", "expire", "logs", "windows"]
        assert (report.domains_verified, report.domains_failed) == (2, 1)
        assert report.errors == ()


class TestAddonRegistry:
    def registry(self, db_session, row) -> AddonRegistry:
        registry = AddonRegistry(db_session)
        registry.repo = AsyncMock()
        registry.repo.get = AsyncMock(return_value=row)
        return registry

    @pytest.mark.asyncio
    async def test_register_keeps_original_registered_at(self, db_session):
        row = make_domain_row()
        record = to_record(row)
        registry = self.registry(db_session, row)

        first = await registry.register(record, "crm-sync", "CRM Sync", "1.0.0", ["track"])
        second = await registry.register(record, "crm-sync", "CRM Sync", "1.1.0", ["track"])

        assert second.version == "1.1.0"
        assert second.registered_at == first.registered_at
        assert set(row.domain_metadata[REGISTRY_KEY]) == {"crm-sync"}
        assert db_session.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_other_metadata_preserved(self, db_session):
        row = make_domain_row(metadata={"plan": "pro"})
        registry = self.registry(db_session, row)

        await registry.register(to_record(row), "crm-sync", "CRM Sync", "1.0.0", [])

        assert row.domain_metadata["plan"] == "pro"

    @pytest.mark.asyncio
    async def test_unregister_is_idempotent(self, db_session):
        row = make_domain_row()
        record = to_record(row)
        registry = self.registry(db_session, row)
        await registry.register(record, "crm-sync", "CRM Sync", "1.0.0", [])

        assert await registry.unregister(record, "crm-sync")
        assert not await registry.unregister(record, "crm-sync")
        assert await registry.list_addons(record) == {}

    @pytest.mark.asyncio
    async def test_status_unknown_addon(self, db_session):
        row = make_domain_row()
        registry = self.registry(db_session, row)
        with pytest.raises(NotFoundError):
            await registry.status(to_record(row), "missing")


class TestDomainConfig:
    def service(self, db_session, cache, row) -> DomainConfigService:
        service = DomainConfigService(db_session, cache)
        service.repo = AsyncMock()
        service.repo.get = AsyncMock(return_value=row)
        return service

    @pytest.mark.asyncio
    async def test_endpoints_follow_permissions(self, db_session, cache):
        row = make_domain_row(allowed_endpoints=[Permission.VALIDATE_CODES.value])
        config = await self.service(db_session, cache, row).client_config(to_record(row))

        assert "/v1/validate-code" in config.endpoints
        assert "/v1/webhook/referral-update" in config.endpoints
        assert "/v1/track" not in config.endpoints

    @pytest.mark.asyncio
    async def test_rate_limits_and_security(self, db_session, cache):
        row = make_domain_row(rate_limit_per_minute=30, rate_limit_per_hour=500)
        config = await self.service(db_session, cache, row).client_config(to_record(row))

        assert config.rate_limits.per_minute == 30
        assert config.rate_limits.per_hour == 500
        assert config.security.timestamp_window == settings.signature_max_skew_seconds
        assert config.domain == row.domain_url

    @pytest.mark.asyncio
    async def test_sync_does_not_persist(self, db_session, cache):
        row = make_domain_row(metadata={CONFIGURATION_KEY: {"theme": "dark", "locale": "en"}})
        service = self.service(db_session, cache, row)

        merged = await service.sync(to_record(row), {"locale": "fr"})

        assert merged == {"theme": "dark", "locale": "fr"}
        assert row.domain_metadata[CONFIGURATION_KEY]["locale"] == "en"
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_persists_and_invalidates(self, db_session, cache):
        row = make_domain_row(metadata={CONFIGURATION_KEY: {"theme": "dark"}, "plan": "pro"})
        service = self.service(db_session, cache, row)
        await cache.set(domain_url_cache_key(row.domain_url), "stale", 60)

        merged = await service.update(to_record(row), {"locale": "fr"})

        assert merged == {"theme": "dark", "locale": "fr"}
        assert row.domain_metadata == {"plan": "pro", CONFIGURATION_KEY: merged}
        db_session.commit.assert_awaited_once()
        assert await cache.get(domain_url_cache_key(row.domain_url)) is None


class TestAdminAuth:
    def test_round_trip(self):
        auth = AdminAuthService(JWT_SECRET)
        identity = auth.verify_token(auth.issue_token("ops@example.com"))
        assert identity.subject == "ops@example.com"
        assert identity.role == "admin"

    def test_missing_secret(self):
        auth = AdminAuthService("")
        with pytest.raises(FeatureUnavailableError):
            auth.verify_token("anything")

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
    def test_missing_or_garbage_token(self, token):
        with pytest.raises(AuthenticationError):
            AdminAuthService(JWT_SECRET).verify_token(token)

    def test_wrong_secret(self):
        token = AdminAuthService("another-secret-key-of-sufficient-size").issue_token("x")
        with pytest.raises(AuthenticationError):
            AdminAuthService(JWT_SECRET).verify_token(token)

    def test_expired(self):
        past = datetime.now(UTC) - timedelta(hours=2)
        token = jwt.encode(
            {"sub": "ops", "role": "admin", "iat": past, "exp": past + timedelta(hours=1)},
            JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(AuthenticationError) as exc_info:
            AdminAuthService(JWT_SECRET).verify_token(token)
        assert "expired" in exc_info.value.message

    def test_wrong_role(self):
        auth = AdminAuthService(JWT_SECRET)
        with pytest.raises(AuthorizationError):
            auth.verify_token(auth.issue_token("viewer@example.com", role="viewer"))
