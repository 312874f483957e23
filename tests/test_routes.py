"""
API tests for the gateway and admin routers.

Gateway calls are authenticated by priming the container cache with the
test key's domain record, so no argon2 hash is needed. Requests are signed
exactly as a satellite would sign them.
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.config import settings
from app.db.models import SecurityLogEntry
from app.db.session import get_read_db
from app.models.api import DomainStatus
from app.models.domain import DomainRecord
from app.services.cache import domain_prefix_cache_key, domain_url_cache_key
from app.services.container import ServiceContainer
from app.services.credentials import api_key_digest, derive_signing_secret
from app.services.rate_limiter import RateLimiter
from app.services.security_log import API_KEY_INVALID, DOMAIN_UNAUTHORIZED, SIGNATURE_INVALID
from app.services.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    compute_body_signature,
    compute_signature,
)
from app.services.sweeps import SweepRunner
from tests.conftest import TEST_API_KEY, make_domain_record, make_domain_row, make_result


def prime_credentials(container: ServiceContainer, record: DomainRecord) -> None:
    asyncio.run(
        container.cache.set(
            domain_prefix_cache_key(TEST_API_KEY[:20]),
            (api_key_digest(TEST_API_KEY), record),
            300,
        )
    )


def signed_headers(
    method: str, path: str, body: bytes, record: DomainRecord, timestamp: str | None = None
) -> dict[str, str]:
    timestamp = timestamp or str(int(time.time()))
    signature = compute_signature(
        method, path, record.domain_url, timestamp, body, derive_signing_secret(TEST_API_KEY)
    )
    return {
        "Authorization": f"Bearer {TEST_API_KEY}",
        "Content-Type": "application/json",
        TIMESTAMP_HEADER: timestamp,
        SIGNATURE_HEADER: signature,
    }


def security_entries(db_session) -> list[SecurityLogEntry]:
    return [
        call.args[0]
        for call in db_session.add.call_args_list
        if isinstance(call.args[0], SecurityLogEntry)
    ]


@pytest.fixture
def record(container: ServiceContainer) -> DomainRecord:
    record = make_domain_record()
    prime_credentials(container, record)
    return record


@pytest.fixture
def allowlisted(monkeypatch: pytest.MonkeyPatch) -> None:
    """Skip the rate-limit windows for the test key."""
    monkeypatch.setattr(settings, "rate_limit_allowlist", TEST_API_KEY[:20])


@pytest.fixture
def record_failure(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    mock = AsyncMock()
    monkeypatch.setattr(RateLimiter, "record_failure", mock)
    return mock


class TestHealth:
    def test_ok(self, client: TestClient):
        response = client.get("/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["version"] == settings.api_version
        assert "X-Request-ID" in response.headers

    def test_database_down(self, client: TestClient, db_session):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("down")))

        response = client.get("/v1/health")

        assert response.status_code == 503
        assert response.json()["ok"] is False

    def test_uses_read_session(self, client: TestClient, app, db_session):
        read_session = AsyncMock()
        read_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("down")))

        async def override_get_read_db():
            yield read_session

        app.dependency_overrides[get_read_db] = override_get_read_db

        response = client.get("/v1/health")

        assert response.status_code == 503
        read_session.execute.assert_awaited_once()
        db_session.execute.assert_not_awaited()

    def test_root(self, client: TestClient):
        assert client.get("/").json()["status"] == "running"


class TestGatewayAuthentication:
    def test_missing_key(self, client: TestClient, record_failure: AsyncMock):
        response = client.post("/v1/track", json={"code": "PARTNER42"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "authentication_failed"
        assert body["message"] == "Authentication failed: invalid credentials"
        record_failure.assert_awaited_once()

    def test_unknown_key(self, client: TestClient, record_failure: AsyncMock):
        response = client.post(
            "/v1/track",
            json={"code": "PARTNER42"},
            headers={"X-API-Key": "affcd_" + "z" * 43},
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Authentication failed: invalid credentials"

    def test_tampered_body(self, client: TestClient, record, record_failure: AsyncMock):
        headers = signed_headers("POST", "/v1/track", b'{"code":"PARTNER42"}', record)

        response = client.post("/v1/track", content=b'{"code":"PARTNER43"}', headers=headers)

        assert response.status_code == 401
        assert response.json()["message"] == "Authentication failed: invalid credentials"
        record_failure.assert_awaited_once()

    def test_stale_timestamp(self, client: TestClient, record, record_failure: AsyncMock):
        body = b'{"code":"PARTNER42"}'
        stale = str(int(time.time()) - settings.signature_max_skew_seconds - 60)

        response = client.post(
            "/v1/track", content=body, headers=signed_headers("POST", "/v1/track", body, record, stale)
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_timestamp"

    def test_signature_bound_to_route(self, client: TestClient, record, record_failure: AsyncMock):
        body = b'{"code":"PARTNER42","amount":"10.00"}'
        headers = signed_headers("POST", "/v1/track", body, record)

        response = client.post("/v1/convert", content=body, headers=headers)
        assert response.status_code == 401

    def test_unknown_and_known_key_look_the_same(
        self, client: TestClient, record, record_failure: AsyncMock
    ):
        unsigned = {TIMESTAMP_HEADER: str(int(time.time())), "Content-Type": "application/json"}

        known = client.post(
            "/v1/track",
            content=b'{"code":"PARTNER42"}',
            headers={**unsigned, "X-API-Key": TEST_API_KEY},
        )
        unknown = client.post(
            "/v1/track",
            content=b'{"code":"PARTNER42"}',
            headers={**unsigned, "X-API-Key": "affcd_" + "z" * 43},
        )

        assert known.status_code == unknown.status_code == 401
        assert known.json() == unknown.json()

    def test_stale_timestamp_rejected_before_key_lookup(
        self, client: TestClient, db_session, record_failure: AsyncMock
    ):
        stale = str(int(time.time()) - settings.signature_max_skew_seconds - 60)

        response = client.post(
            "/v1/track",
            json={"code": "PARTNER42"},
            headers={"X-API-Key": "affcd_" + "z" * 43, TIMESTAMP_HEADER: stale},
        )

        assert response.json()["error"] == "invalid_timestamp"
        db_session.execute.assert_not_awaited()
        assert security_entries(db_session)[0].severity == "high"

    def test_audit_severity_by_failure(
        self, client: TestClient, record, db_session, record_failure: AsyncMock
    ):
        headers = signed_headers("POST", "/v1/track", b'{"code":"PARTNER42"}', record)
        client.post("/v1/track", content=b'{"code":"PARTNER43"}', headers=headers)
        client.post(
            "/v1/track",
            json={"code": "PARTNER42"},
            headers={"X-API-Key": "affcd_" + "z" * 43, TIMESTAMP_HEADER: str(int(time.time()))},
        )

        entries = security_entries(db_session)
        assert [(e.event_type, e.severity) for e in entries] == [
            (SIGNATURE_INVALID, "high"),
            (API_KEY_INVALID, "medium"),
        ]
        # The real reason stays in the audit trail
        assert "invalid signature" in entries[0].context["reason"]


class TestGatewayAuthorization:
    def test_missing_permission(self, client: TestClient, container, allowlisted):
        record = make_domain_record(allowed_endpoints=["validate_codes"])
        prime_credentials(container, record)
        body = b'{"code":"PARTNER42"}'

        response = client.post(
            "/v1/track", content=body, headers=signed_headers("POST", "/v1/track", body, record)
        )

        assert response.status_code == 403
        assert response.json()["error"] == "endpoint_forbidden"

    def test_denylisted_key(self, client: TestClient, record, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "rate_limit_denylist", TEST_API_KEY[:20])
        body = b'{"code":"PARTNER42"}'

        response = client.post(
            "/v1/track", content=body, headers=signed_headers("POST", "/v1/track", body, record)
        )

        assert response.status_code == 429
        assert response.json()["error"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestGatewayEndpoints:
    def test_track(self, client: TestClient, record, allowlisted, db_session):
        body = json.dumps({"code": "PARTNER42", "metadata": {"page": "/pricing"}}).encode()

        response = client.post(
            "/v1/track", content=body, headers=signed_headers("POST", "/v1/track", body, record)
        )

        assert response.status_code == 201
        payload = response.json()
        assert payload["event_type"] == "track"
        assert payload["status"] == "success"
        assert "X-RateLimit-Limit" in response.headers
        row = db_session.add.call_args[0][0]
        assert row.affiliate_id == 42
        assert row.domain_from == record.domain_url

    def test_body_validation_is_400(self, client: TestClient, record, allowlisted):
        body = b'{"code":"a b"}'

        response = client.post(
            "/v1/track", content=body, headers=signed_headers("POST", "/v1/track", body, record)
        )

        assert response.status_code == 400
        payload = response.json()
        assert payload["error"] == "validation_error"
        assert payload["details"][0]["loc"] == ["body", "code"]

    def test_validate_code(self, client: TestClient, record, allowlisted, container):
        # The calling domain is looked up by URL for the authorization check
        asyncio.run(container.cache.set(domain_url_cache_key(record.domain_url), record, 300))
        body = b'{"code":"PARTNER42"}'

        response = client.post(
            "/v1/validate-code",
            content=body,
            headers=signed_headers("POST", "/v1/validate-code", body, record),
        )

        assert response.status_code == 200
        payload = response.json()
        assert payload["valid"] is True
        assert payload["affiliate_id"] == 42
        assert payload["reason"] is None

    def test_client_config(self, client: TestClient, record, allowlisted, db_session):
        db_session.execute = AsyncMock(return_value=make_result(make_domain_row()))

        response = client.get("/v1/config", headers=signed_headers("GET", "/v1/config", b"", record))

        assert response.status_code == 200
        payload = response.json()
        assert payload["domain"] == record.domain_url
        assert "/v1/track" in payload["endpoints"]
        assert payload["security"]["signature_required"] is True


    def test_rate_limit_headers_survive_route_errors(
        self, client: TestClient, record, allowlisted, db_session
    ):
        db_session.execute = AsyncMock(return_value=make_result(make_domain_row()))
        path = "/v1/addons/status"

        response = client.get(
            path, params={"addon_slug": "missing"}, headers=signed_headers("GET", path, b"", record)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"
        assert "X-RateLimit-Limit" in response.headers
        assert "X-RateLimit-Reset" in response.headers


class TestReferralWebhook:
    SECRET = "whsec_" + "r" * 32
    BODY = b'{"referral_id":"ref-9","affiliate_code":"PARTNER42","status":"approved"}'

    def headers(self, body: bytes, secret: str) -> dict[str, str]:
        return {
            "X-API-Key": TEST_API_KEY,
            "Content-Type": "application/json",
            TIMESTAMP_HEADER: str(int(time.time())),
            SIGNATURE_HEADER: compute_body_signature(body, secret),
        }

    def test_accepted(self, client: TestClient, record, allowlisted, db_session):
        # Only the secret lookup finds a row; the code resolves through the directory
        results = iter([make_result(make_domain_row(webhook_secret=self.SECRET))])
        db_session.execute = AsyncMock(side_effect=lambda *args, **kwargs: next(results, make_result()))

        response = client.post(
            "/v1/webhook/referral-update", content=self.BODY, headers=self.headers(self.BODY, self.SECRET)
        )

        assert response.status_code == 202
        row = db_session.add.call_args[0][0]
        assert row.event_metadata["referral_status"] == "approved"

    def test_wrong_secret(
        self, client: TestClient, record, db_session, record_failure: AsyncMock
    ):
        db_session.execute = AsyncMock(
            return_value=make_result(make_domain_row(webhook_secret=self.SECRET))
        )

        response = client.post(
            "/v1/webhook/referral-update",
            content=self.BODY,
            headers=self.headers(self.BODY, "whsec_" + "x" * 32),
        )

        assert response.status_code == 401
        record_failure.assert_awaited_once()


    def test_suspended_domain_rejected(
        self, client: TestClient, container, db_session, record_failure: AsyncMock
    ):
        prime_credentials(container, make_domain_record(status=DomainStatus.SUSPENDED))
        db_session.execute = AsyncMock(
            return_value=make_result(
                make_domain_row(status=DomainStatus.SUSPENDED, webhook_secret=self.SECRET)
            )
        )

        response = client.post(
            "/v1/webhook/referral-update", content=self.BODY, headers=self.headers(self.BODY, self.SECRET)
        )

        assert response.status_code == 403
        assert response.json()["error"] == "domain_unauthorized"
        entries = security_entries(db_session)
        assert [(e.event_type, e.severity) for e in entries] == [(DOMAIN_UNAUTHORIZED, "medium")]
        # Nothing but the audit entry was written
        assert len(db_session.add.call_args_list) == 1
        record_failure.assert_not_awaited()


class TestAdminAuthentication:
    def test_missing_token(self, client: TestClient):
        response = client.get("/v1/admin/domains")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_wrong_role(self, client: TestClient, container):
        token = container.admin_auth.issue_token("viewer@example.com", role="viewer")

        response = client.get("/v1/admin/domains", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403

    def test_not_configured(self, client: TestClient, container, admin_headers):
        container.admin_auth.jwt_secret = ""

        response = client.get("/v1/admin/domains", headers=admin_headers)
        assert response.status_code == 501


class TestAdminRoutes:
    def test_list_domains(self, client: TestClient, db_session, admin_headers):
        rows = [make_domain_row(domain_url="a.example.com"), make_domain_row(domain_url="b.example.com")]
        db_session.execute = AsyncMock(side_effect=[make_result(rows=rows), make_result(scalar=2)])

        response = client.get("/v1/admin/domains?per_page=10", headers=admin_headers)

        assert response.status_code == 200
        payload = response.json()
        assert payload["total"] == 2
        assert [d["domain_url"] for d in payload["domains"]] == ["a.example.com", "b.example.com"]

    def test_unknown_domain(self, client: TestClient, admin_headers):
        response = client.get(f"/v1/admin/domains/{uuid4()}", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_bulk_rejects_unknown_action(self, client: TestClient, admin_headers):
        response = client.post(
            "/v1/admin/vanity-codes/bulk",
            json={"action": "archive", "ids": [str(uuid4())]},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_sweeps_report_errors(
        self, client: TestClient, admin_headers, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(
            SweepRunner, "_verify_domains", AsyncMock(side_effect=RuntimeError("boom"))
        )
        monkeypatch.setattr(
            SweepRunner, "_expire_codes", AsyncMock(return_value={"codes_expired": 1})
        )
        monkeypatch.setattr(
            SweepRunner, "_cleanup_security_logs", AsyncMock(return_value={"security_logs_deleted": 0})
        )
        monkeypatch.setattr(
            SweepRunner, "_cleanup_rate_windows", AsyncMock(return_value={"rate_windows_deleted": 0})
        )

        response = client.post("/v1/admin/sweeps", headers=admin_headers)

        assert response.status_code == 200
        payload = response.json()
        assert payload["success"] is False
        assert payload["codes_expired"] == 1
        assert payload["errors"] == ["verify_domains: boom"]
