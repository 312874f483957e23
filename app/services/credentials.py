"""
Credential Store - Domain registration, API keys and signing secrets.

NO DICTIONARIES - Callers receive DomainRecord / IssuedCredentials.

Only Argon2id hashes are persisted. The per-domain HMAC secret is never
stored in reversible form: it is re-derived from the presented API key and
the server master key whenever a signature has to be checked.
"""

import base64
import hashlib
import hmac
import ipaddress
import re
import secrets
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import AuthorizedDomain
from app.db.repositories import DomainRepository
from app.exceptions import DomainExistsError, NotFoundError, ValidationError
from app.models.api import DomainStatus, SecurityLevel, VerificationStatus
from app.models.domain import DomainRecord, IssuedCredentials
from app.services.cache import (
    MISSING,
    Cache,
    domain_key_cache_key,
    domain_prefix_cache_key,
    domain_url_cache_key,
)

logger = get_logger(__name__)

KEY_PREFIX_LENGTH = 20

_HOST_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")
_DEFAULT_PORTS = {80, 443}


def normalize_domain(url: str) -> str:
    """
    Reduce a URL or host to the canonical bare host.

    ``https://WWW.Shop.example.com:443/path?q=1`` -> ``shop.example.com``.
    Non-default ports are kept (``shop.example.com:8443``). Idempotent.

    Raises:
        ValidationError: if no valid host can be extracted
    """
    raw = (url or "").strip().lower()
    if not raw:
        raise ValidationError("Domain cannot be empty", field="domain_url")

    # urlsplit only finds the netloc after "//"
    if "://" not in raw:
        raw = f"//{raw}"
    try:
        parts = urlsplit(raw)
        host = parts.hostname or ""
        port = parts.port
    except ValueError as exc:
        raise ValidationError(f"Invalid domain: {url}", field="domain_url") from exc

    host = host.rstrip(".")
    while host.startswith("www."):
        host = host[4:]
    if not host or not _is_valid_host(host):
        raise ValidationError(f"Invalid domain: {url}", field="domain_url")

    if port is not None and port not in _DEFAULT_PORTS:
        return f"{host}:{port}"
    return host


def _is_valid_host(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        pass
    return all(_HOST_LABEL.match(label) for label in host.split("."))


def derive_signing_secret(api_key: str) -> str:
    """HMAC-SHA256(master_key, api_key) as hex. Shared secret for request signing."""
    return hmac.new(
        settings.signing_master_key.encode("utf-8"),
        api_key.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def api_key_digest(api_key: str) -> str:
    """Cache key material for an API key. The plaintext never enters the cache."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def to_record(row: AuthorizedDomain) -> DomainRecord:
    """Map an ORM row to the immutable domain snapshot."""
    return DomainRecord(
        domain_id=row.id,
        domain_url=row.domain_url,
        api_key_prefix=row.api_key_prefix,
        status=DomainStatus(row.status),
        verification_status=VerificationStatus(row.verification_status),
        verification_failures=row.verification_failures,
        security_level=SecurityLevel(row.security_level),
        rate_limit_per_minute=row.rate_limit_per_minute,
        rate_limit_per_hour=row.rate_limit_per_hour,
        max_daily_requests=row.max_daily_requests,
        allowed_endpoints=tuple(row.allowed_endpoints or ()),
        webhook_url=row.webhook_url,
        webhook_events=tuple(row.webhook_events or ()),
        created_at=row.created_at,
        suspended_reason=row.suspended_reason,
        last_verified_at=row.last_verified_at,
    )


class CredentialStore:
    """Issues, verifies and rotates domain credentials."""

    def __init__(self, db: AsyncSession, cache: Cache):
        self.db = db
        self.cache = cache
        self.repo = DomainRepository(db)
        self.password_hasher = PasswordHasher()

    def generate_api_key(self) -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (plaintext_key, key_hash, key_prefix)
        """
        random_bytes = secrets.token_bytes(32)
        key_suffix = base64.urlsafe_b64encode(random_bytes).decode("utf-8").rstrip("=")
        plaintext_key = f"{settings.api_key_prefix}{key_suffix}"

        # Prefix is indexed and unique; the hash is only checked after lookup
        key_prefix = plaintext_key[:KEY_PREFIX_LENGTH]
        key_hash = self.password_hasher.hash(plaintext_key)

        return plaintext_key, key_hash, key_prefix

    def _issue(self) -> tuple[str, str, str, str, str]:
        api_key, key_hash, key_prefix = self.generate_api_key()
        api_secret = derive_signing_secret(api_key)
        secret_hash = self.password_hasher.hash(api_secret)
        return api_key, key_hash, key_prefix, api_secret, secret_hash

    async def create(
        self,
        domain_url: str,
        metadata: dict[str, Any] | None = None,
        *,
        security_level: SecurityLevel = SecurityLevel.MEDIUM,
        rate_limit_per_minute: int | None = None,
        rate_limit_per_hour: int | None = None,
        max_daily_requests: int | None = None,
        allowed_endpoints: Iterable[str] = (),
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        webhook_events: Iterable[str] = (),
        created_by: str | None = None,
    ) -> tuple[DomainRecord, IssuedCredentials]:
        """
        Register a domain and issue its credentials (shown once!).

        Raises:
            ValidationError: invalid domain
            DomainExistsError: canonical domain already registered
        """
        canonical = normalize_domain(domain_url)

        if await self.repo.get_by_url(canonical) is not None:
            raise DomainExistsError(canonical)

        api_key, key_hash, key_prefix, api_secret, secret_hash = self._issue()

        row = AuthorizedDomain(
            domain_url=canonical,
            api_key_prefix=key_prefix,
            api_key_hash=key_hash,
            api_secret_hash=secret_hash,
            status=DomainStatus.PENDING.value,
            verification_status=VerificationStatus.UNVERIFIED.value,
            verification_failures=0,
            security_level=security_level.value,
            rate_limit_per_minute=rate_limit_per_minute,
            rate_limit_per_hour=rate_limit_per_hour,
            max_daily_requests=max_daily_requests,
            allowed_endpoints=list(allowed_endpoints),
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
            webhook_events=list(webhook_events),
            webhook_failures=0,
            domain_metadata=dict(metadata or {}),
            created_by=created_by,
            created_at=datetime.now(UTC),
        )

        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent registration
            await self.db.rollback()
            raise DomainExistsError(canonical) from exc
        await self.db.refresh(row)

        await self.cache.invalidate(domain_url_cache_key(canonical))

        logger.info(
            "domain_registered",
            domain_id=str(row.id),
            domain=canonical,
            key_prefix=key_prefix,
            created_by=created_by,
        )

        return to_record(row), IssuedCredentials(
            domain_id=row.id,
            api_key=api_key,
            api_secret=api_secret,
            api_key_prefix=key_prefix,
        )

    async def rotate_key(self, domain_id: UUID) -> IssuedCredentials:
        """Issue a new key and secret. The old key stops working immediately."""
        row = await self.repo.get(domain_id)
        if row is None:
            raise NotFoundError("Domain", str(domain_id))

        old_prefix = row.api_key_prefix
        api_key, key_hash, key_prefix, api_secret, secret_hash = self._issue()
        row.api_key_prefix = key_prefix
        row.api_key_hash = key_hash
        row.api_secret_hash = secret_hash
        await self.db.commit()

        await self.cache.invalidate(domain_prefix_cache_key(old_prefix))
        await self.cache.invalidate(domain_url_cache_key(row.domain_url))

        logger.info(
            "api_key_rotated",
            domain_id=str(domain_id),
            old_key_prefix=old_prefix,
            new_key_prefix=key_prefix,
        )

        return IssuedCredentials(
            domain_id=row.id,
            api_key=api_key,
            api_secret=api_secret,
            api_key_prefix=key_prefix,
        )

    async def find_by_api_key(self, api_key: str) -> DomainRecord | None:
        """
        Resolve an API key to its domain, or None if the key is unknown.

        Verified keys are cached per prefix together with the SHA-256 of the
        key, so a cache hit still proves possession of the full key. Unknown
        keys are cached negatively by digest for the shorter TTL.
        """
        if (
            not api_key
            or not api_key.startswith(settings.api_key_prefix)
            or len(api_key) <= KEY_PREFIX_LENGTH
        ):
            logger.warning("api_key_invalid_format", prefix=(api_key or "")[:10])
            return None

        digest = api_key_digest(api_key)
        key_prefix = api_key[:KEY_PREFIX_LENGTH]

        cached = await self.cache.get(domain_prefix_cache_key(key_prefix))
        if cached is not None:
            cached_digest, record = cached
            if hmac.compare_digest(cached_digest, digest):
                return record
        negative_key = domain_key_cache_key(digest)
        if await self.cache.get(negative_key) is MISSING:
            return None

        row = await self.repo.get_by_key_prefix(key_prefix)
        if row is None:
            logger.warning("api_key_not_found", prefix=key_prefix)
            await self.cache.set(negative_key, MISSING, settings.negative_domain_cache_ttl)
            return None

        try:
            self.password_hasher.verify(row.api_key_hash, api_key)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            logger.warning("api_key_hash_mismatch", domain_id=str(row.id))
            await self.cache.set(negative_key, MISSING, settings.negative_domain_cache_ttl)
            return None

        record = to_record(row)
        await self.cache.set(
            domain_prefix_cache_key(key_prefix), (digest, record), settings.domain_cache_ttl
        )
        return record

    async def find_by_domain(self, domain_url: str) -> DomainRecord | None:
        """Resolve a domain (any spelling) to its record, cached by canonical host."""
        canonical = normalize_domain(domain_url)
        cache_key = domain_url_cache_key(canonical)
        cached = await self.cache.get(cache_key)
        if cached is MISSING:
            return None
        if cached is not None:
            return cached

        row = await self.repo.get_by_url(canonical)
        if row is None:
            await self.cache.set(cache_key, MISSING, settings.negative_domain_cache_ttl)
            return None
        record = to_record(row)
        await self.cache.set(cache_key, record, settings.domain_cache_ttl)
        return record

    async def update_status(
        self, domain_id: UUID, status: DomainStatus, reason: str | None = None
    ) -> DomainRecord:
        """Set status. Suspension stamps time and reason; reactivation clears them."""
        row = await self.repo.get(domain_id)
        if row is None:
            raise NotFoundError("Domain", str(domain_id))

        previous = row.status
        row.status = status.value
        if status is DomainStatus.SUSPENDED:
            row.suspended_at = datetime.now(UTC)
            row.suspended_reason = reason or "manual"
        else:
            row.suspended_at = None
            row.suspended_reason = None
        await self.db.commit()
        await self.db.refresh(row)

        await self.invalidate(row)

        logger.info(
            "domain_status_changed",
            domain_id=str(domain_id),
            domain=row.domain_url,
            previous_status=previous,
            status=status.value,
            reason=reason,
        )
        return to_record(row)

    async def invalidate(self, row: AuthorizedDomain) -> None:
        """Drop every cache entry that may hold this domain."""
        await self.cache.invalidate(domain_prefix_cache_key(row.api_key_prefix))
        await self.cache.invalidate(domain_url_cache_key(row.domain_url))

    async def webhook_secret_for(self, domain_id: UUID) -> str | None:
        row = await self.repo.get(domain_id)
        return row.webhook_secret if row is not None else None
