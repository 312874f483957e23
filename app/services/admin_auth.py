"""
Admin authentication service.

Admin callers present a Bearer JWT signed with ADMIN_JWT_SECRET whose
``role`` claim names the admin role. Tokens are minted out of band (see
``issue_token``); there is no login flow.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from structlog import get_logger

from app.exceptions import AuthenticationError, AuthorizationError, FeatureUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class AdminIdentity:
    subject: str
    role: str


class AdminAuthService:
    """Admin authentication service."""

    def __init__(self, jwt_secret: str, algorithm: str = "HS256", required_role: str = "admin"):
        self.jwt_secret = jwt_secret
        self.algorithm = algorithm
        self.required_role = required_role

    def issue_token(self, subject: str, role: str | None = None, expire_hours: int = 24) -> str:
        if not self.jwt_secret:
            raise FeatureUnavailableError("admin_api")
        now = datetime.now(UTC)
        payload = {
            "sub": subject,
            "role": role or self.required_role,
            "iat": now,
            "exp": now + timedelta(hours=expire_hours),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.algorithm)

    def verify_token(self, token: str | None) -> AdminIdentity:
        """
        Verify an admin JWT.

        Raises:
            FeatureUnavailableError: ADMIN_JWT_SECRET is not configured
            AuthenticationError: token missing, expired or invalid
            AuthorizationError: token valid but the role is not admin
        """
        if not self.jwt_secret:
            raise FeatureUnavailableError("admin_api")
        if not token:
            logger.warning("admin_auth_no_token")
            raise AuthenticationError("missing admin token")

        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            logger.warning("admin_token_expired")
            raise AuthenticationError("admin token expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning("admin_token_invalid", error=str(e))
            raise AuthenticationError("invalid admin token") from e

        identity = AdminIdentity(subject=str(payload.get("sub", "")), role=str(payload.get("role", "")))
        if identity.role != self.required_role:
            logger.warning("admin_auth_insufficient_role", subject=identity.subject, role=identity.role)
            raise AuthorizationError(f"role {identity.role or 'none'} is not {self.required_role}")

        logger.debug("admin_auth_success", subject=identity.subject)
        return identity
