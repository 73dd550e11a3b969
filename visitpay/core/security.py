"""Principal tokens.

Identity lives in a separate service; this module only verifies the bearer
token it issues and turns the claims into a :class:`Principal`.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from visitpay.config import Settings
from visitpay.core.exceptions import AuthenticationError
from visitpay.domain.booking_state import ActorRole

TOKEN_ROLES = frozenset({ActorRole.CUSTOMER, ActorRole.PRO, ActorRole.ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: uuid.UUID
    role: ActorRole
    pro_id: uuid.UUID | None = None

    @property
    def label(self) -> str:
        if self.role == ActorRole.PRO and self.pro_id:
            return f"pro:{self.pro_id}"
        return f"{self.role.value}:{self.user_id}"


# Internal actor used by the webhook reconciler and background jobs.
SYSTEM_PRINCIPAL = Principal(user_id=uuid.UUID(int=0), role=ActorRole.SYSTEM)


def create_access_token(
    settings: Settings,
    user_id: uuid.UUID,
    role: ActorRole,
    pro_id: uuid.UUID | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a JWT access token (tooling and tests)."""
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode: dict[str, Any] = {
        "sub": str(user_id),
        "role": role.value,
        "exp": expire,
        "type": "access",
    }
    if pro_id:
        to_encode["pro_id"] = str(pro_id)
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(settings: Settings, token: str, token_type: str = "access") -> dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise AuthenticationError(f"Token validation failed: {str(e)}")
    if payload.get("type") != token_type:
        raise AuthenticationError("Invalid token type")
    return payload


def principal_from_token(settings: Settings, token: str) -> Principal:
    """Build a principal from a verified access token."""
    payload = verify_token(settings, token)
    try:
        user_id = uuid.UUID(payload["sub"])
        role = ActorRole(payload["role"])
        pro_id = uuid.UUID(payload["pro_id"]) if payload.get("pro_id") else None
    except (KeyError, ValueError):
        raise AuthenticationError("Invalid token payload")

    if role not in TOKEN_ROLES:
        raise AuthenticationError("Invalid token role")
    if role == ActorRole.PRO and pro_id is None:
        raise AuthenticationError("Pro token is missing pro_id")

    return Principal(user_id=user_id, role=role, pro_id=pro_id)
