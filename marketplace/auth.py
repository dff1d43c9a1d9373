"""Acting-user context passed into the service layer.

Requests carry a bearer JWT whose ``sub`` is the user id and whose ``role``
claim is one of :class:`Role`.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from marketplace.config import settings

DEV_JWT_SECRET = "dev-jwt-secret"

security = HTTPBearer(auto_error=False)


class Role(enum.Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """The authenticated user on whose behalf an operation runs."""

    user_id: uuid.UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def _signing_key() -> str:
    if settings.jwt_secret_key:
        return settings.jwt_secret_key
    return DEV_JWT_SECRET if settings.env == "development" else ""


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(
    user_id: uuid.UUID, role: Role, expires_delta: timedelta | None = None
) -> str:
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    claims = {"sub": str(user_id), "role": role.value, "exp": expire, "iat": datetime.now(UTC)}
    return jwt.encode(claims, _signing_key(), algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Actor:
    key = _signing_key()
    if not key:
        raise _unauthorized("Authentication is not configured")
    try:
        payload = jwt.decode(token, key, algorithms=[settings.jwt_algorithm])
        return Actor(user_id=uuid.UUID(payload["sub"]), role=Role(payload["role"]))
    except (JWTError, KeyError, TypeError, ValueError):
        raise _unauthorized("Invalid or expired token")


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    return decode_token(credentials.credentials)
