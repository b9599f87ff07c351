"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The bearer token is the only identity input; there is no local user table.
"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from config.redis_client import RedisCache, get_redis
from shared.models.models import UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)

STAFF_ROLES = (UserRole.RECEPTION, UserRole.ADMIN)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.role: UserRole = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]
        self.therapist_id: Optional[str] = payload.get("therapist_id")

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def actor(self) -> str:
        """Value recorded in created_by / cancelled_by / audit logs."""
        return f"{self.role.value}:{self.user_id}"

    def can_manage_therapist(self, therapist_id) -> bool:
        if self.is_staff:
            return True
        return self.role == UserRole.THERAPIST and self.therapist_id == str(therapist_id)


async def _decode(credentials: HTTPAuthorizationCredentials, redis) -> TokenData:
    try:
        payload = verify_access_token(credentials.credentials)
        token_data = TokenData(payload)
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Check if token has been revoked
    if await RedisCache(redis).is_token_revoked(token_data.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )
    return token_data


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await _decode(credentials, redis)


async def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> Optional[TokenData]:
    """Returns the principal if a token was sent, None otherwise. For public endpoints."""
    if not credentials:
        return None
    return await _decode(credentials, redis)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        token_data: TokenData = Depends(get_token_data),
    ) -> TokenData:
        if token_data.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return token_data


# Convenience role dependencies
require_therapist_or_staff = RoleRequired(UserRole.THERAPIST, *STAFF_ROLES)


def ensure_can_manage_therapist(token_data: TokenData, therapist_id: UUID) -> None:
    """Therapists may only manage their own calendar; staff may manage any."""
    if not token_data.can_manage_therapist(therapist_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only manage your own schedule",
        )
