"""
shared/utils/security.py
JWT verification.
Tokens are issued by the identity service with the shared HS256 secret;
this service only verifies them.
"""

from jose import JWTError, jwt

from config.settings import settings


def verify_access_token(token: str) -> dict:
    """
    Decode and verify a JWT access token.
    Raises JWTError on invalid/expired token.
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload
