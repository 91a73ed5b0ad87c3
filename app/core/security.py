import logging
import time
from typing import Iterable, Optional

import jwt
from fastapi import Request

from app.core.config import settings
from app.core.exceptions import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)


def issue_token(sub: str, role: str, ttl_seconds: int = 3600) -> str:
    """Mint an admin bearer token. Used by operators' tooling and the tests."""
    now = int(time.time())
    payload = {
        "iss": settings.AUTH_JWT_ISSUER,
        "aud": settings.AUTH_JWT_AUDIENCE,
        "iat": now,
        "nbf": now,
        "exp": now + ttl_seconds,
        "sub": sub,
        "role": role,
    }
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            issuer=settings.AUTH_JWT_ISSUER,
            options={"verify_exp": True},
        )
    except jwt.PyJWTError as e:
        logger.warning(f"Bearer token rejected: {str(e)}")
        raise AuthenticationError("Invalid or expired token") from e


def _bearer(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_roles(roles: Iterable[str]):
    """FastAPI dependency factory: the caller's ``role`` claim must be in ``roles``."""
    allowed = set(roles)

    def dependency(request: Request) -> dict:
        token = _bearer(request)
        if token is None:
            raise AuthenticationError("Missing bearer token")
        claims = decode_token(token)
        role = claims.get("role")
        if role not in allowed:
            logger.warning(
                "role_denied",
                extra={"user_id": claims.get("sub"), "path": request.url.path},
            )
            raise PermissionDeniedError(f"Role {role!r} may not perform this action")
        return claims

    return dependency
