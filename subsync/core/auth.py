"""
Caller identity for authenticated billing endpoints.

Validates Bearer JWTs and extracts the internal user id (`sub`) and email.
The X-User-Id header is honored only when AUTH_ALLOW_USER_ID_HEADER is on
(local development and tests). The user id is never read from request bodies.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Header, Request

from subsync.core.config import settings
from subsync.core.errors import UnauthenticatedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


def _algorithms() -> list:
    return [a.strip() for a in settings.AUTH_JWT_ALGORITHMS.split(",") if a.strip()]


def verify_jwt(token: str) -> Identity:
    """
    Verify a JWT and build the caller identity.

    Raises:
        UnauthenticatedError: expired, malformed or unsigned token, or no
            verification secret configured
    """
    if not settings.AUTH_JWT_SECRET:
        logger.warning("Bearer token received but AUTH_JWT_SECRET is not configured")
        raise UnauthenticatedError("Token verification unavailable")

    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=_algorithms(),
            options={"verify_signature": True, "verify_exp": True, "require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    user_id = claims.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid token")
    return Identity(user_id=str(user_id), email=claims.get("email"))


async def get_current_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Local/test only: caller user ID"),
    x_user_email: Optional[str] = Header(None, description="Local/test only: caller email"),
) -> Identity:
    """
    Resolve the caller.

    Priority:
    1. Bearer JWT from Authorization header (an invalid token is final)
    2. X-User-Id header, if enabled
    3. 401
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_jwt(auth_header[7:])

    if x_user_id and settings.AUTH_ALLOW_USER_ID_HEADER:
        return Identity(user_id=x_user_id, email=x_user_email)

    raise UnauthenticatedError("Missing Authorization (Bearer JWT)")
