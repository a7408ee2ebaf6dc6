"""
Auth utilities for the PersonaChat API.

Verifies identity-provider bearer JWTs and extracts the uid from ``sub``.
Internal cron endpoints use a static shared secret instead.
"""
from fastapi import Header, Request
from typing import Any, Dict, List, Optional
import hmac
import logging

import jwt

from personachat.core.config import settings
from personachat.core.errors import UnauthenticatedError, UnauthorizedError

logger = logging.getLogger(__name__)


def _algorithms() -> List[str]:
    return [alg.strip() for alg in (settings.AUTH_JWT_ALGORITHMS or "HS256").split(",") if alg.strip()]


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify a bearer JWT and return its claims.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        Decoded claims; 'sub' is guaranteed to be a non-empty string

    Raises:
        UnauthenticatedError: missing secret, invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.error("AUTH_JWT_SECRET not configured; rejecting bearer token")
        raise UnauthenticatedError("Authentication unavailable")

    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.AUTH_JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=_algorithms(),
            audience=settings.AUTH_JWT_AUDIENCE,
            issuer=settings.AUTH_JWT_ISSUER,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    uid = payload.get("sub")
    if not uid or not isinstance(uid, str):
        raise UnauthenticatedError("Invalid token")
    return payload


async def get_current_user_id(request: Request) -> str:
    """
    Extract the authenticated uid from the Authorization header.

    After successful auth the user row is upserted (seeded with the token's
    email/name/picture) so downstream services can assume it exists.

    Raises:
        UnauthenticatedError: missing or invalid bearer token
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthenticatedError("Authentication required")

    claims = decode_token(auth_header[7:].strip())
    uid = claims["sub"]

    from personachat.features.users.service import get_or_create_user
    get_or_create_user(
        uid,
        email=claims.get("email"),
        display_name=claims.get("name"),
        photo_url=claims.get("picture"),
    )

    request.state.user_id = uid
    return uid


async def require_internal_api_key(x_api_key: Optional[str] = Header(None)) -> None:
    """Guard for cron endpoints: ``x-api-key`` must equal INTERNAL_API_KEY."""
    expected = settings.INTERNAL_API_KEY
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise UnauthorizedError("Unauthorized", status_code=401)
