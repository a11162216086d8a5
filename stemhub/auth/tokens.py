"""
Access Token Generation and Validation

The identity collaborator issues HS256 JWTs whose ``sub`` claim is the user
id.  StemHub only validates them; ``create_access_token`` exists for tests
and local tooling.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from typing_extensions import Required, TypedDict

from stemhub.config import settings


class AccessCodeError(Exception):
    """Raised when access token validation fails."""


class TokenClaims(TypedDict, total=False):
    """Decoded JWT payload returned by validate_access_code.

    ``type``, ``iat``, ``exp`` and ``sub`` are always present.
    """

    type: Required[str]
    iat: Required[int]
    exp: Required[int]
    sub: Required[str]


def _get_secret() -> str:
    if not settings.access_token_secret:
        raise AccessCodeError(
            "STEMHUB_ACCESS_TOKEN_SECRET not configured. "
            "Generate one with: openssl rand -hex 32"
        )
    return settings.access_token_secret


def create_access_token(user_id: str, expires_hours: float = 24) -> str:
    """Sign an access token for *user_id* valid for *expires_hours*."""
    if expires_hours <= 0:
        raise AccessCodeError("Token lifetime must be positive")
    now = datetime.now(timezone.utc)
    payload = {
        "type": "access",
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=expires_hours)).timestamp()),
    }
    return jwt.encode(payload, _get_secret(), algorithm=settings.access_token_algorithm)


def validate_access_code(token: str) -> TokenClaims:
    """
    Validate an access token and return its claims.

    Raises:
        AccessCodeError: If the token is invalid, expired, malformed or
            carries no user id.
    """
    secret = _get_secret()
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.access_token_algorithm])
    except jwt.ExpiredSignatureError:
        raise AccessCodeError("Access token has expired")
    except jwt.InvalidTokenError as e:
        raise AccessCodeError(f"Invalid access token: {e}")

    raw_type = payload.get("type")
    if raw_type != "access":
        raise AccessCodeError("Invalid token type")
    raw_iat = payload.get("iat", 0)
    raw_exp = payload.get("exp", 0)
    if not isinstance(raw_iat, int) or not isinstance(raw_exp, int):
        raise AccessCodeError("Malformed token: iat/exp must be integers")
    raw_sub = payload.get("sub")
    if not isinstance(raw_sub, str) or not raw_sub:
        raise AccessCodeError("Malformed token: sub must be a user id")

    return TokenClaims(type=raw_type, iat=raw_iat, exp=raw_exp, sub=raw_sub)
