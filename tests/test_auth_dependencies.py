"""
Tests for the FastAPI auth dependency require_valid_token.

Protected endpoints must reject missing, expired and malformed tokens with
401 and a Bearer challenge.
"""
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from stemhub.auth.dependencies import require_valid_token
from stemhub.auth.tokens import create_access_token


def _creds(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.mark.asyncio
async def test_require_valid_token_missing():
    """No Authorization header raises 401."""
    with pytest.raises(HTTPException) as exc_info:
        await require_valid_token(credentials=None)
    assert exc_info.value.status_code == 401
    assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}


@pytest.mark.asyncio
async def test_require_valid_token_garbage():
    """A non-JWT credential raises 401."""
    with pytest.raises(HTTPException) as exc_info:
        await require_valid_token(credentials=_creds("not-a-token"))
    assert exc_info.value.status_code == 401
    assert "Invalid access token" in exc_info.value.detail


@pytest.mark.asyncio
async def test_require_valid_token_returns_claims():
    """A valid token yields its claims; sub is the acting user."""
    claims = await require_valid_token(credentials=_creds(create_access_token("user-alice", expires_hours=1)))
    assert claims["sub"] == "user-alice"
    assert claims["type"] == "access"
