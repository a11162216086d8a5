"""
FastAPI Authentication Dependencies

Every workflow endpoint requires a valid bearer token; the acting user is
the token's ``sub`` claim.
"""
from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from stemhub.auth.tokens import AccessCodeError, TokenClaims, validate_access_code

logger = logging.getLogger(__name__)

# auto_error=False allows us to provide custom error messages
security = HTTPBearer(auto_error=False)


async def require_valid_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> TokenClaims:
    """
    FastAPI dependency that validates access tokens.

    Usage:
        @router.post("/protected")
        async def protected_endpoint(claims: TokenClaims = Depends(require_valid_token)):
            user_id = claims["sub"]

    Raises:
        HTTPException 401: If the token is missing, invalid or expired.
    """
    if credentials is None:
        logger.warning("Access attempt without token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = validate_access_code(credentials.credentials)
    except AccessCodeError as e:
        logger.warning("Invalid token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.debug("Valid token for user %s, expires at %s", claims["sub"][:8], claims["exp"])
    return claims
