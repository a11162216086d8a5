"""Authorization helpers shared by the route modules.

Authentication is the identity collaborator's job; these helpers only
answer "may this user touch this track?".
"""
from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.auth.tokens import TokenClaims
from stemhub.services import tracks


def user_id_of(claims: TokenClaims) -> str:
    return claims["sub"]


async def require_member(db: AsyncSession, track_id: str, user_id: str) -> None:
    """403 unless *user_id* owns or collaborates on the track (404 if it is missing)."""
    if not await tracks.is_member(db, track_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this track.",
        )


async def require_owner(db: AsyncSession, track_id: str, user_id: str) -> None:
    """403 unless *user_id* owns the track (404 if it is missing)."""
    if not await tracks.is_owner(db, track_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the track owner can do this.",
        )
