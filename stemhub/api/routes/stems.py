"""Stem route handlers.

Endpoint summary:
  POST /tracks/{track_id}/stems   — record an uploaded stem (a fresh layer or a new take)
  GET  /tracks/{track_id}/stems   — live stems; ?current=false lists every take
  GET  /stems/{stem_id}           — one stem

The audio bytes live in object storage; these endpoints only record the
reference.  All endpoints require a valid JWT Bearer token from a track
member.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.api.routes.access import require_member, user_id_of
from stemhub.auth import TokenClaims, require_valid_token
from stemhub.db import get_db
from stemhub.models.workflow import StemCreate, StemListResponse, StemResponse
from stemhub.services import stem_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/tracks/{track_id}/stems",
    response_model=StemResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="uploadStem",
    summary="Record an uploaded stem",
)
async def upload_stem(
    track_id: str,
    body: StemCreate,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StemResponse:
    """Set ``replacesStemId`` to continue an existing layer's lineage."""
    user_id = user_id_of(claims)
    await require_member(db, track_id, user_id)
    stem = await stem_store.upload_stem(
        db,
        track_id=track_id,
        category=body.category,
        file_path=body.file_path,
        uploader_user_id=user_id,
        file_name=body.file_name,
        instrument=body.instrument,
        replaces_stem_id=body.replaces_stem_id,
        key=body.key,
        bpm=body.bpm,
    )
    await db.commit()
    return StemResponse.model_validate(stem)


@router.get(
    "/tracks/{track_id}/stems",
    response_model=StemListResponse,
    operation_id="listStems",
)
async def list_stems(
    track_id: str,
    current: bool = Query(True, description="Only the newest take of each layer"),
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StemListResponse:
    await require_member(db, track_id, user_id_of(claims))
    if current:
        rows = await stem_store.list_current_stems(db, track_id)
    else:
        rows = await stem_store.list_track_stems(db, track_id)
    return StemListResponse(stems=[StemResponse.model_validate(s) for s in rows])


@router.get(
    "/stems/{stem_id}",
    response_model=StemResponse,
    operation_id="getStem",
)
async def get_stem(
    stem_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StemResponse:
    stem = await stem_store.get_stem(db, stem_id)
    await require_member(db, stem.track_id, user_id_of(claims))
    return StemResponse.model_validate(stem)
