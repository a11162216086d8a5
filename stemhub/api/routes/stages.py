"""Stage route handlers.

Endpoint summary:
  GET  /stages/{stage_id}                 — one stage
  POST /stages/{stage_id}/reject          — discard the active stage (owner only)
  GET  /stages/{stage_id}/version-stems   — the stage's frozen stem set
  GET  /stages/{stage_id}/guide           — the stage's reference mix
  POST /stages/{stage_id}/guide           — mixing collaborator's "mix complete" callback
  POST /stages/{stage_id}/upstreams       — submit an upstream against the active stage
  GET  /stages/{stage_id}/upstreams       — upstreams targeting the stage

All endpoints require a valid JWT Bearer token from a track member.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.api.routes.access import require_member, require_owner, user_id_of
from stemhub.auth import TokenClaims, require_valid_token
from stemhub.db import get_db, unit_of_work
from stemhub.db.models import Guide
from stemhub.models.workflow import (
    GuideResponse,
    MixCompleteRequest,
    StageResponse,
    UpstreamCreate,
    UpstreamListResponse,
    UpstreamResponse,
    VersionStemListResponse,
    VersionStemResponse,
)
from stemhub.services import guides, stages, upstreams, version_stems

logger = logging.getLogger(__name__)

router = APIRouter()


async def _guide_response(db: AsyncSession, guide: Guide) -> GuideResponse:
    linked_stems = await guides.list_guide_stems(db, guide.guide_id)
    linked_snapshot = await guides.list_guide_version_stems(db, guide.guide_id)
    return GuideResponse(
        guide_id=guide.guide_id,
        stage_id=guide.stage_id,
        track_id=guide.track_id,
        mixed_file_path=guide.mixed_file_path,
        waveform_data_path=guide.waveform_data_path,
        stem_ids=[s.stem_id for s in linked_stems],
        version_stem_ids=[vs.version_stem_id for vs in linked_snapshot],
        updated_at=guide.updated_at,
    )


@router.get(
    "/stages/{stage_id}",
    response_model=StageResponse,
    operation_id="getStage",
)
async def get_stage(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StageResponse:
    stage = await stages.get_stage(db, stage_id)
    await require_member(db, stage.track_id, user_id_of(claims))
    return StageResponse.model_validate(stage)


@router.post(
    "/stages/{stage_id}/reject",
    response_model=StageResponse,
    operation_id="rejectStage",
    summary="Discard the active stage",
)
async def reject_stage(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StageResponse:
    """Owner only.  Returns 409 if the stage is not active.

    The track has no active stage afterwards; roll back to reopen one.
    """
    stage = await stages.get_stage(db, stage_id)
    await require_owner(db, stage.track_id, user_id_of(claims))
    return StageResponse.model_validate(await stages.reject_stage(db, stage_id))


@router.get(
    "/stages/{stage_id}/version-stems",
    response_model=VersionStemListResponse,
    operation_id="listVersionStems",
)
async def list_version_stems(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> VersionStemListResponse:
    stage = await stages.get_stage(db, stage_id)
    await require_member(db, stage.track_id, user_id_of(claims))
    rows = await version_stems.list_for_stage(db, stage_id)
    return VersionStemListResponse(
        version_stems=[VersionStemResponse.model_validate(vs) for vs in rows]
    )


@router.get(
    "/stages/{stage_id}/guide",
    response_model=GuideResponse,
    operation_id="getGuide",
)
async def get_guide(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> GuideResponse:
    stage = await stages.get_stage(db, stage_id)
    await require_member(db, stage.track_id, user_id_of(claims))
    guide = await guides.get_guide_for_stage(db, stage_id)
    if guide is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Guide has not been built for this stage yet",
        )
    return await _guide_response(db, guide)


@router.post(
    "/stages/{stage_id}/guide",
    response_model=GuideResponse,
    operation_id="recordMixResult",
    summary="Mixing collaborator callback: the stage's mix is ready",
)
async def record_mix_result(
    stage_id: str,
    body: MixCompleteRequest,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> GuideResponse:
    """Idempotent: repeating the callback updates the same Guide in place."""
    stage = await stages.get_stage(db, stage_id)
    await require_member(db, stage.track_id, user_id_of(claims))
    async with unit_of_work(db):
        guide = await guides.record_mix_result(
            db,
            stage_id,
            mixed_file_path=body.mixed_file_path,
            waveform_data_path=body.waveform_data_path,
            stem_paths=body.stem_paths,
        )
    return await _guide_response(db, guide)


@router.post(
    "/stages/{stage_id}/upstreams",
    response_model=UpstreamResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="createUpstream",
    summary="Propose a set of stems against the active stage",
)
async def create_upstream(
    stage_id: str,
    body: UpstreamCreate,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> UpstreamResponse:
    """Returns 409 if the stage is not active, 422 if a layer is proposed twice."""
    upstream = await upstreams.create_upstream(
        db,
        stage_id=stage_id,
        author_user_id=user_id_of(claims),
        proposed_stem_ids=body.stem_ids,
        title=body.title,
        description=body.description,
        reviewer_ids=body.reviewer_ids,
    )
    return UpstreamResponse.model_validate(upstream)


@router.get(
    "/stages/{stage_id}/upstreams",
    response_model=UpstreamListResponse,
    operation_id="listStageUpstreams",
)
async def list_stage_upstreams(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> UpstreamListResponse:
    stage = await stages.get_stage(db, stage_id)
    await require_member(db, stage.track_id, user_id_of(claims))
    rows = await upstreams.list_upstreams(db, stage_id=stage_id)
    return UpstreamListResponse(upstreams=[UpstreamResponse.model_validate(u) for u in rows])
