"""Track route handlers.

Endpoint summary:
  POST /tracks                                      — create a track and open v1
  GET  /tracks/{track_id}                           — track metadata
  GET  /tracks/{track_id}/collaborators             — owner + collaborator ids
  POST /tracks/{track_id}/collaborators             — add a collaborator (owner only)
  GET  /tracks/{track_id}/stages                    — version history
  GET  /tracks/{track_id}/stages/active             — the stage open for upstreams
  GET  /tracks/{track_id}/stages/{version}          — one stage by version number
  GET  /tracks/{track_id}/versions/{version}/stems  — newest frozen take per category
  GET  /tracks/{track_id}/upstreams                 — upstreams across all stages
  POST /tracks/{track_id}/rollback                  — discard stages after a version (owner only)

All endpoints require a valid JWT Bearer token.  No business logic lives
here; workflow errors surface through the app-level WorkflowError handler.
"""
from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.api.routes.access import require_member, require_owner, user_id_of
from stemhub.auth import TokenClaims, require_valid_token
from stemhub.db import get_db
from stemhub.models.workflow import (
    CollaboratorAdd,
    CollaboratorListResponse,
    RollbackRequest,
    RollbackResponse,
    StageListResponse,
    StageResponse,
    TrackCreate,
    TrackResponse,
    UpstreamListResponse,
    UpstreamResponse,
    VersionStemListResponse,
    VersionStemResponse,
)
from stemhub.services import rollback as rollback_service
from stemhub.services import stages, tracks, upstreams, version_stems
from stemhub.services.lifecycle import UpstreamStatus

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/tracks",
    response_model=TrackResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="createTrack",
    summary="Create a track and open its first stage",
)
async def create_track(
    body: TrackCreate,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> TrackResponse:
    """Create a track owned by the caller.

    Version 1 is opened immediately; its snapshot is empty until stems are
    uploaded and merged through an upstream.
    """
    track, _stage = await tracks.initialize_track(
        db,
        title=body.title,
        owner_user_id=user_id_of(claims),
        collaborator_ids=body.collaborator_ids,
        description=body.description,
        genre=body.genre,
        bpm=body.bpm,
        key_signature=body.key_signature,
    )
    return TrackResponse.model_validate(track)


@router.get(
    "/tracks/{track_id}",
    response_model=TrackResponse,
    operation_id="getTrack",
    summary="Get track metadata",
)
async def get_track(
    track_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> TrackResponse:
    await require_member(db, track_id, user_id_of(claims))
    return TrackResponse.model_validate(await tracks.get_track(db, track_id))


@router.get(
    "/tracks/{track_id}/collaborators",
    response_model=CollaboratorListResponse,
    operation_id="listCollaborators",
)
async def list_collaborators(
    track_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> CollaboratorListResponse:
    await require_member(db, track_id, user_id_of(claims))
    track = await tracks.get_track(db, track_id)
    return CollaboratorListResponse(
        owner_user_id=track.owner_user_id,
        collaborator_ids=await tracks.list_collaborator_ids(db, track_id),
    )


@router.post(
    "/tracks/{track_id}/collaborators",
    response_model=CollaboratorListResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="addCollaborator",
    summary="Grant a user access to the track",
)
async def add_collaborator(
    track_id: str,
    body: CollaboratorAdd,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> CollaboratorListResponse:
    """Owner only.  Adding the owner or an existing collaborator is a no-op."""
    await require_owner(db, track_id, user_id_of(claims))
    await tracks.add_collaborator(db, track_id, body.user_id, role=body.role)
    await db.commit()
    track = await tracks.get_track(db, track_id)
    return CollaboratorListResponse(
        owner_user_id=track.owner_user_id,
        collaborator_ids=await tracks.list_collaborator_ids(db, track_id),
    )


@router.get(
    "/tracks/{track_id}/stages",
    response_model=StageListResponse,
    operation_id="listStages",
    summary="Version history of a track",
)
async def list_stages(
    track_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StageListResponse:
    await require_member(db, track_id, user_id_of(claims))
    rows = await stages.list_stages(db, track_id)
    return StageListResponse(stages=[StageResponse.model_validate(s) for s in rows])


@router.get(
    "/tracks/{track_id}/stages/active",
    response_model=StageResponse,
    operation_id="getActiveStage",
)
async def get_active_stage(
    track_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StageResponse:
    """Returns 404 when the active stage was rejected and no rollback happened since."""
    await require_member(db, track_id, user_id_of(claims))
    stage = await stages.get_active_stage(db, track_id)
    if stage is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Track has no active stage",
        )
    return StageResponse.model_validate(stage)


@router.get(
    "/tracks/{track_id}/stages/{version}",
    response_model=StageResponse,
    operation_id="getStageByVersion",
)
async def get_stage_by_version(
    track_id: str,
    version: int,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StageResponse:
    await require_member(db, track_id, user_id_of(claims))
    return StageResponse.model_validate(await stages.get_stage_by_version(db, track_id, version))


@router.get(
    "/tracks/{track_id}/versions/{version}/stems",
    response_model=VersionStemListResponse,
    operation_id="getLatestStemsPerCategory",
    summary="Newest frozen take of each category at or before a version",
)
async def latest_stems_per_category(
    track_id: str,
    version: int,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> VersionStemListResponse:
    await require_member(db, track_id, user_id_of(claims))
    latest = await version_stems.latest_per_category(db, track_id, version)
    return VersionStemListResponse(
        version_stems=[VersionStemResponse.model_validate(latest[c]) for c in sorted(latest)]
    )


@router.get(
    "/tracks/{track_id}/upstreams",
    response_model=UpstreamListResponse,
    operation_id="listTrackUpstreams",
)
async def list_track_upstreams(
    track_id: str,
    state: Optional[Literal["pending", "approved", "rejected"]] = Query(
        None, description="Filter by aggregate status"
    ),
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> UpstreamListResponse:
    await require_member(db, track_id, user_id_of(claims))
    rows = await upstreams.list_upstreams(
        db,
        track_id=track_id,
        status=UpstreamStatus(state) if state else None,
    )
    return UpstreamListResponse(upstreams=[UpstreamResponse.model_validate(u) for u in rows])


@router.post(
    "/tracks/{track_id}/rollback",
    response_model=RollbackResponse,
    operation_id="rollbackTrack",
    summary="Discard every stage after a version and reopen it",
)
async def rollback_track(
    track_id: str,
    body: RollbackRequest,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> RollbackResponse:
    """Owner only.

    Returns 404 if the version does not exist, 409 if it is already active,
    500 if the cascade could not complete (nothing is changed).
    """
    await require_owner(db, track_id, user_id_of(claims))
    result = await rollback_service.rollback(db, track_id, body.target_version)
    return RollbackResponse.model_validate(result)
