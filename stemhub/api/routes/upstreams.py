"""Upstream, review and comment route handlers.

Endpoint summary:
  GET    /upstreams/{upstream_id}              — one upstream
  GET    /upstreams/{upstream_id}/diff         — new / modify / unchanged entries
  GET    /upstreams/{upstream_id}/reviewers    — reviews incl. the owner's
  POST   /upstreams/{upstream_id}/reviewers    — assign reviewers
  POST   /upstreams/{upstream_id}/decisions    — record the caller's decision
  POST   /upstreams/{upstream_id}/merge        — re-merge an approved upstream (owner only)
  GET    /upstreams/{upstream_id}/comments     — comments in playback order
  POST   /upstreams/{upstream_id}/comments     — comment at a playback position
  PATCH  /comments/{comment_id}                — edit a comment (author only)
  DELETE /comments/{comment_id}                — delete a comment (author only)

All endpoints require a valid JWT Bearer token.  Decision recording is
rate limited per client IP.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.api.routes.access import require_member, require_owner, user_id_of
from stemhub.auth import TokenClaims, require_valid_token
from stemhub.config import settings
from stemhub.db import get_db
from stemhub.models.workflow import (
    CommentCreate,
    CommentListResponse,
    CommentResponse,
    CommentUpdate,
    DecisionRequest,
    DecisionResponse,
    DiffEntryResponse,
    DiffResponse,
    ReviewerAssign,
    ReviewListResponse,
    ReviewResponse,
    StageResponse,
    UpstreamResponse,
)
from stemhub.services import reviews, stages, upstreams

logger = logging.getLogger(__name__)

router = APIRouter()

# Rate limiter - uses IP address as key
limiter = Limiter(key_func=get_remote_address)


@router.get(
    "/upstreams/{upstream_id}",
    response_model=UpstreamResponse,
    operation_id="getUpstream",
)
async def get_upstream(
    upstream_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> UpstreamResponse:
    upstream = await upstreams.get_upstream(db, upstream_id)
    await require_member(db, upstream.track_id, user_id_of(claims))
    return UpstreamResponse.model_validate(upstream)


@router.get(
    "/upstreams/{upstream_id}/diff",
    response_model=DiffResponse,
    operation_id="getUpstreamDiff",
    summary="Per-stem classification against the target stage",
)
async def get_upstream_diff(
    upstream_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> DiffResponse:
    upstream = await upstreams.get_upstream(db, upstream_id)
    await require_member(db, upstream.track_id, user_id_of(claims))
    entries = await upstreams.list_diff(db, upstream_id)
    return DiffResponse(
        upstream_id=upstream_id,
        entries=[DiffEntryResponse.model_validate(e) for e in entries],
    )


@router.get(
    "/upstreams/{upstream_id}/reviewers",
    response_model=ReviewListResponse,
    operation_id="listReviews",
)
async def list_reviews(
    upstream_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> ReviewListResponse:
    upstream = await upstreams.get_upstream(db, upstream_id)
    await require_member(db, upstream.track_id, user_id_of(claims))
    rows = await reviews.list_reviews(db, upstream_id)
    return ReviewListResponse(reviews=[ReviewResponse.model_validate(r) for r in rows])


@router.post(
    "/upstreams/{upstream_id}/reviewers",
    response_model=ReviewListResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="assignReviewers",
)
async def assign_reviewers(
    upstream_id: str,
    body: ReviewerAssign,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> ReviewListResponse:
    """Returns 403 if any user is not a member of the track."""
    upstream = await upstreams.get_upstream(db, upstream_id)
    await require_member(db, upstream.track_id, user_id_of(claims))
    await reviews.assign_reviewers(db, upstream_id, body.user_ids)
    rows = await reviews.list_reviews(db, upstream_id)
    return ReviewListResponse(reviews=[ReviewResponse.model_validate(r) for r in rows])


@router.post(
    "/upstreams/{upstream_id}/decisions",
    response_model=DecisionResponse,
    operation_id="recordDecision",
    summary="Approve or reject an upstream",
)
@limiter.limit(settings.decision_rate_limit)
async def record_decision(
    request: Request,
    response: Response,
    upstream_id: str,
    body: DecisionRequest,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> DecisionResponse:
    """Record the caller's decision.

    When it completes a unanimous approval the upstream is merged in the
    same transaction and the new active stage is returned.

    Returns 403 if the caller is not a reviewer, 409 if the target stage is
    no longer active or the upstream is already decided.
    """
    outcome = await reviews.record_decision(db, upstream_id, user_id_of(claims), body.decision)
    return DecisionResponse(
        review=ReviewResponse.model_validate(outcome.review),
        upstream_status=outcome.status.value,
        merged_stage=(
            StageResponse.model_validate(outcome.merged_stage)
            if outcome.merged_stage is not None
            else None
        ),
    )


@router.post(
    "/upstreams/{upstream_id}/merge",
    response_model=StageResponse,
    operation_id="mergeUpstream",
    summary="Merge an approved upstream into its reopened target stage",
)
async def merge_upstream(
    upstream_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> StageResponse:
    """Owner only.  Used after a rollback reopens a stage whose approved
    upstream was discarded along with the stage it produced.

    Returns 409 if the upstream is not approved, its target is not active,
    or another merge advanced the track.
    """
    upstream = await upstreams.get_upstream(db, upstream_id)
    await require_owner(db, upstream.track_id, user_id_of(claims))
    stage = await stages.merge_upstream_with_retry(db, upstream_id)
    return StageResponse.model_validate(stage)


@router.get(
    "/upstreams/{upstream_id}/comments",
    response_model=CommentListResponse,
    operation_id="listComments",
)
async def list_comments(
    upstream_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> CommentListResponse:
    upstream = await upstreams.get_upstream(db, upstream_id)
    await require_member(db, upstream.track_id, user_id_of(claims))
    rows = await upstreams.list_comments(db, upstream_id)
    return CommentListResponse(comments=[CommentResponse.model_validate(c) for c in rows])


@router.post(
    "/upstreams/{upstream_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="addComment",
)
async def add_comment(
    upstream_id: str,
    body: CommentCreate,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> CommentResponse:
    comment = await upstreams.add_comment(
        db,
        upstream_id,
        author_user_id=user_id_of(claims),
        body=body.body,
        position_seconds=body.position_seconds,
    )
    return CommentResponse.model_validate(comment)


@router.patch(
    "/comments/{comment_id}",
    response_model=CommentResponse,
    operation_id="updateComment",
)
async def update_comment(
    comment_id: str,
    body: CommentUpdate,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> CommentResponse:
    """Author only (403 otherwise)."""
    comment = await upstreams.update_comment(
        db,
        comment_id,
        user_id=user_id_of(claims),
        body=body.body,
        position_seconds=body.position_seconds,
    )
    return CommentResponse.model_validate(comment)


@router.delete(
    "/comments/{comment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="deleteComment",
)
async def delete_comment(
    comment_id: str,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(require_valid_token),
) -> Response:
    """Author only (403 otherwise)."""
    await upstreams.delete_comment(db, comment_id, user_id=user_id_of(claims))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
