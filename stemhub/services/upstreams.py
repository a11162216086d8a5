"""Upstreams — proposed change sets against a track's active stage.

Creating an upstream freezes its diff: every proposed stem is classified
against the target stage's snapshot once and stored as an ``UpstreamStem``
row, so the review UI and the later merge read the same classification.

The track owner's review is created pre-approved together with the
upstream.  Explicit reviewers start ``pending``.  With no explicit
reviewers, the owner recording ``approved`` is what triggers the merge.

Comments are timestamped annotations anchored at a playback position of
the guide mix.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.database import unit_of_work
from stemhub.db.models import Comment, Review, Stage, Upstream, UpstreamStem
from stemhub.services.errors import (
    InvalidRequestError,
    InvalidStateError,
    NotATrackMemberError,
    NotCommentAuthorError,
    NotFoundError,
)
from stemhub.services.lifecycle import (
    ReviewDecision,
    StageStatus,
    UpstreamStatus,
    accepts_upstreams,
)
from stemhub.services.tracks import get_track, is_member
from stemhub.services.upstream_diff import KIND_ORDER, DiffKind, compute_diff

logger = logging.getLogger(__name__)


async def get_upstream(session: AsyncSession, upstream_id: str) -> Upstream:
    upstream = await session.get(Upstream, upstream_id)
    if upstream is None:
        raise NotFoundError(f"Upstream {upstream_id} not found")
    return upstream


async def create_upstream(
    session: AsyncSession,
    *,
    stage_id: str,
    author_user_id: str,
    proposed_stem_ids: list[str],
    title: str = "",
    description: str = "",
    reviewer_ids: Optional[list[str]] = None,
) -> Upstream:
    """Submit a change set against the active stage *stage_id*.

    Raises:
        NotFoundError:        Stage or a proposed stem does not exist.
        InvalidStateError:    The stage is not the active stage.
        NotATrackMemberError: The author or a reviewer is not on the track.
        InvalidRequestError:  No stems proposed, a layer repeats, or a stem
                              belongs to another track.
    """
    from stemhub.services.reviews import assign_reviewers

    if not proposed_stem_ids:
        raise InvalidRequestError("An upstream must propose at least one stem")

    async with unit_of_work(session):
        stage = await session.get(Stage, stage_id)
        if stage is None:
            raise NotFoundError(f"Stage {stage_id} not found")
        if not accepts_upstreams(StageStatus(stage.status)):
            raise InvalidStateError(
                f"Stage {stage_id} (v{stage.version}) is {stage.status}; "
                "upstreams target the active stage only"
            )
        if not await is_member(session, stage.track_id, author_user_id):
            raise NotATrackMemberError(
                f"User {author_user_id} is not a member of track {stage.track_id}"
            )

        entries = await compute_diff(session, stage_id, proposed_stem_ids)

        upstream = Upstream(
            stage_id=stage_id,
            track_id=stage.track_id,
            title=title,
            description=description,
            author_user_id=author_user_id,
            status=UpstreamStatus.PENDING.value,
        )
        session.add(upstream)
        await session.flush()

        for entry in entries:
            session.add(
                UpstreamStem(
                    upstream_id=upstream.upstream_id,
                    stem_id=entry.stem_id,
                    stem_identity=entry.stem_identity,
                    kind=entry.kind.value,
                    version_stem_id=entry.version_stem_id,
                )
            )

        track = await get_track(session, stage.track_id)
        session.add(
            Review(
                upstream_id=upstream.upstream_id,
                user_id=track.owner_user_id,
                decision=ReviewDecision.APPROVED.value,
                is_owner=True,
                decided_at=datetime.now(timezone.utc),
            )
        )
        await session.flush()

        if reviewer_ids:
            await assign_reviewers(session, upstream.upstream_id, reviewer_ids)

        logger.info(
            "✅ Upstream %s submitted against stage %s (v%d): %d stems",
            upstream.upstream_id,
            stage_id,
            stage.version,
            len(entries),
        )
    return upstream


async def list_upstreams(
    session: AsyncSession,
    *,
    track_id: Optional[str] = None,
    stage_id: Optional[str] = None,
    status: Optional[UpstreamStatus] = None,
) -> list[Upstream]:
    """Upstreams filtered by track, target stage and/or status, newest first."""
    stmt = select(Upstream)
    if track_id is not None:
        stmt = stmt.where(Upstream.track_id == track_id)
    if stage_id is not None:
        stmt = stmt.where(Upstream.stage_id == stage_id)
    if status is not None:
        stmt = stmt.where(Upstream.status == status.value)
    stmt = stmt.order_by(Upstream.created_at.desc())
    return list((await session.execute(stmt)).scalars().all())


async def list_diff(session: AsyncSession, upstream_id: str) -> list[UpstreamStem]:
    """The stored diff entries in review order (new, modify, unchanged)."""
    await get_upstream(session, upstream_id)
    stmt = select(UpstreamStem).where(UpstreamStem.upstream_id == upstream_id)
    rows = list((await session.execute(stmt)).scalars().all())
    # Identities are "<category>:<lineage>", so this also orders by category.
    return sorted(rows, key=lambda row: (KIND_ORDER[DiffKind(row.kind)], row.stem_identity))


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


async def _get_comment(session: AsyncSession, comment_id: str) -> Comment:
    comment = await session.get(Comment, comment_id)
    if comment is None:
        raise NotFoundError(f"Comment {comment_id} not found")
    return comment


def _check_position(position_seconds: float) -> None:
    if position_seconds < 0:
        raise InvalidRequestError("Comment position must be zero or positive")


async def add_comment(
    session: AsyncSession,
    upstream_id: str,
    *,
    author_user_id: str,
    body: str,
    position_seconds: float = 0.0,
) -> Comment:
    """Anchor a comment at *position_seconds* of the upstream's guide mix."""
    _check_position(position_seconds)
    if not body.strip():
        raise InvalidRequestError("Comment body must not be empty")

    async with unit_of_work(session):
        upstream = await get_upstream(session, upstream_id)
        if not await is_member(session, upstream.track_id, author_user_id):
            raise NotATrackMemberError(
                f"User {author_user_id} is not a member of track {upstream.track_id}"
            )
        comment = Comment(
            upstream_id=upstream_id,
            author_user_id=author_user_id,
            position_seconds=position_seconds,
            body=body,
        )
        session.add(comment)
        await session.flush()
        logger.info("Comment %s added to upstream %s at %.2fs", comment.comment_id, upstream_id, position_seconds)
    return comment


async def update_comment(
    session: AsyncSession,
    comment_id: str,
    *,
    user_id: str,
    body: Optional[str] = None,
    position_seconds: Optional[float] = None,
) -> Comment:
    """Edit a comment's text and/or anchor. Author only."""
    async with unit_of_work(session):
        comment = await _get_comment(session, comment_id)
        if comment.author_user_id != user_id:
            raise NotCommentAuthorError(f"User {user_id} did not write comment {comment_id}")
        if body is not None:
            if not body.strip():
                raise InvalidRequestError("Comment body must not be empty")
            comment.body = body
        if position_seconds is not None:
            _check_position(position_seconds)
            comment.position_seconds = position_seconds
        await session.flush()
    return comment


async def delete_comment(session: AsyncSession, comment_id: str, *, user_id: str) -> None:
    """Remove a comment. Author only."""
    async with unit_of_work(session):
        comment = await _get_comment(session, comment_id)
        if comment.author_user_id != user_id:
            raise NotCommentAuthorError(f"User {user_id} did not write comment {comment_id}")
        await session.delete(comment)
        await session.flush()
        logger.info("🗑 Deleted comment %s", comment_id)


async def list_comments(session: AsyncSession, upstream_id: str) -> list[Comment]:
    """Comments in playback order, ties broken by creation time."""
    await get_upstream(session, upstream_id)
    stmt = (
        select(Comment)
        .where(Comment.upstream_id == upstream_id)
        .order_by(Comment.position_seconds, Comment.created_at)
    )
    return list((await session.execute(stmt)).scalars().all())
