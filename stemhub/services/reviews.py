"""Review Aggregation — reviewer decisions to an upstream outcome.

Every upstream carries one Review row per reviewer, the track owner
included (created pre-approved with the upstream), so the outcome is a
plain fold over those rows: any rejection rejects, unanimous approval
approves, anything else stays pending.  See
``stemhub.services.lifecycle.fold_decisions``.

Decisions on one upstream are serialized by ``upstream_decision_lock``.
Because every other vote is committed by the time the lock is held, the
fold including the incoming decision is known up front.  When that fold
approves, the track write lock is taken *before* the unit of work opens,
so the decision, the aggregate status and the merge it triggers commit
together under the lock.  A failed merge therefore rolls the decision back
too, and the upstream's aggregate status is left untouched.
"""
from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.database import unit_of_work
from stemhub.db.models import Review, Stage, Upstream
from stemhub.services.errors import (
    AlreadyDecidedStageError,
    InvalidRequestError,
    InvalidStateError,
    NotAReviewerError,
    NotATrackMemberError,
    NotFoundError,
)
from stemhub.services.lifecycle import (
    ReviewDecision,
    StageStatus,
    UpstreamStatus,
    assert_review_transition,
    assert_upstream_transition,
    fold_decisions,
)
from stemhub.services.mixing import MixingBackend
from stemhub.services.stages import merge_upstream
from stemhub.services.track_lock import track_write_lock, upstream_decision_lock
from stemhub.services.tracks import is_member

logger = logging.getLogger(__name__)


@dataclass
class DecisionOutcome:
    """Result of recording one reviewer decision.

    Attributes:
        review:       The reviewer's updated Review row.
        status:       The upstream's aggregate status after the decision.
        merged_stage: The stage opened by the merge, when the decision
                      completed the approval.
    """

    review: Review
    status: UpstreamStatus
    merged_stage: Optional[Stage] = None


async def _fresh_upstream(session: AsyncSession, upstream_id: str) -> Upstream:
    stmt = (
        select(Upstream)
        .where(Upstream.upstream_id == upstream_id)
        .execution_options(populate_existing=True)
    )
    upstream = (await session.execute(stmt)).scalar_one_or_none()
    if upstream is None:
        raise NotFoundError(f"Upstream {upstream_id} not found")
    return upstream


async def list_reviews(session: AsyncSession, upstream_id: str) -> list[Review]:
    """The upstream's reviews, owner first, then in assignment order."""
    stmt = (
        select(Review)
        .where(Review.upstream_id == upstream_id)
        .order_by(Review.is_owner.desc(), Review.created_at)
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(stmt)).scalars().all())


async def assign_reviewers(
    session: AsyncSession,
    upstream_id: str,
    user_ids: list[str],
) -> list[Review]:
    """Add pending reviews for *user_ids*; already-assigned users are skipped.

    Raises:
        NotFoundError:        The upstream does not exist.
        InvalidStateError:    The upstream has already been decided.
        NotATrackMemberError: A user is neither owner nor collaborator.
    """
    async with unit_of_work(session):
        upstream = await _fresh_upstream(session, upstream_id)
        if upstream.status != UpstreamStatus.PENDING.value:
            raise InvalidStateError(
                f"Upstream {upstream_id} is {upstream.status}; reviewers can no longer change"
            )
        assigned = {review.user_id for review in await list_reviews(session, upstream_id)}

        added: list[Review] = []
        for user_id in user_ids:
            if user_id in assigned:
                continue
            if not await is_member(session, upstream.track_id, user_id):
                raise NotATrackMemberError(
                    f"User {user_id} is not a member of track {upstream.track_id}"
                )
            review = Review(
                upstream_id=upstream_id,
                user_id=user_id,
                decision=ReviewDecision.PENDING.value,
            )
            session.add(review)
            assigned.add(user_id)
            added.append(review)
        await session.flush()
        if added:
            logger.info(
                "Assigned %d reviewers to upstream %s: %s",
                len(added),
                upstream_id,
                ", ".join(r.user_id for r in added),
            )
    return added


async def _aggregate(
    session: AsyncSession,
    upstream_id: str,
    *,
    mixer: Optional[MixingBackend],
) -> tuple[UpstreamStatus, Optional[Stage]]:
    upstream = await _fresh_upstream(session, upstream_id)
    current = UpstreamStatus(upstream.status)
    if current != UpstreamStatus.PENDING:
        return current, None

    outcome = fold_decisions(ReviewDecision(r.decision) for r in await list_reviews(session, upstream_id))
    if outcome == UpstreamStatus.PENDING:
        return outcome, None

    assert_upstream_transition(current, outcome)
    upstream.status = outcome.value
    upstream.decided_at = datetime.now(timezone.utc)
    await session.flush()
    logger.info("Upstream %s aggregated to %s", upstream_id, outcome.value)

    if outcome == UpstreamStatus.APPROVED:
        merged = await merge_upstream(session, upstream_id, mixer=mixer)
        return outcome, merged
    return outcome, None


async def aggregate(
    session: AsyncSession,
    upstream_id: str,
    *,
    mixer: Optional[MixingBackend] = None,
) -> tuple[UpstreamStatus, Optional[Stage]]:
    """Fold the upstream's reviews into its aggregate status.

    An already-decided upstream is returned unchanged.  Reaching
    ``approved`` merges the upstream in the same unit of work.

    Returns:
        The aggregate status and, if a merge happened, the new active stage.
    """
    async with upstream_decision_lock(upstream_id):
        upstream = await _fresh_upstream(session, upstream_id)
        projected = fold_decisions(
            ReviewDecision(r.decision) for r in await list_reviews(session, upstream_id)
        )
        async with AsyncExitStack() as stack:
            if projected == UpstreamStatus.APPROVED and upstream.status == UpstreamStatus.PENDING.value:
                await stack.enter_async_context(track_write_lock(session, upstream.track_id))
            async with unit_of_work(session):
                return await _aggregate(session, upstream_id, mixer=mixer)


async def record_decision(
    session: AsyncSession,
    upstream_id: str,
    user_id: str,
    decision: Union[ReviewDecision, str],
    *,
    mixer: Optional[MixingBackend] = None,
) -> DecisionOutcome:
    """Record *user_id*'s decision on the upstream, then aggregate.

    Raises:
        InvalidRequestError:      The decision is not approved/rejected.
        NotFoundError:            The upstream does not exist.
        NotAReviewerError:        The user has no review on the upstream.
        AlreadyDecidedStageError: The upstream's target stage is no longer active.
        InvalidStateError:        The upstream already left ``pending``, or the
                                  reviewer tried to revise a rejection.
        VersionConflictError:     The decision completed the approval but a
                                  concurrent merge won; nothing is recorded.
    """
    try:
        decision = ReviewDecision(decision)
    except ValueError as exc:
        raise InvalidRequestError(f"Unknown decision {decision!r}") from exc
    if decision == ReviewDecision.PENDING:
        raise InvalidRequestError("A decision must be approved or rejected")

    async with upstream_decision_lock(upstream_id):
        upstream = await _fresh_upstream(session, upstream_id)
        reviews = await list_reviews(session, upstream_id)
        review = next((r for r in reviews if r.user_id == user_id), None)
        if review is None:
            raise NotAReviewerError(f"User {user_id} is not a reviewer of upstream {upstream_id}")

        projected = fold_decisions(
            decision if r is review else ReviewDecision(r.decision) for r in reviews
        )

        async with AsyncExitStack() as stack:
            if projected == UpstreamStatus.APPROVED:
                await stack.enter_async_context(track_write_lock(session, upstream.track_id))
            async with unit_of_work(session):
                stage = await session.get(Stage, upstream.stage_id, populate_existing=True)
                if stage is None or stage.status != StageStatus.ACTIVE.value:
                    raise AlreadyDecidedStageError(
                        f"Upstream {upstream_id} targets a stage that is no longer active"
                    )
                if upstream.status != UpstreamStatus.PENDING.value:
                    raise InvalidStateError(
                        f"Upstream {upstream_id} is already {upstream.status}"
                    )
                assert_review_transition(ReviewDecision(review.decision), decision)
                review.decision = decision.value
                review.decided_at = datetime.now(timezone.utc)
                await session.flush()
                logger.info(
                    "Reviewer %s %s upstream %s", user_id, decision.value, upstream_id
                )

                status, merged = await _aggregate(session, upstream_id, mixer=mixer)
    return DecisionOutcome(review=review, status=status, merged_stage=merged)
