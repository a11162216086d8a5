"""Tests for review aggregation and decision recording.

Verifies:
- the owner's pre-approved review and explicit reviewer assignment
- one rejection rejects regardless of arrival order, and never merges
- unanimous approval merges in the same transaction
- decision preconditions (reviewer, pending upstream, active target stage)
- a merge failure rolls the triggering decision back
"""
from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import ALICE, BOB, OUTSIDER, OWNER, WorkflowBuilder
from stemhub.db.models import Stage, Upstream
from stemhub.services import reviews, stages
from stemhub.services.errors import (
    AlreadyDecidedStageError,
    InvalidRequestError,
    InvalidStateError,
    NotAReviewerError,
    NotATrackMemberError,
)
from stemhub.services.lifecycle import UpstreamStatus
from stemhub.services.mixing import MixingError, MixResult

CAROL = "user-carol"


class FailingMixer:
    async def mix(self, stage_id: str, stem_paths: list[str]) -> MixResult:
        raise MixingError("mixing service unavailable")


async def _reviewed_upstream(workflow: WorkflowBuilder, reviewers: tuple[str, ...] = (BOB, CAROL)):
    """A three-collaborator track with one upstream awaiting *reviewers*."""
    track, v1 = await workflow.track(collaborators=(ALICE, BOB, CAROL))
    stem = await workflow.stem(track.track_id, "bass", "takes/bass.wav")
    upstream = await workflow.propose(v1, [stem], reviewers=reviewers)
    return track, v1, upstream


class TestAssignment:
    async def test_owner_review_is_pre_approved(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)

        rows = await reviews.list_reviews(db_session, upstream.upstream_id)

        assert [(r.user_id, r.decision, r.is_owner) for r in rows] == [
            (OWNER, "approved", True),
            (BOB, "pending", False),
            (CAROL, "pending", False),
        ]
        assert upstream.status == UpstreamStatus.PENDING.value

    async def test_reassigning_is_a_no_op(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow, reviewers=(BOB,))

        added = await reviews.assign_reviewers(db_session, upstream.upstream_id, [BOB, CAROL, CAROL, OWNER])

        assert [r.user_id for r in added] == [CAROL]
        assert len(await reviews.list_reviews(db_session, upstream.upstream_id)) == 3

    async def test_non_member_cannot_review(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)
        upstream_id = upstream.upstream_id
        with pytest.raises(NotATrackMemberError):
            await reviews.assign_reviewers(db_session, upstream_id, [OUTSIDER])
        assert len(await reviews.list_reviews(db_session, upstream_id)) == 3

    async def test_decided_upstream_takes_no_reviewers(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)
        upstream_id = upstream.upstream_id
        await reviews.record_decision(db_session, upstream_id, BOB, "rejected")
        with pytest.raises(InvalidStateError):
            await reviews.assign_reviewers(db_session, upstream_id, [ALICE])


class TestAggregation:
    @pytest.mark.parametrize(
        "order",
        [
            [(BOB, "approved"), (CAROL, "rejected")],
            [(CAROL, "rejected"), (BOB, "approved")],
        ],
        ids=["approve-then-reject", "reject-then-approve"],
    )
    async def test_split_decision_rejects_without_merging(
        self,
        db_session: AsyncSession,
        workflow: WorkflowBuilder,
        monkeypatch: pytest.MonkeyPatch,
        order: list[tuple[str, str]],
    ) -> None:
        merge_calls: list[str] = []

        async def spy_merge(session: AsyncSession, upstream_id: str, **kwargs: object) -> Stage:
            merge_calls.append(upstream_id)
            raise AssertionError("merge must not run for a rejected upstream")

        monkeypatch.setattr(reviews, "merge_upstream", spy_merge)
        track, _, upstream = await _reviewed_upstream(workflow)
        upstream_id, track_id = upstream.upstream_id, track.track_id

        for user_id, decision in order:
            try:
                await reviews.record_decision(db_session, upstream_id, user_id, decision)
            except InvalidStateError:
                # A decision arriving after the rejection finds the upstream decided.
                assert decision == "approved"

        refreshed = await db_session.get(Upstream, upstream_id, populate_existing=True)
        assert refreshed is not None
        assert refreshed.status == UpstreamStatus.REJECTED.value
        assert refreshed.decided_at is not None
        assert merge_calls == []
        assert await stages.latest_version(db_session, track_id) == 1

    async def test_unanimous_approval_merges(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        track, v1, upstream = await _reviewed_upstream(workflow)

        first = await reviews.record_decision(db_session, upstream.upstream_id, BOB, "approved")
        assert first.status == UpstreamStatus.PENDING
        assert first.merged_stage is None

        second = await reviews.record_decision(db_session, upstream.upstream_id, CAROL, "approved")

        assert second.status == UpstreamStatus.APPROVED
        assert second.review.decision == "approved"
        assert second.merged_stage is not None
        assert second.merged_stage.version == 2
        assert second.merged_stage.source_upstream_id == upstream.upstream_id
        active = await stages.get_active_stage(db_session, track.track_id)
        assert active is not None and active.stage_id == second.merged_stage.stage_id

    async def test_owner_confirmation_merges_when_no_reviewers(
        self, db_session: AsyncSession, workflow: WorkflowBuilder
    ) -> None:
        track, v1 = await workflow.track()
        stem = await workflow.stem(track.track_id, "drums", "takes/drums.wav")
        upstream = await workflow.propose(v1, [stem])
        assert upstream.status == UpstreamStatus.PENDING.value

        outcome = await reviews.record_decision(db_session, upstream.upstream_id, OWNER, "approved")

        assert outcome.status == UpstreamStatus.APPROVED
        assert outcome.merged_stage is not None and outcome.merged_stage.version == 2

    async def test_approval_can_be_withdrawn(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)
        await reviews.record_decision(db_session, upstream.upstream_id, BOB, "approved")
        outcome = await reviews.record_decision(db_session, upstream.upstream_id, BOB, "rejected")
        assert outcome.status == UpstreamStatus.REJECTED

    async def test_explicit_aggregate(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)
        status, merged = await reviews.aggregate(db_session, upstream.upstream_id)
        assert (status, merged) == (UpstreamStatus.PENDING, None)

        await reviews.record_decision(db_session, upstream.upstream_id, BOB, "rejected")
        status, merged = await reviews.aggregate(db_session, upstream.upstream_id)
        assert (status, merged) == (UpstreamStatus.REJECTED, None)


class TestDecisionPreconditions:
    @pytest.mark.parametrize("decision", ["pending", "maybe"])
    async def test_decision_must_be_approve_or_reject(
        self, db_session: AsyncSession, workflow: WorkflowBuilder, decision: str
    ) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)
        with pytest.raises(InvalidRequestError):
            await reviews.record_decision(db_session, upstream.upstream_id, BOB, decision)

    async def test_unassigned_user_is_not_a_reviewer(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow, reviewers=(BOB,))
        with pytest.raises(NotAReviewerError):
            await reviews.record_decision(db_session, upstream.upstream_id, CAROL, "approved")

    async def test_rejection_is_final(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, _, upstream = await _reviewed_upstream(workflow)
        upstream_id = upstream.upstream_id
        await reviews.record_decision(db_session, upstream_id, BOB, "rejected")
        with pytest.raises(InvalidStateError):
            await reviews.record_decision(db_session, upstream_id, BOB, "approved")

    async def test_decision_on_superseded_stage(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        """The competing upstream's target was closed by another merge."""
        track, v1 = await workflow.track()
        bass = await workflow.stem(track.track_id, "bass", "takes/bass.wav")
        keys = await workflow.stem(track.track_id, "keys", "takes/keys.wav")
        winner = await workflow.propose(v1, [bass])
        loser = await workflow.propose(v1, [keys], reviewers=(BOB,))
        loser_id, track_id = loser.upstream_id, track.track_id
        await reviews.record_decision(db_session, winner.upstream_id, OWNER, "approved")

        with pytest.raises(AlreadyDecidedStageError):
            await reviews.record_decision(db_session, loser_id, BOB, "approved")
        assert await stages.latest_version(db_session, track_id) == 2

    async def test_failed_merge_leaves_decision_unrecorded(
        self, db_session: AsyncSession, workflow: WorkflowBuilder
    ) -> None:
        track, v1, upstream = await _reviewed_upstream(workflow, reviewers=(BOB,))
        upstream_id, track_id = upstream.upstream_id, track.track_id

        with pytest.raises(MixingError):
            await reviews.record_decision(db_session, upstream_id, BOB, "approved", mixer=FailingMixer())

        decisions = {r.user_id: r.decision for r in await reviews.list_reviews(db_session, upstream_id)}
        assert decisions == {OWNER: "approved", BOB: "pending"}
        refreshed = await db_session.get(Upstream, upstream_id, populate_existing=True)
        assert refreshed is not None and refreshed.status == UpstreamStatus.PENDING.value
        assert await stages.latest_version(db_session, track_id) == 1

        outcome = await reviews.record_decision(db_session, upstream_id, BOB, "approved")
        assert outcome.merged_stage is not None and outcome.merged_stage.version == 2
