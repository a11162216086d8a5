"""
Tests for the Stage / Upstream / Review state machines and the decision fold.
"""
from __future__ import annotations

import itertools
import random

import pytest

from stemhub.services.errors import InvalidStateError
from stemhub.services.lifecycle import (
    InvalidTransitionError,
    ReviewDecision,
    StageStatus,
    UpstreamStatus,
    accepts_upstreams,
    assert_review_transition,
    assert_stage_transition,
    assert_upstream_transition,
    fold_decisions,
)


# =============================================================================
# Stage transitions
# =============================================================================


class TestStageTransitions:
    def test_active_to_approved(self) -> None:
        """ACTIVE → APPROVED (merge)."""
        assert_stage_transition(StageStatus.ACTIVE, StageStatus.APPROVED)

    def test_active_to_rejected(self) -> None:
        """ACTIVE → REJECTED (reject_stage)."""
        assert_stage_transition(StageStatus.ACTIVE, StageStatus.REJECTED)

    @pytest.mark.parametrize("terminal", [StageStatus.APPROVED, StageStatus.REJECTED])
    def test_closed_stage_cannot_reopen_without_rollback(self, terminal: StageStatus) -> None:
        with pytest.raises(InvalidTransitionError):
            assert_stage_transition(terminal, StageStatus.ACTIVE)

    @pytest.mark.parametrize("terminal", [StageStatus.APPROVED, StageStatus.REJECTED])
    def test_rollback_reopens_closed_stage(self, terminal: StageStatus) -> None:
        assert_stage_transition(terminal, StageStatus.ACTIVE, reopen=True)

    def test_reopen_of_active_stage_is_invalid(self) -> None:
        """Rolling back to the version that is already active is an error."""
        with pytest.raises(InvalidTransitionError):
            assert_stage_transition(StageStatus.ACTIVE, StageStatus.ACTIVE, reopen=True)

    def test_approved_to_rejected_is_invalid(self) -> None:
        with pytest.raises(InvalidTransitionError):
            assert_stage_transition(StageStatus.APPROVED, StageStatus.REJECTED)

    def test_transition_error_is_an_invalid_state_error(self) -> None:
        with pytest.raises(InvalidStateError) as exc_info:
            assert_stage_transition(StageStatus.REJECTED, StageStatus.APPROVED)
        assert exc_info.value.status_code == 409
        assert "rejected → approved" in exc_info.value.message

    def test_only_active_stage_accepts_upstreams(self) -> None:
        assert accepts_upstreams(StageStatus.ACTIVE)
        assert not accepts_upstreams(StageStatus.APPROVED)
        assert not accepts_upstreams(StageStatus.REJECTED)


# =============================================================================
# Upstream and review transitions
# =============================================================================


class TestUpstreamTransitions:
    @pytest.mark.parametrize("outcome", [UpstreamStatus.APPROVED, UpstreamStatus.REJECTED])
    def test_pending_resolves(self, outcome: UpstreamStatus) -> None:
        assert_upstream_transition(UpstreamStatus.PENDING, outcome)

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (UpstreamStatus.APPROVED, UpstreamStatus.REJECTED),
            (UpstreamStatus.REJECTED, UpstreamStatus.APPROVED),
            (UpstreamStatus.APPROVED, UpstreamStatus.PENDING),
        ],
    )
    def test_decided_upstream_is_final(self, from_state: UpstreamStatus, to_state: UpstreamStatus) -> None:
        with pytest.raises(InvalidTransitionError):
            assert_upstream_transition(from_state, to_state)


class TestReviewTransitions:
    def test_pending_to_either_decision(self) -> None:
        assert_review_transition(ReviewDecision.PENDING, ReviewDecision.APPROVED)
        assert_review_transition(ReviewDecision.PENDING, ReviewDecision.REJECTED)

    def test_approval_can_be_withdrawn(self) -> None:
        assert_review_transition(ReviewDecision.APPROVED, ReviewDecision.REJECTED)

    def test_repeated_approval_is_allowed(self) -> None:
        """The owner's pre-approved review can be confirmed explicitly."""
        assert_review_transition(ReviewDecision.APPROVED, ReviewDecision.APPROVED)

    def test_rejection_is_final(self) -> None:
        with pytest.raises(InvalidTransitionError):
            assert_review_transition(ReviewDecision.REJECTED, ReviewDecision.APPROVED)


# =============================================================================
# Decision fold
# =============================================================================

A = ReviewDecision.APPROVED
R = ReviewDecision.REJECTED
P = ReviewDecision.PENDING


class TestFoldDecisions:
    def test_unanimous_approval(self) -> None:
        assert fold_decisions([A, A, A]) == UpstreamStatus.APPROVED

    def test_single_rejection_short_circuits(self) -> None:
        """No majority voting: one rejection among approvals rejects."""
        assert fold_decisions([A, A, R, A]) == UpstreamStatus.REJECTED

    def test_rejection_beats_pending(self) -> None:
        assert fold_decisions([P, R]) == UpstreamStatus.REJECTED

    def test_outstanding_review_keeps_pending(self) -> None:
        assert fold_decisions([A, P]) == UpstreamStatus.PENDING

    def test_no_reviewers_stays_pending(self) -> None:
        assert fold_decisions([]) == UpstreamStatus.PENDING

    def test_accepts_raw_strings_from_storage(self) -> None:
        assert fold_decisions([ReviewDecision("approved"), ReviewDecision("approved")]) == UpstreamStatus.APPROVED

    @pytest.mark.parametrize("seed", range(25))
    def test_matches_definition_for_random_decisions(self, seed: int) -> None:
        """rejected iff any rejected, else approved iff all approved, else pending."""
        rng = random.Random(seed)
        decisions = [rng.choice([A, R, P]) for _ in range(rng.randint(1, 7))]
        if R in decisions:
            expected = UpstreamStatus.REJECTED
        elif all(d == A for d in decisions):
            expected = UpstreamStatus.APPROVED
        else:
            expected = UpstreamStatus.PENDING
        assert fold_decisions(decisions) == expected

    @pytest.mark.parametrize("seed", range(10))
    def test_arrival_order_does_not_matter(self, seed: int) -> None:
        rng = random.Random(1000 + seed)
        decisions = [rng.choice([A, R, P]) for _ in range(5)]
        outcomes = {fold_decisions(order) for order in itertools.permutations(decisions)}
        assert len(outcomes) == 1
