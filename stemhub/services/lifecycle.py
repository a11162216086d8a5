"""
Stage / Upstream / Review state machines.

Explicit state transitions for the revision workflow.  Never mutate a
status column directly; always go through the ``assert_*_transition``
helpers so illegal moves surface as ``InvalidStateError``.

Stage states:
    ACTIVE    — the one stage per track open for upstreams
    APPROVED  — superseded by the next merged stage
    REJECTED  — content discarded outright; version counter untouched

Stage transitions:
    ACTIVE   → APPROVED  (merge_upstream)
    ACTIVE   → REJECTED  (reject_stage)
    APPROVED → ACTIVE    (rollback reopen only)
    REJECTED → ACTIVE    (rollback reopen only)

Upstream states:
    PENDING → APPROVED | REJECTED; both are final.

Review decisions:
    PENDING → APPROVED | REJECTED; a reviewer may change an APPROVED vote to
    REJECTED while the upstream is still pending.  REJECTED is final.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum

from stemhub.services.errors import InvalidStateError

logger = logging.getLogger(__name__)


class StageStatus(str, Enum):
    """Stage lifecycle states."""

    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"


class UpstreamStatus(str, Enum):
    """Aggregate review outcome of an upstream."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    """One reviewer's decision."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


_STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.ACTIVE: frozenset({StageStatus.APPROVED, StageStatus.REJECTED}),
    StageStatus.APPROVED: frozenset(),
    StageStatus.REJECTED: frozenset(),
}

# Only the rollback coordinator may take these.
_REOPEN_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.ACTIVE: frozenset(),
    StageStatus.APPROVED: frozenset({StageStatus.ACTIVE}),
    StageStatus.REJECTED: frozenset({StageStatus.ACTIVE}),
}

_UPSTREAM_TRANSITIONS: dict[UpstreamStatus, frozenset[UpstreamStatus]] = {
    UpstreamStatus.PENDING: frozenset({UpstreamStatus.APPROVED, UpstreamStatus.REJECTED}),
    UpstreamStatus.APPROVED: frozenset(),
    UpstreamStatus.REJECTED: frozenset(),
}

_REVIEW_TRANSITIONS: dict[ReviewDecision, frozenset[ReviewDecision]] = {
    ReviewDecision.PENDING: frozenset({ReviewDecision.APPROVED, ReviewDecision.REJECTED}),
    ReviewDecision.APPROVED: frozenset({ReviewDecision.APPROVED, ReviewDecision.REJECTED}),
    ReviewDecision.REJECTED: frozenset(),
}


class InvalidTransitionError(InvalidStateError):
    """Raised when a state transition violates a state machine."""

    def __init__(self, kind: str, from_state: Enum, to_state: Enum) -> None:
        self.kind = kind
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid {kind} transition: {from_state.value} → {to_state.value}"
        )


def assert_stage_transition(
    from_state: StageStatus,
    to_state: StageStatus,
    *,
    reopen: bool = False,
) -> None:
    """Validate a stage status change.

    ``reopen=True`` unlocks the rollback-only moves back to ACTIVE.
    """
    table = _REOPEN_TRANSITIONS if reopen else _STAGE_TRANSITIONS
    if to_state not in table.get(from_state, frozenset()):
        raise InvalidTransitionError("stage", from_state, to_state)


def assert_upstream_transition(from_state: UpstreamStatus, to_state: UpstreamStatus) -> None:
    """Validate an upstream aggregate status change."""
    if to_state not in _UPSTREAM_TRANSITIONS.get(from_state, frozenset()):
        raise InvalidTransitionError("upstream", from_state, to_state)


def assert_review_transition(from_state: ReviewDecision, to_state: ReviewDecision) -> None:
    """Validate a reviewer's decision change."""
    if to_state not in _REVIEW_TRANSITIONS.get(from_state, frozenset()):
        raise InvalidTransitionError("review", from_state, to_state)


def fold_decisions(decisions: Iterable[ReviewDecision]) -> UpstreamStatus:
    """Aggregate reviewer decisions into an upstream outcome.

    Any REJECTED short-circuits to REJECTED; otherwise the upstream is
    APPROVED only when every decision is APPROVED, else PENDING.  An empty
    reviewer set stays PENDING.  The result does not depend on order.
    """
    seen_any = False
    all_approved = True
    for decision in decisions:
        seen_any = True
        if decision == ReviewDecision.REJECTED:
            return UpstreamStatus.REJECTED
        if decision != ReviewDecision.APPROVED:
            all_approved = False
    if seen_any and all_approved:
        return UpstreamStatus.APPROVED
    return UpstreamStatus.PENDING


def accepts_upstreams(status: StageStatus) -> bool:
    """Only the active stage may receive new upstreams."""
    return status == StageStatus.ACTIVE
