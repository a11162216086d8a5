"""Typed errors raised by the StemHub workflow core.

Every error carries the HTTP status the API layer surfaces it as.  Lifecycle
and invariant violations always propagate to the caller; nothing in the core
swallows them.
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(WorkflowError):
    """A referenced Track, Stage, Upstream, Stem or Comment does not exist."""

    status_code = 404


class ConflictError(WorkflowError):
    """The entity already exists in a state that forbids the operation."""

    status_code = 409


class InvalidStateError(ConflictError):
    """The operation targets an entity in the wrong lifecycle state.

    The caller must re-fetch current state before retrying.
    """


class VersionConflictError(ConflictError):
    """A concurrent merge advanced the track past the expected version.

    Safe to retry once against the refreshed active stage.

    Attributes:
        track_id:         Track whose version line moved.
        expected_version: Version the losing writer based its merge on.
    """

    def __init__(self, track_id: str, expected_version: int) -> None:
        super().__init__(
            f"Track {track_id} advanced past version {expected_version} "
            "while the merge was in flight"
        )
        self.track_id = track_id
        self.expected_version = expected_version


class AlreadyDecidedStageError(ConflictError):
    """A review decision arrived for an upstream whose target stage is no longer active."""


class NotAReviewerError(WorkflowError):
    """The user has no Review record for the upstream."""

    status_code = 403


class NotATrackMemberError(WorkflowError):
    """The user is neither the owner nor a collaborator of the track."""

    status_code = 403


class DuplicateSnapshotError(WorkflowError):
    """A stage's stem set was frozen a second time (programming error)."""

    status_code = 500


class TransactionError(WorkflowError):
    """A merge or rollback cascade could not commit; no partial effect persists."""

    status_code = 500


class InvalidRequestError(WorkflowError):
    """The request is well-formed but semantically unusable (e.g. a layer proposed twice)."""

    status_code = 422


class NotCommentAuthorError(WorkflowError):
    """Only a comment's author may edit or delete it."""

    status_code = 403
