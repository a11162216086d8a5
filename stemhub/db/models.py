"""SQLAlchemy ORM models for the StemHub revision workflow.

Tables:
- stemhub_tracks: Music projects (one linear revision line each)
- stemhub_track_collaborators: Users granted access beyond the owner
- stemhub_stems: Live, mutable audio layers uploaded by collaborators
- stemhub_stages: Numbered revision checkpoints, unique per (track, version)
- stemhub_version_stems: Immutable per-stage stem snapshots
- stemhub_guides: Reference mix + waveform per stage (1:1)
- stemhub_guide_stems / stemhub_guide_version_stems: Guide source links
- stemhub_upstreams: Proposed change sets against the active stage
- stemhub_upstream_stems: Per-stem diff entries (new | modify | unchanged)
- stemhub_reviews: Reviewer assignment + decision per upstream
- stemhub_comments: Playback-position annotations on an upstream

Foreign keys carry no ``ondelete`` cascade on purpose: the rollback
coordinator deletes dependents explicitly, children first.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stemhub.db.database import Base


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


class Track(Base):
    """A music project owned by one user.

    Owns the ordered sequence of Stages; at most one of them is ``active``.
    """

    __tablename__ = "stemhub_tracks"

    track_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    genre: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bpm: Mapped[int | None] = mapped_column(Integer, nullable=True)
    key_signature: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    def __repr__(self) -> str:
        return f"<Track {self.track_id[:8]} {self.title!r}>"


class TrackCollaborator(Base):
    """A user granted access to a track beyond the owner.

    ``role`` is free-form ("producer", "mixer", ...) and carries no permission
    semantics inside the workflow core.
    """

    __tablename__ = "stemhub_track_collaborators"
    __table_args__ = (
        UniqueConstraint("track_id", "user_id", name="uq_stemhub_collaborators_track_user"),
        Index("ix_stemhub_collaborators_user_id", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_tracks.track_id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="collaborator")
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )


class Stem(Base):
    """A live audio layer — the *current* take of one instrument layer.

    ``stem_identity`` is the stable layer key used by the diff engine.  A
    replacement upload (``replaces_stem_id`` set) inherits the identity of
    the stem it replaces; file paths never participate in identity.
    """

    __tablename__ = "stemhub_stems"

    stem_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_tracks.track_id"), nullable=False, index=True
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    instrument: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stem_identity: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    uploader_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    replaces_stem_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    key: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bpm: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    def __repr__(self) -> str:
        return f"<Stem {self.stem_id[:8]} {self.stem_identity} {self.file_path}>"


class Stage(Base):
    """One revision checkpoint of a track.

    ``status`` is ``active`` | ``approved`` | ``rejected``.  The unique
    ``(track_id, version)`` constraint is the last line of defence for the
    version invariant when two merges race.  ``source_upstream_id`` records
    which merged upstream produced the stage (null for version 1).
    """

    __tablename__ = "stemhub_stages"
    __table_args__ = (
        UniqueConstraint("track_id", "version", name="uq_stemhub_stages_track_version"),
    )

    stage_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_tracks.track_id"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    creator_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    source_upstream_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    # Set once the stage's VersionStem set has been frozen.
    snapshot_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now
    )

    def __repr__(self) -> str:
        return f"<Stage {self.stage_id[:8]} v{self.version} {self.status}>"


class Upstream(Base):
    """A proposed change set submitted against a track's active stage.

    ``status`` is the aggregate review outcome: ``pending`` | ``approved`` |
    ``rejected``.
    """

    __tablename__ = "stemhub_upstreams"

    upstream_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    stage_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_stages.stage_id"), nullable=False, index=True
    )
    track_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    author_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Upstream {self.upstream_id[:8]} {self.status}>"


class VersionStem(Base):
    """Immutable snapshot of one stem as it existed when a stage was created.

    Created only at stage-creation time and destroyed only by rollback; the
    file reference never changes.  ``upstream_id`` records the merged upstream
    the layer came from, for provenance only.
    """

    __tablename__ = "stemhub_version_stems"
    __table_args__ = (
        UniqueConstraint("stage_id", "stem_identity", name="uq_stemhub_version_stems_stage_identity"),
    )

    version_stem_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    stage_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_stages.stage_id"), nullable=False, index=True
    )
    track_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    stem_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("stemhub_stems.stem_id"), nullable=True
    )
    stem_identity: Mapped[str] = mapped_column(String(160), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    upstream_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("stemhub_upstreams.upstream_id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    def __repr__(self) -> str:
        return f"<VersionStem {self.version_stem_id[:8]} v{self.version} {self.stem_identity}>"


class Guide(Base):
    """The reference mix + waveform artifact for exactly one stage."""

    __tablename__ = "stemhub_guides"

    guide_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    stage_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_stages.stage_id"), nullable=False, unique=True
    )
    track_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    mixed_file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    waveform_data_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now
    )


class GuideStem(Base):
    """Link row: a live Stem the guide was mixed from."""

    __tablename__ = "stemhub_guide_stems"
    __table_args__ = (
        UniqueConstraint("guide_id", "stem_id", name="uq_stemhub_guide_stems"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    guide_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_guides.guide_id"), nullable=False, index=True
    )
    stem_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_stems.stem_id"), nullable=False
    )


class GuideVersionStem(Base):
    """Link row: a VersionStem snapshot the guide was mixed from."""

    __tablename__ = "stemhub_guide_version_stems"
    __table_args__ = (
        UniqueConstraint("guide_id", "version_stem_id", name="uq_stemhub_guide_version_stems"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    guide_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_guides.guide_id"), nullable=False, index=True
    )
    version_stem_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_version_stems.version_stem_id"), nullable=False, index=True
    )


class UpstreamStem(Base):
    """One classified entry of an upstream's diff against its target stage.

    ``kind`` is ``new`` | ``modify`` | ``unchanged``.  ``version_stem_id`` is
    the snapshot the stem was compared against (null for ``new``).
    """

    __tablename__ = "stemhub_upstream_stems"
    __table_args__ = (
        UniqueConstraint("upstream_id", "stem_identity", name="uq_stemhub_upstream_stems_identity"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    upstream_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_upstreams.upstream_id"), nullable=False, index=True
    )
    stem_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_stems.stem_id"), nullable=False
    )
    stem_identity: Mapped[str] = mapped_column(String(160), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    version_stem_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("stemhub_version_stems.version_stem_id"), nullable=True, index=True
    )


class Review(Base):
    """A reviewer assignment and decision on one upstream.

    ``decision`` is ``pending`` | ``approved`` | ``rejected``.  The track
    owner's review is materialized pre-approved when the upstream is created
    (``is_owner`` true), so aggregation is a uniform fold over these rows.
    """

    __tablename__ = "stemhub_reviews"
    __table_args__ = (
        UniqueConstraint("upstream_id", "user_id", name="uq_stemhub_reviews_upstream_user"),
    )

    review_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    upstream_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_upstreams.upstream_id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    is_owner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )


class Comment(Base):
    """A timestamped annotation on an upstream, anchored at a playback position."""

    __tablename__ = "stemhub_comments"

    comment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    upstream_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("stemhub_upstreams.upstream_id"), nullable=False, index=True
    )
    author_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # Seconds from the start of the guide mix
    position_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, onupdate=_utc_now
    )
