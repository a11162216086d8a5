"""Pydantic v2 request/response models for the StemHub workflow API.

All wire-format fields are camelCase via CamelModel.  Python code uses
snake_case throughout; only serialisation to JSON uses camelCase.  Response
models are built straight from ORM rows (``from_attributes``).
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from stemhub.models.base import CamelModel


# ── Tracks ───────────────────────────────────────────────────────────────────


class TrackCreate(CamelModel):
    """Body for POST /tracks — creates the track and opens version 1."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    genre: str | None = None
    bpm: int | None = Field(None, gt=0)
    key_signature: str | None = None
    collaborator_ids: list[str] = Field(default_factory=list)


class TrackResponse(CamelModel):
    track_id: str
    title: str
    owner_user_id: str
    description: str
    genre: str | None = None
    bpm: int | None = None
    key_signature: str | None = None
    created_at: datetime


class CollaboratorAdd(CamelModel):
    """Body for POST /tracks/{track_id}/collaborators."""

    user_id: str
    role: str = "collaborator"


class CollaboratorListResponse(CamelModel):
    owner_user_id: str
    collaborator_ids: list[str]


# ── Stems ────────────────────────────────────────────────────────────────────


class StemCreate(CamelModel):
    """Body for POST /tracks/{track_id}/stems.

    The audio file is already in object storage; ``file_path`` is its key.
    Set ``replaces_stem_id`` to upload a new take of an existing layer.
    """

    category: str = Field(..., min_length=1, max_length=100)
    file_path: str = Field(..., min_length=1, max_length=1024)
    file_name: str | None = None
    instrument: str | None = None
    replaces_stem_id: str | None = None
    key: str | None = None
    bpm: float | None = Field(None, gt=0)


class StemResponse(CamelModel):
    stem_id: str
    track_id: str
    category: str
    instrument: str | None = None
    stem_identity: str
    file_name: str
    file_path: str
    uploader_user_id: str
    replaces_stem_id: str | None = None
    key: str | None = None
    bpm: float | None = None
    created_at: datetime


class StemListResponse(CamelModel):
    stems: list[StemResponse]


# ── Stages ───────────────────────────────────────────────────────────────────


class StageResponse(CamelModel):
    stage_id: str
    track_id: str
    version: int
    status: Literal["active", "approved", "rejected"]
    title: str
    description: str
    creator_user_id: str
    source_upstream_id: str | None = None
    created_at: datetime
    updated_at: datetime


class StageListResponse(CamelModel):
    stages: list[StageResponse]


class VersionStemResponse(CamelModel):
    version_stem_id: str
    stage_id: str
    stem_id: str | None = None
    stem_identity: str
    category: str
    file_name: str
    file_path: str
    version: int
    upstream_id: str | None = None


class VersionStemListResponse(CamelModel):
    version_stems: list[VersionStemResponse]


class RollbackRequest(CamelModel):
    """Body for POST /tracks/{track_id}/rollback."""

    target_version: int = Field(..., ge=1)


class RollbackResponse(CamelModel):
    track_id: str
    target_version: int
    reopened_stage_id: str
    deleted_stage_ids: list[str]
    deleted_rows: dict[str, int]


# ── Guides ───────────────────────────────────────────────────────────────────


class GuideResponse(CamelModel):
    guide_id: str
    stage_id: str
    track_id: str
    mixed_file_path: str
    waveform_data_path: str
    stem_ids: list[str] = Field(default_factory=list)
    version_stem_ids: list[str] = Field(default_factory=list)
    updated_at: datetime


class MixCompleteRequest(CamelModel):
    """Body for POST /stages/{stage_id}/guide — the mixer's completion callback."""

    mixed_file_path: str = Field(..., min_length=1)
    waveform_data_path: str = Field(..., min_length=1)
    stem_paths: list[str] = Field(default_factory=list)


# ── Upstreams ────────────────────────────────────────────────────────────────


class UpstreamCreate(CamelModel):
    """Body for POST /stages/{stage_id}/upstreams."""

    stem_ids: list[str] = Field(..., min_length=1)
    title: str = Field("", max_length=255)
    description: str = ""
    reviewer_ids: list[str] = Field(default_factory=list)


class UpstreamResponse(CamelModel):
    upstream_id: str
    stage_id: str
    track_id: str
    title: str
    description: str
    author_user_id: str
    status: Literal["pending", "approved", "rejected"]
    created_at: datetime
    decided_at: datetime | None = None


class UpstreamListResponse(CamelModel):
    upstreams: list[UpstreamResponse]


class DiffEntryResponse(CamelModel):
    stem_id: str
    stem_identity: str
    kind: Literal["new", "modify", "unchanged"]
    version_stem_id: str | None = None


class DiffResponse(CamelModel):
    upstream_id: str
    entries: list[DiffEntryResponse]


# ── Reviews ──────────────────────────────────────────────────────────────────


class ReviewerAssign(CamelModel):
    """Body for POST /upstreams/{upstream_id}/reviewers."""

    user_ids: list[str] = Field(..., min_length=1)


class ReviewResponse(CamelModel):
    review_id: str
    upstream_id: str
    user_id: str
    decision: Literal["pending", "approved", "rejected"]
    is_owner: bool
    decided_at: datetime | None = None


class ReviewListResponse(CamelModel):
    reviews: list[ReviewResponse]


class DecisionRequest(CamelModel):
    """Body for POST /upstreams/{upstream_id}/decisions."""

    decision: Literal["approved", "rejected"]


class DecisionResponse(CamelModel):
    review: ReviewResponse
    upstream_status: Literal["pending", "approved", "rejected"]
    merged_stage: StageResponse | None = None


# ── Comments ─────────────────────────────────────────────────────────────────


class CommentCreate(CamelModel):
    body: str = Field(..., min_length=1)
    position_seconds: float = Field(0.0, ge=0)


class CommentUpdate(CamelModel):
    body: str | None = Field(None, min_length=1)
    position_seconds: float | None = Field(None, ge=0)


class CommentResponse(CamelModel):
    comment_id: str
    upstream_id: str
    author_user_id: str
    position_seconds: float
    body: str
    created_at: datetime
    updated_at: datetime


class CommentListResponse(CamelModel):
    comments: list[CommentResponse]
