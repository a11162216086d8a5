"""Workflow schema — all tables, single migration.

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates:

  Tracks
  - stemhub_tracks, stemhub_track_collaborators

  Stems
  - stemhub_stems (live layers; stem_identity is the stable diff key)

  Revision workflow
  - stemhub_stages (unique (track_id, version))
  - stemhub_upstreams
  - stemhub_version_stems (immutable per-stage snapshots)
  - stemhub_guides, stemhub_guide_stems, stemhub_guide_version_stems
  - stemhub_upstream_stems (frozen diff entries)
  - stemhub_reviews (unique (upstream_id, user_id)), stemhub_comments

Foreign keys carry no ON DELETE cascade: rollback deletes dependents
explicitly, children first.

Fresh install:
  alembic upgrade head
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    # ── Tracks ────────────────────────────────────────────────────────────
    op.create_table(
        "stemhub_tracks",
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("owner_user_id", sa.String(36), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("genre", sa.String(100), nullable=True),
        sa.Column("bpm", sa.Integer(), nullable=True),
        sa.Column("key_signature", sa.String(50), nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("track_id"),
    )
    op.create_index("ix_stemhub_tracks_owner_user_id", "stemhub_tracks", ["owner_user_id"])

    op.create_table(
        "stemhub_track_collaborators",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="collaborator"),
        _ts("added_at"),
        sa.ForeignKeyConstraint(["track_id"], ["stemhub_tracks.track_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("track_id", "user_id", name="uq_stemhub_collaborators_track_user"),
    )
    op.create_index("ix_stemhub_track_collaborators_track_id", "stemhub_track_collaborators", ["track_id"])
    op.create_index("ix_stemhub_collaborators_user_id", "stemhub_track_collaborators", ["user_id"])

    # ── Stems ─────────────────────────────────────────────────────────────
    op.create_table(
        "stemhub_stems",
        sa.Column("stem_id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("instrument", sa.String(100), nullable=True),
        sa.Column("stem_identity", sa.String(160), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_path", sa.String(1024), nullable=False),
        sa.Column("uploader_user_id", sa.String(36), nullable=False),
        sa.Column("replaces_stem_id", sa.String(36), nullable=True),
        sa.Column("key", sa.String(20), nullable=True),
        sa.Column("bpm", sa.Float(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["track_id"], ["stemhub_tracks.track_id"]),
        sa.PrimaryKeyConstraint("stem_id"),
    )
    op.create_index("ix_stemhub_stems_track_id", "stemhub_stems", ["track_id"])
    op.create_index("ix_stemhub_stems_stem_identity", "stemhub_stems", ["stem_identity"])
    op.create_index("ix_stemhub_stems_file_path", "stemhub_stems", ["file_path"])

    # ── Stages & upstreams ────────────────────────────────────────────────
    op.create_table(
        "stemhub_stages",
        sa.Column("stage_id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("creator_user_id", sa.String(36), nullable=False),
        sa.Column("source_upstream_id", sa.String(36), nullable=True),
        sa.Column("snapshot_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(["track_id"], ["stemhub_tracks.track_id"]),
        sa.PrimaryKeyConstraint("stage_id"),
        sa.UniqueConstraint("track_id", "version", name="uq_stemhub_stages_track_version"),
    )
    op.create_index("ix_stemhub_stages_track_id", "stemhub_stages", ["track_id"])

    op.create_table(
        "stemhub_upstreams",
        sa.Column("upstream_id", sa.String(36), nullable=False),
        sa.Column("stage_id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("author_user_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _ts("created_at"),
        _ts("decided_at", nullable=True),
        sa.ForeignKeyConstraint(["stage_id"], ["stemhub_stages.stage_id"]),
        sa.PrimaryKeyConstraint("upstream_id"),
    )
    op.create_index("ix_stemhub_upstreams_stage_id", "stemhub_upstreams", ["stage_id"])
    op.create_index("ix_stemhub_upstreams_track_id", "stemhub_upstreams", ["track_id"])

    # ── Snapshots ─────────────────────────────────────────────────────────
    op.create_table(
        "stemhub_version_stems",
        sa.Column("version_stem_id", sa.String(36), nullable=False),
        sa.Column("stage_id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("stem_id", sa.String(36), nullable=True),
        sa.Column("stem_identity", sa.String(160), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_path", sa.String(1024), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("upstream_id", sa.String(36), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["stage_id"], ["stemhub_stages.stage_id"]),
        sa.ForeignKeyConstraint(["stem_id"], ["stemhub_stems.stem_id"]),
        sa.ForeignKeyConstraint(["upstream_id"], ["stemhub_upstreams.upstream_id"]),
        sa.PrimaryKeyConstraint("version_stem_id"),
        sa.UniqueConstraint("stage_id", "stem_identity", name="uq_stemhub_version_stems_stage_identity"),
    )
    op.create_index("ix_stemhub_version_stems_stage_id", "stemhub_version_stems", ["stage_id"])
    op.create_index("ix_stemhub_version_stems_track_id", "stemhub_version_stems", ["track_id"])

    # ── Guides ────────────────────────────────────────────────────────────
    op.create_table(
        "stemhub_guides",
        sa.Column("guide_id", sa.String(36), nullable=False),
        sa.Column("stage_id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("mixed_file_path", sa.String(1024), nullable=False),
        sa.Column("waveform_data_path", sa.String(1024), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(["stage_id"], ["stemhub_stages.stage_id"]),
        sa.PrimaryKeyConstraint("guide_id"),
        sa.UniqueConstraint("stage_id"),
    )
    op.create_index("ix_stemhub_guides_track_id", "stemhub_guides", ["track_id"])

    op.create_table(
        "stemhub_guide_stems",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("guide_id", sa.String(36), nullable=False),
        sa.Column("stem_id", sa.String(36), nullable=False),
        sa.ForeignKeyConstraint(["guide_id"], ["stemhub_guides.guide_id"]),
        sa.ForeignKeyConstraint(["stem_id"], ["stemhub_stems.stem_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("guide_id", "stem_id", name="uq_stemhub_guide_stems"),
    )
    op.create_index("ix_stemhub_guide_stems_guide_id", "stemhub_guide_stems", ["guide_id"])

    op.create_table(
        "stemhub_guide_version_stems",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("guide_id", sa.String(36), nullable=False),
        sa.Column("version_stem_id", sa.String(36), nullable=False),
        sa.ForeignKeyConstraint(["guide_id"], ["stemhub_guides.guide_id"]),
        sa.ForeignKeyConstraint(["version_stem_id"], ["stemhub_version_stems.version_stem_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("guide_id", "version_stem_id", name="uq_stemhub_guide_version_stems"),
    )
    op.create_index("ix_stemhub_guide_version_stems_guide_id", "stemhub_guide_version_stems", ["guide_id"])
    op.create_index(
        "ix_stemhub_guide_version_stems_version_stem_id", "stemhub_guide_version_stems", ["version_stem_id"]
    )

    # ── Review ────────────────────────────────────────────────────────────
    op.create_table(
        "stemhub_upstream_stems",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("upstream_id", sa.String(36), nullable=False),
        sa.Column("stem_id", sa.String(36), nullable=False),
        sa.Column("stem_identity", sa.String(160), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("version_stem_id", sa.String(36), nullable=True),
        sa.ForeignKeyConstraint(["upstream_id"], ["stemhub_upstreams.upstream_id"]),
        sa.ForeignKeyConstraint(["stem_id"], ["stemhub_stems.stem_id"]),
        sa.ForeignKeyConstraint(["version_stem_id"], ["stemhub_version_stems.version_stem_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("upstream_id", "stem_identity", name="uq_stemhub_upstream_stems_identity"),
    )
    op.create_index("ix_stemhub_upstream_stems_upstream_id", "stemhub_upstream_stems", ["upstream_id"])
    op.create_index("ix_stemhub_upstream_stems_version_stem_id", "stemhub_upstream_stems", ["version_stem_id"])

    op.create_table(
        "stemhub_reviews",
        sa.Column("review_id", sa.String(36), nullable=False),
        sa.Column("upstream_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("decision", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("is_owner", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("decided_at", nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["upstream_id"], ["stemhub_upstreams.upstream_id"]),
        sa.PrimaryKeyConstraint("review_id"),
        sa.UniqueConstraint("upstream_id", "user_id", name="uq_stemhub_reviews_upstream_user"),
    )
    op.create_index("ix_stemhub_reviews_upstream_id", "stemhub_reviews", ["upstream_id"])

    op.create_table(
        "stemhub_comments",
        sa.Column("comment_id", sa.String(36), nullable=False),
        sa.Column("upstream_id", sa.String(36), nullable=False),
        sa.Column("author_user_id", sa.String(36), nullable=False),
        sa.Column("position_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("body", sa.Text(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.ForeignKeyConstraint(["upstream_id"], ["stemhub_upstreams.upstream_id"]),
        sa.PrimaryKeyConstraint("comment_id"),
    )
    op.create_index("ix_stemhub_comments_upstream_id", "stemhub_comments", ["upstream_id"])


def downgrade() -> None:
    op.drop_table("stemhub_comments")
    op.drop_table("stemhub_reviews")
    op.drop_table("stemhub_upstream_stems")
    op.drop_table("stemhub_guide_version_stems")
    op.drop_table("stemhub_guide_stems")
    op.drop_table("stemhub_guides")
    op.drop_table("stemhub_version_stems")
    op.drop_table("stemhub_upstreams")
    op.drop_table("stemhub_stages")
    op.drop_table("stemhub_stems")
    op.drop_table("stemhub_track_collaborators")
    op.drop_table("stemhub_tracks")
