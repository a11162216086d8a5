"""VersionStem Snapshot Service — freeze a stage's stem set exactly once.

Snapshots are append-only.  Nothing in this module updates or deletes a
VersionStem; the rollback coordinator is the only code that removes them.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.models import Stage, Stem, VersionStem
from stemhub.services.errors import DuplicateSnapshotError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StemSelection:
    """One layer to freeze into a stage snapshot.

    Attributes:
        stem_id:       Originating live stem (None if it no longer exists).
        stem_identity: Stable layer key.
        category:      Layer category ("drums", "bass", ...).
        file_name:     Display file name.
        file_path:     Storage reference frozen into the snapshot.
        upstream_id:   Merged upstream the layer came from, if any.
    """

    stem_id: str | None
    stem_identity: str
    category: str
    file_name: str
    file_path: str
    upstream_id: str | None = None

    @classmethod
    def from_stem(cls, stem: Stem, upstream_id: str | None = None) -> StemSelection:
        """Select a live stem at its current file path."""
        return cls(
            stem_id=stem.stem_id,
            stem_identity=stem.stem_identity,
            category=stem.category,
            file_name=stem.file_name,
            file_path=stem.file_path,
            upstream_id=upstream_id,
        )

    @classmethod
    def from_version_stem(cls, version_stem: VersionStem) -> StemSelection:
        """Carry a frozen layer forward unchanged."""
        return cls(
            stem_id=version_stem.stem_id,
            stem_identity=version_stem.stem_identity,
            category=version_stem.category,
            file_name=version_stem.file_name,
            file_path=version_stem.file_path,
            upstream_id=version_stem.upstream_id,
        )


async def snapshot(
    session: AsyncSession,
    stage_id: str,
    selections: Sequence[StemSelection],
) -> list[VersionStem]:
    """Freeze *selections* as the stem set of *stage_id*.

    Raises:
        NotFoundError:          The stage does not exist.
        DuplicateSnapshotError: The stage's stem set was already frozen, or
                                two selections share one identity.
    """
    stage = await session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError(f"Stage {stage_id} not found")
    if stage.snapshot_frozen:
        logger.error("❌ Stage %s (v%d) snapshot requested twice", stage_id, stage.version)
        raise DuplicateSnapshotError(f"Stage {stage_id} already has a frozen stem set")

    identities = [sel.stem_identity for sel in selections]
    if len(set(identities)) != len(identities):
        raise DuplicateSnapshotError(
            f"Snapshot for stage {stage_id} selects the same layer twice"
        )

    rows: list[VersionStem] = []
    for sel in selections:
        row = VersionStem(
            stage_id=stage_id,
            track_id=stage.track_id,
            stem_id=sel.stem_id,
            stem_identity=sel.stem_identity,
            category=sel.category,
            file_name=sel.file_name,
            file_path=sel.file_path,
            version=stage.version,
            upstream_id=sel.upstream_id,
        )
        session.add(row)
        rows.append(row)
    stage.snapshot_frozen = True
    await session.flush()
    logger.info("✅ Froze %d stems for stage %s (v%d)", len(rows), stage_id, stage.version)
    return rows


async def list_for_stage(session: AsyncSession, stage_id: str) -> list[VersionStem]:
    """Return the stage's frozen stem set ordered by (category, identity)."""
    stmt = (
        select(VersionStem)
        .where(VersionStem.stage_id == stage_id)
        .order_by(VersionStem.category, VersionStem.stem_identity)
    )
    return list((await session.execute(stmt)).scalars().all())


async def stem_paths_for_stage(session: AsyncSession, stage_id: str) -> list[str]:
    """File paths of the stage's snapshot, in snapshot order."""
    return [vs.file_path for vs in await list_for_stage(session, stage_id)]


async def latest_per_category(
    session: AsyncSession,
    track_id: str,
    version: int,
) -> dict[str, VersionStem]:
    """Reconstruct the newest frozen take of each category at or before *version*.

    Raises ``NotFoundError`` when no stem was frozen up to that version.
    """
    stmt = (
        select(VersionStem)
        .where(VersionStem.track_id == track_id, VersionStem.version <= version)
        .order_by(VersionStem.version, VersionStem.created_at)
    )
    latest: dict[str, VersionStem] = {}
    for row in (await session.execute(stmt)).scalars().all():
        latest[row.category] = row
    if not latest:
        raise NotFoundError(f"No stems found for track {track_id} up to version {version}")
    return latest
