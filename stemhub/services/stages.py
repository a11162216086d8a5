"""Stage Lifecycle Manager — version checkpoints of a track.

A track's stages form one linear history.  At most one stage is ``active``
at any moment; it is the only stage that accepts upstreams.  Version N+1 is
created only by merging an approved upstream into version N, which flips N
to ``approved`` in the same transaction.

Concurrency
-----------
Merges hold the per-track write lock (``track_write_lock``) for the whole
unit of work including its commit.  On top of that the flip of the target
stage is a conditional ``UPDATE ... WHERE status = 'active' AND version = N``;
if it touches no row another writer got there first and the merge fails
with ``VersionConflictError``.  The unique ``(track_id, version)`` constraint
is the last line of defence and maps to the same error.
"""
from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.config import settings
from stemhub.db.database import unit_of_work
from stemhub.db.models import Stage, Upstream, UpstreamStem
from stemhub.services.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    VersionConflictError,
)
from stemhub.services.guides import materialize
from stemhub.services.lifecycle import (
    StageStatus,
    UpstreamStatus,
    assert_stage_transition,
)
from stemhub.services.mixing import MixingBackend
from stemhub.services.stem_store import get_stems, list_current_stems
from stemhub.services.track_lock import track_write_lock
from stemhub.services.upstream_diff import DiffKind
from stemhub.services.version_stems import StemSelection, list_for_stage, snapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_stage(session: AsyncSession, stage_id: str) -> Stage:
    stage = await session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError(f"Stage {stage_id} not found")
    return stage


async def get_stage_by_version(session: AsyncSession, track_id: str, version: int) -> Stage:
    stmt = select(Stage).where(Stage.track_id == track_id, Stage.version == version)
    stage = (await session.execute(stmt)).scalar_one_or_none()
    if stage is None:
        raise NotFoundError(f"Track {track_id} has no stage with version {version}")
    return stage


async def get_active_stage(session: AsyncSession, track_id: str) -> Stage | None:
    """Return the track's active stage, or None after a rejection."""
    stmt = select(Stage).where(
        Stage.track_id == track_id,
        Stage.status == StageStatus.ACTIVE.value,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_stages(session: AsyncSession, track_id: str) -> list[Stage]:
    """All stages of the track, oldest version first."""
    stmt = select(Stage).where(Stage.track_id == track_id).order_by(Stage.version)
    return list((await session.execute(stmt)).scalars().all())


async def latest_version(session: AsyncSession, track_id: str) -> int:
    """Highest version number on the track, 0 when it has no stages."""
    stmt = select(func.max(Stage.version)).where(Stage.track_id == track_id)
    return (await session.execute(stmt)).scalar_one_or_none() or 0


async def _fresh(session: AsyncSession, model: type, pk_column, pk: str):
    stmt = select(model).where(pk_column == pk).execution_options(populate_existing=True)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"{model.__name__} {pk} not found")
    return row


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def open_initial_stage(
    session: AsyncSession,
    track_id: str,
    *,
    creator_user_id: str,
    title: str = "",
    description: str = "",
    mixer: MixingBackend | None = None,
) -> Stage:
    """Create version 1 of a track from its current live stems.

    The Guide is built only when at least one stem exists; an empty track
    gets an empty snapshot and no guide.

    Raises:
        NotFoundError: The track does not exist.
        ConflictError: The track already has stages.
    """
    async with track_write_lock(session, track_id):
        async with unit_of_work(session):
            if await get_active_stage(session, track_id) is not None:
                raise ConflictError(f"Track {track_id} already has an active stage")
            if await latest_version(session, track_id) > 0:
                raise ConflictError(f"Track {track_id} is already initialized")

            stage = Stage(
                track_id=track_id,
                version=1,
                status=StageStatus.ACTIVE.value,
                title=title or "Initial version",
                description=description,
                creator_user_id=creator_user_id,
            )
            session.add(stage)
            await session.flush()

            stems = await list_current_stems(session, track_id)
            version_stems = await snapshot(
                session, stage.stage_id, [StemSelection.from_stem(s) for s in stems]
            )
            if version_stems:
                await materialize(
                    session, stage.stage_id, stems=stems, version_stems=version_stems, mixer=mixer
                )
            logger.info("✅ Opened stage v1 (%s) for track %s", stage.stage_id, track_id)
    return stage


async def _merged_selections(
    session: AsyncSession,
    target_stage_id: str,
    upstream_id: str,
) -> list[StemSelection]:
    """Target snapshot overlaid with the upstream's new and modified layers."""
    by_identity = {
        vs.stem_identity: StemSelection.from_version_stem(vs)
        for vs in await list_for_stage(session, target_stage_id)
    }
    stmt = select(UpstreamStem).where(
        UpstreamStem.upstream_id == upstream_id,
        UpstreamStem.kind.in_([DiffKind.NEW.value, DiffKind.MODIFY.value]),
    )
    changed = list((await session.execute(stmt)).scalars().all())
    for stem in await get_stems(session, [entry.stem_id for entry in changed]):
        by_identity[stem.stem_identity] = StemSelection.from_stem(stem, upstream_id=upstream_id)
    return sorted(by_identity.values(), key=lambda s: (s.category, s.stem_identity))


async def merge_upstream(
    session: AsyncSession,
    upstream_id: str,
    *,
    mixer: MixingBackend | None = None,
    superseded_is_conflict: bool = True,
) -> Stage:
    """Merge an approved upstream: flip its target to approved, open version N+1.

    Snapshot, Guide build and both stage writes commit together or not at
    all.  A mixing failure rolls the whole merge back.

    With ``superseded_is_conflict=False`` a target already superseded by a
    later version is reported as a stale upstream (``InvalidStateError``).

    Raises:
        NotFoundError:        The upstream or its target stage is gone.
        InvalidStateError:    The upstream is not approved, or its target
                              stage is not active for another reason.
        VersionConflictError: Another merge advanced the track first.
    """
    track_id_stmt = select(Upstream.track_id).where(Upstream.upstream_id == upstream_id)
    track_id = (await session.execute(track_id_stmt)).scalar_one_or_none()
    if track_id is None:
        raise NotFoundError(f"Upstream {upstream_id} not found")

    async with track_write_lock(session, track_id):
        async with unit_of_work(session):
            upstream: Upstream = await _fresh(session, Upstream, Upstream.upstream_id, upstream_id)
            target: Stage = await _fresh(session, Stage, Stage.stage_id, upstream.stage_id)
            expected = target.version

            if upstream.status != UpstreamStatus.APPROVED.value:
                raise InvalidStateError(
                    f"Upstream {upstream_id} is {upstream.status}, only approved upstreams merge"
                )
            if target.status != StageStatus.ACTIVE.value:
                newest = await latest_version(session, track_id)
                if target.status == StageStatus.APPROVED.value and newest > expected:
                    if superseded_is_conflict:
                        raise VersionConflictError(track_id, expected)
                    raise InvalidStateError(
                        f"Upstream {upstream_id} is stale: v{expected} was superseded by v{newest}"
                    )
                raise InvalidStateError(
                    f"Stage {target.stage_id} (v{expected}) is {target.status}, not active"
                )
            assert_stage_transition(StageStatus.ACTIVE, StageStatus.APPROVED)

            result = await session.execute(
                update(Stage)
                .where(
                    Stage.stage_id == target.stage_id,
                    Stage.status == StageStatus.ACTIVE.value,
                    Stage.version == expected,
                )
                .values(status=StageStatus.APPROVED.value)
            )
            if result.rowcount != 1:
                logger.warning(
                    "⚠️ Stage %s moved while merging upstream %s", target.stage_id, upstream_id
                )
                raise VersionConflictError(track_id, expected)

            new_stage = Stage(
                track_id=track_id,
                version=expected + 1,
                status=StageStatus.ACTIVE.value,
                title=upstream.title,
                description=upstream.description,
                creator_user_id=upstream.author_user_id,
                source_upstream_id=upstream_id,
            )
            session.add(new_stage)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise VersionConflictError(track_id, expected) from exc

            selections = await _merged_selections(session, target.stage_id, upstream_id)
            version_stems = await snapshot(session, new_stage.stage_id, selections)
            live_ids = [sel.stem_id for sel in selections if sel.stem_id is not None]
            stems = await get_stems(session, live_ids)
            await materialize(
                session,
                new_stage.stage_id,
                stems=stems,
                version_stems=version_stems,
                mixer=mixer,
            )
            logger.info(
                "✅ Merged upstream %s: track %s v%d → v%d",
                upstream_id,
                track_id,
                expected,
                new_stage.version,
            )
    return new_stage


async def merge_upstream_with_retry(
    session: AsyncSession,
    upstream_id: str,
    *,
    mixer: MixingBackend | None = None,
    retries: int | None = None,
) -> Stage:
    """``merge_upstream`` retried on ``VersionConflictError``.

    A retry re-reads the target stage.  If the conflicting merge committed,
    the target is superseded and the upstream is stale: ``InvalidStateError``.
    If the target is still active the merge goes ahead.

    Only call this outside any open unit of work: each attempt must start
    from a rolled-back session.
    """
    attempts = settings.merge_retry_on_conflict if retries is None else retries
    for attempt in range(attempts + 1):
        try:
            return await merge_upstream(
                session,
                upstream_id,
                mixer=mixer,
                superseded_is_conflict=attempt == 0,
            )
        except VersionConflictError as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "⚠️ Merge of upstream %s lost the version race at v%d, retrying (%d/%d)",
                upstream_id,
                exc.expected_version,
                attempt + 1,
                attempts,
            )
    raise AssertionError("unreachable")


async def reject_stage(session: AsyncSession, stage_id: str) -> Stage:
    """Discard the active stage's content outright.

    The version counter is untouched and the track is left without an active
    stage until a rollback reopens one.

    Raises:
        NotFoundError:          The stage does not exist.
        InvalidTransitionError: The stage is not active.
    """
    track_id_stmt = select(Stage.track_id).where(Stage.stage_id == stage_id)
    track_id = (await session.execute(track_id_stmt)).scalar_one_or_none()
    if track_id is None:
        raise NotFoundError(f"Stage {stage_id} not found")

    async with track_write_lock(session, track_id):
        async with unit_of_work(session):
            stage: Stage = await _fresh(session, Stage, Stage.stage_id, stage_id)
            assert_stage_transition(StageStatus(stage.status), StageStatus.REJECTED)
            stage.status = StageStatus.REJECTED.value
            await session.flush()
            logger.info("🗑 Rejected stage %s (v%d) of track %s", stage_id, stage.version, track_id)
    return stage
