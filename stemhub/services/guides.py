"""Guide Service — the single reference mix + waveform record per stage.

This module manages the Guide row and its source links; the DSP itself is
the mixing collaborator's job (see ``stemhub.services.mixing``).

Idempotency contract
--------------------
``materialize`` and ``record_mix_result`` are upserts keyed by stage: when a
Guide already exists for the stage its paths are updated in place and new
stem links are added next to the existing ones.  Calling either twice with
the same inputs leaves exactly one Guide with the same links.

Partial linkage
---------------
``link_stems`` resolves file paths to live Stem rows.  A path with no Stem is
logged and skipped rather than failing the build.  A Guide with partially
resolved stems is still valid.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.models import Guide, GuideStem, GuideVersionStem, Stage, Stem, VersionStem
from stemhub.services.errors import NotFoundError
from stemhub.services.mixing import MixingBackend, get_mixing_backend
from stemhub.services.stem_store import resolve_by_path

logger = logging.getLogger(__name__)


async def _get_stage(session: AsyncSession, stage_id: str) -> Stage:
    stage = await session.get(Stage, stage_id)
    if stage is None:
        raise NotFoundError(f"Stage {stage_id} not found")
    return stage


async def get_guide_for_stage(session: AsyncSession, stage_id: str) -> Guide | None:
    """Return the stage's Guide, or None if it has not been built yet."""
    stmt = select(Guide).where(Guide.stage_id == stage_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_guide(session: AsyncSession, guide_id: str) -> Guide:
    guide = await session.get(Guide, guide_id)
    if guide is None:
        raise NotFoundError(f"Guide {guide_id} not found")
    return guide


async def materialize(
    session: AsyncSession,
    stage_id: str,
    *,
    stems: Sequence[Stem],
    version_stems: Sequence[VersionStem],
    mixer: MixingBackend | None = None,
) -> Guide:
    """Build or refresh the Guide for *stage_id*.

    The mix is requested for the frozen snapshot paths so that the guide of
    a historical stage can always be rebuilt from the same files.  Live
    *stems* are linked by path, frozen *version_stems* by id.
    """
    await _get_stage(session, stage_id)
    backend = mixer or get_mixing_backend()
    mix_paths = [vs.file_path for vs in version_stems] or [s.file_path for s in stems]
    result = await backend.mix(stage_id, mix_paths)

    guide = await record_mix_result(
        session,
        stage_id,
        mixed_file_path=result.mixed_file_path,
        waveform_data_path=result.waveform_data_path,
        stem_paths=[s.file_path for s in stems],
    )
    await link_version_stems(session, guide.guide_id, [vs.version_stem_id for vs in version_stems])
    return guide


async def record_mix_result(
    session: AsyncSession,
    stage_id: str,
    *,
    mixed_file_path: str,
    waveform_data_path: str,
    stem_paths: Sequence[str] = (),
) -> Guide:
    """Upsert the stage's Guide with the paths the mixing collaborator produced.

    Also the entry point for the asynchronous "mix complete" callback.
    """
    stage = await _get_stage(session, stage_id)
    guide = await get_guide_for_stage(session, stage_id)
    if guide is not None:
        logger.info("Guide already exists for stage %s, updating in place", stage_id)
        guide.mixed_file_path = mixed_file_path
        guide.waveform_data_path = waveform_data_path
    else:
        guide = Guide(
            stage_id=stage_id,
            track_id=stage.track_id,
            mixed_file_path=mixed_file_path,
            waveform_data_path=waveform_data_path,
        )
        session.add(guide)
    await session.flush()

    await link_stems(session, guide.guide_id, stem_paths)
    logger.info("✅ Guide %s ready for stage %s (v%d)", guide.guide_id, stage_id, stage.version)
    return guide


async def link_stems(
    session: AsyncSession,
    guide_id: str,
    stem_file_paths: Sequence[str],
) -> list[GuideStem]:
    """Link live stems to the guide by file path; return the newly-added links."""
    await get_guide(session, guide_id)
    existing_stmt = select(GuideStem.stem_id).where(GuideStem.guide_id == guide_id)
    linked = set((await session.execute(existing_stmt)).scalars().all())

    added: list[GuideStem] = []
    for path in stem_file_paths:
        stem = await resolve_by_path(session, path)
        if stem is None:
            logger.warning("⚠️ No stem found for path %s, skipping link to guide %s", path, guide_id)
            continue
        if stem.stem_id in linked:
            continue
        link = GuideStem(guide_id=guide_id, stem_id=stem.stem_id)
        session.add(link)
        linked.add(stem.stem_id)
        added.append(link)

    if added:
        await session.flush()
    logger.info("Guide %s: linked %d new stems", guide_id, len(added))
    return added


async def link_version_stems(
    session: AsyncSession,
    guide_id: str,
    version_stem_ids: Sequence[str],
) -> list[GuideVersionStem]:
    """Link frozen VersionStems to the guide; already-linked ids are ignored."""
    existing_stmt = select(GuideVersionStem.version_stem_id).where(
        GuideVersionStem.guide_id == guide_id
    )
    linked = set((await session.execute(existing_stmt)).scalars().all())

    added: list[GuideVersionStem] = []
    for vs_id in version_stem_ids:
        if vs_id in linked:
            continue
        link = GuideVersionStem(guide_id=guide_id, version_stem_id=vs_id)
        session.add(link)
        linked.add(vs_id)
        added.append(link)
    if added:
        await session.flush()
    return added


async def list_guide_stems(session: AsyncSession, guide_id: str) -> list[Stem]:
    stmt = (
        select(Stem)
        .join(GuideStem, GuideStem.stem_id == Stem.stem_id)
        .where(GuideStem.guide_id == guide_id)
        .order_by(Stem.category, Stem.stem_identity)
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_guide_version_stems(session: AsyncSession, guide_id: str) -> list[VersionStem]:
    stmt = (
        select(VersionStem)
        .join(GuideVersionStem, GuideVersionStem.version_stem_id == VersionStem.version_stem_id)
        .where(GuideVersionStem.guide_id == guide_id)
        .order_by(VersionStem.category, VersionStem.stem_identity)
    )
    return list((await session.execute(stmt)).scalars().all())


async def stems_for_version(session: AsyncSession, track_id: str, version: int) -> list[Stem]:
    """Live stems linked to the guide of the stage at *version*.

    Returns an empty list when that stage has no guide yet.
    """
    stmt = select(Stage).where(Stage.track_id == track_id, Stage.version == version)
    stage = (await session.execute(stmt)).scalar_one_or_none()
    if stage is None:
        raise NotFoundError(f"Stage not found for track {track_id} with version {version}")
    guide = await get_guide_for_stage(session, stage.stage_id)
    if guide is None:
        logger.info("No guide found for stage %s", stage.stage_id)
        return []
    return await list_guide_stems(session, guide.guide_id)
