"""Stem Store — live audio layers and their stable identities.

A Stem is a mutable pointer to the *current* take of one instrument layer.
Identity is what makes two stems "the same layer" for the diff engine:

    stem_identity = "<category>:<lineage stem id>"

A fresh upload mints a new identity from its own id.  Uploading with
``replaces_stem_id`` continues the replaced stem's lineage and inherits its
identity, even when the file path (which changes on every take) differs.
"""
from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.models import Stem
from stemhub.services.errors import InvalidStateError, NotFoundError
from stemhub.services.tracks import get_track

logger = logging.getLogger(__name__)


def make_stem_identity(category: str, lineage_stem_id: str) -> str:
    """Build the stable identity key for a layer lineage."""
    return f"{category.strip().lower()}:{lineage_stem_id}"


async def upload_stem(
    session: AsyncSession,
    *,
    track_id: str,
    category: str,
    file_path: str,
    uploader_user_id: str,
    file_name: str | None = None,
    instrument: str | None = None,
    replaces_stem_id: str | None = None,
    key: str | None = None,
    bpm: float | None = None,
) -> Stem:
    """Record an uploaded stem.

    Raises:
        NotFoundError:     Track or replaced stem does not exist.
        InvalidStateError: The replaced stem belongs to another track.
    """
    await get_track(session, track_id)

    stem_id = str(uuid.uuid4())
    if replaces_stem_id is not None:
        replaced = await get_stem(session, replaces_stem_id)
        if replaced.track_id != track_id:
            raise InvalidStateError(
                f"Stem {replaces_stem_id} belongs to another track"
            )
        identity = replaced.stem_identity
        category = replaced.category
    else:
        identity = make_stem_identity(category, stem_id)

    stem = Stem(
        stem_id=stem_id,
        track_id=track_id,
        category=category,
        instrument=instrument,
        stem_identity=identity,
        file_name=file_name or file_path.rsplit("/", 1)[-1],
        file_path=file_path,
        uploader_user_id=uploader_user_id,
        replaces_stem_id=replaces_stem_id,
        key=key,
        bpm=bpm,
    )
    session.add(stem)
    await session.flush()
    logger.info("✅ Stored stem %s (%s) for track %s", stem_id, identity, track_id)
    return stem


async def get_stem(session: AsyncSession, stem_id: str) -> Stem:
    stem = await session.get(Stem, stem_id)
    if stem is None:
        raise NotFoundError(f"Stem {stem_id} not found")
    return stem


async def get_stems(session: AsyncSession, stem_ids: list[str]) -> list[Stem]:
    """Return stems in the order requested; raise if any id is unknown."""
    if not stem_ids:
        return []
    stmt = select(Stem).where(Stem.stem_id.in_(stem_ids))
    by_id = {s.stem_id: s for s in (await session.execute(stmt)).scalars().all()}
    missing = [sid for sid in stem_ids if sid not in by_id]
    if missing:
        raise NotFoundError(f"Stems not found: {', '.join(missing)}")
    return [by_id[sid] for sid in stem_ids]


async def resolve_by_path(session: AsyncSession, file_path: str) -> Stem | None:
    """Return the most recent stem stored at *file_path*, or None."""
    stmt = (
        select(Stem)
        .where(Stem.file_path == file_path)
        .order_by(Stem.created_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_track_stems(session: AsyncSession, track_id: str) -> list[Stem]:
    """Every stem ever uploaded to the track, oldest first."""
    stmt = select(Stem).where(Stem.track_id == track_id).order_by(Stem.created_at)
    return list((await session.execute(stmt)).scalars().all())


async def list_current_stems(session: AsyncSession, track_id: str) -> list[Stem]:
    """The newest stem per identity — the track's live layer set.

    A stem that has been replaced is never current, whatever its timestamp.
    """
    stems = await list_track_stems(session, track_id)
    replaced = {s.replaces_stem_id for s in stems if s.replaces_stem_id}
    latest: dict[str, Stem] = {}
    for stem in stems:
        if stem.stem_id in replaced:
            continue
        latest[stem.stem_identity] = stem
    return sorted(latest.values(), key=lambda s: (s.category, s.stem_identity))
