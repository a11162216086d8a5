"""Track registry — ownership and collaborator facts for the workflow core.

The identity collaborator authenticates users; this module answers the
membership questions Review Aggregation asks (``is_owner``, ``is_member``).
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.database import unit_of_work
from stemhub.db.models import Stage, Track, TrackCollaborator
from stemhub.services.errors import NotFoundError

logger = logging.getLogger(__name__)


async def get_track(session: AsyncSession, track_id: str) -> Track:
    """Return the track or raise ``NotFoundError``."""
    track = await session.get(Track, track_id)
    if track is None:
        raise NotFoundError(f"Track {track_id} not found")
    return track


async def create_track(
    session: AsyncSession,
    *,
    title: str,
    owner_user_id: str,
    collaborator_ids: list[str] | None = None,
    description: str = "",
    genre: str | None = None,
    bpm: int | None = None,
    key_signature: str | None = None,
) -> Track:
    """Persist a new track and its collaborator set.

    The owner is never stored as a collaborator; duplicates are ignored.
    """
    track = Track(
        title=title,
        owner_user_id=owner_user_id,
        description=description,
        genre=genre,
        bpm=bpm,
        key_signature=key_signature,
    )
    session.add(track)
    await session.flush()

    seen: set[str] = set()
    for user_id in collaborator_ids or []:
        if user_id == owner_user_id or user_id in seen:
            continue
        seen.add(user_id)
        session.add(TrackCollaborator(track_id=track.track_id, user_id=user_id))
    await session.flush()
    logger.info("✅ Created track '%s' (%s) owned by %s", title, track.track_id, owner_user_id)
    return track


async def initialize_track(
    session: AsyncSession,
    *,
    title: str,
    owner_user_id: str,
    collaborator_ids: list[str] | None = None,
    description: str = "",
    genre: str | None = None,
    bpm: int | None = None,
    key_signature: str | None = None,
) -> tuple[Track, Stage]:
    """Create a track and open its version-1 stage in one unit of work."""
    from stemhub.services.stages import open_initial_stage

    async with unit_of_work(session):
        track = await create_track(
            session,
            title=title,
            owner_user_id=owner_user_id,
            collaborator_ids=collaborator_ids,
            description=description,
            genre=genre,
            bpm=bpm,
            key_signature=key_signature,
        )
        stage = await open_initial_stage(session, track.track_id, creator_user_id=owner_user_id)
    return track, stage


async def add_collaborator(
    session: AsyncSession,
    track_id: str,
    user_id: str,
    *,
    role: str = "collaborator",
) -> TrackCollaborator | None:
    """Grant *user_id* access to the track.

    Returns the collaborator row, or ``None`` when *user_id* is the owner.
    Re-adding an existing collaborator updates the role in place.
    """
    track = await get_track(session, track_id)
    if track.owner_user_id == user_id:
        return None
    stmt = select(TrackCollaborator).where(
        TrackCollaborator.track_id == track_id,
        TrackCollaborator.user_id == user_id,
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing is not None:
        existing.role = role
        await session.flush()
        return existing

    collaborator = TrackCollaborator(track_id=track_id, user_id=user_id, role=role)
    session.add(collaborator)
    await session.flush()
    logger.info("✅ Added collaborator %s to track %s as %s", user_id, track_id, role)
    return collaborator


async def list_collaborator_ids(session: AsyncSession, track_id: str) -> list[str]:
    stmt = (
        select(TrackCollaborator.user_id)
        .where(TrackCollaborator.track_id == track_id)
        .order_by(TrackCollaborator.added_at)
    )
    return list((await session.execute(stmt)).scalars().all())


async def is_owner(session: AsyncSession, track_id: str, user_id: str) -> bool:
    track = await get_track(session, track_id)
    return track.owner_user_id == user_id


async def is_member(session: AsyncSession, track_id: str, user_id: str) -> bool:
    """True when *user_id* owns or collaborates on the track."""
    if await is_owner(session, track_id, user_id):
        return True
    stmt = select(TrackCollaborator.id).where(
        TrackCollaborator.track_id == track_id,
        TrackCollaborator.user_id == user_id,
    )
    return (await session.execute(stmt)).first() is not None
