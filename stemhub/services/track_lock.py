"""Keyed write locks for the workflow core.

Version-advancing operations on one track (merge, stage rejection,
rollback) are serialized through one ``asyncio.Lock`` per track id, held
across the full unit of work including its commit.  On databases that
support it the track row is also locked with ``SELECT ... FOR UPDATE`` so
separate worker processes serialize on the database as well; SQLite
ignores the clause and relies on its single-writer lock.

Review decisions on one upstream are serialized through a per-upstream
lock so the aggregate fold always sees every committed vote.  Decisions on
different upstreams never contend.  Lock order is always upstream → track.

Reads of VersionStems and Guides never take a lock.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.models import Track
from stemhub.services.errors import NotFoundError

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """One ``asyncio.Lock`` per key, alive only while someone holds or awaits it.

    Locks are per event loop; no thread-safety.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for *key*; the entry is dropped after the last user leaves."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users.get(key, 1) - 1
            if remaining > 0:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)

    def clear(self) -> None:
        self._locks.clear()
        self._users.clear()


# Key in ``AsyncSession.info`` listing the track locks the session holds.
_HELD_KEY = "stemhub_held_track_locks"

_track_locks = KeyedLockRegistry()
_upstream_locks = KeyedLockRegistry()


def reset_locks() -> None:
    """Forget every lock (tests run each case on a fresh event loop)."""
    _track_locks.clear()
    _upstream_locks.clear()


async def _lock_track_row(session: AsyncSession, track_id: str) -> Track:
    stmt = (
        select(Track)
        .where(Track.track_id == track_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    track = (await session.execute(stmt)).scalar_one_or_none()
    if track is None:
        raise NotFoundError(f"Track {track_id} not found")
    return track


@asynccontextmanager
async def track_write_lock(session: AsyncSession, track_id: str) -> AsyncIterator[Track]:
    """Hold the write lock for *track_id* and yield the freshly-read track row.

    Re-entrant per session: a decision that completes an approval holds the
    lock across its whole unit of work, and the merge it triggers re-enters
    it without waiting on itself.

    Raises:
        NotFoundError: The track does not exist.
    """
    held: set[str] = session.info.setdefault(_HELD_KEY, set())
    if track_id in held:
        yield await _lock_track_row(session, track_id)
        return

    async with _track_locks.hold(track_id):
        logger.debug("🔒 Acquired write lock for track %s", track_id)
        held.add(track_id)
        try:
            yield await _lock_track_row(session, track_id)
        finally:
            held.discard(track_id)
            logger.debug("🔓 Released write lock for track %s", track_id)


@asynccontextmanager
async def upstream_decision_lock(upstream_id: str) -> AsyncIterator[None]:
    """Serialize review decisions on one upstream."""
    async with _upstream_locks.hold(upstream_id):
        yield
