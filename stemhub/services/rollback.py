"""Rollback Coordinator — discard every stage after a target version.

Rolling a track back to version V deletes each stage with version > V and
everything hanging off it, then reopens V as the active stage.  The whole
cascade is one unit of work under the track write lock, so a merge can
never observe (or build on) a half-deleted stage.

Deletion plan
-------------
Foreign keys carry no database-level cascade; the dependency graph is
walked explicitly::

    Stage
    ├── Guide
    │   ├── GuideStem
    │   └── GuideVersionStem
    ├── Upstream
    │   ├── Review
    │   ├── Comment
    │   └── UpstreamStem
    └── VersionStem
        ├── GuideVersionStem
        └── UpstreamStem

Nodes are collected depth-first and deleted in reverse discovery order, so
every child row is gone before its parent.  A node may be reached twice
(e.g. a ``GuideVersionStem`` via its guide and via its version stem);
deletes are by primary key and therefore harmless to repeat.  Stages are
processed newest first: a stage's VersionStems may record the upstream of
the stage before it as their provenance.

Live Stems are never touched.  Upstreams targeting V itself survive the
rollback and can still be reviewed against the reopened stage.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.database import unit_of_work
from stemhub.db.models import (
    Comment,
    Guide,
    GuideStem,
    GuideVersionStem,
    Review,
    Stage,
    Upstream,
    UpstreamStem,
    VersionStem,
)
from stemhub.services.errors import InvalidStateError, NotFoundError
from stemhub.services.lifecycle import StageStatus, assert_stage_transition
from stemhub.services.track_lock import track_write_lock

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Summary of a completed rollback.

    Attributes:
        track_id:          The rolled-back track.
        target_version:    The version now active again.
        reopened_stage_id: Stage id of that version.
        deleted_stage_ids: Discarded stages, newest first.
        deleted_rows:      Row counts per table.
    """

    track_id: str
    target_version: int
    reopened_stage_id: str
    deleted_stage_ids: list[str] = field(default_factory=list)
    deleted_rows: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class _Node:
    model: Any
    pk: Any
    ids: tuple[str, ...]


async def _ids(session: AsyncSession, column: Any, where: Any) -> tuple[str, ...]:
    return tuple((await session.execute(select(column).where(where))).scalars().all())


async def plan_stage_deletion(session: AsyncSession, stage_id: str) -> list[_Node]:
    """Collect the stage's dependency graph in depth-first discovery order."""
    plan: list[_Node] = [_Node(Stage, Stage.stage_id, (stage_id,))]

    guide_ids = await _ids(session, Guide.guide_id, Guide.stage_id == stage_id)
    plan.append(_Node(Guide, Guide.guide_id, guide_ids))
    plan.append(_Node(GuideStem, GuideStem.id, await _ids(session, GuideStem.id, GuideStem.guide_id.in_(guide_ids))))
    plan.append(
        _Node(
            GuideVersionStem,
            GuideVersionStem.id,
            await _ids(session, GuideVersionStem.id, GuideVersionStem.guide_id.in_(guide_ids)),
        )
    )

    upstream_ids = await _ids(session, Upstream.upstream_id, Upstream.stage_id == stage_id)
    plan.append(_Node(Upstream, Upstream.upstream_id, upstream_ids))
    plan.append(_Node(Review, Review.review_id, await _ids(session, Review.review_id, Review.upstream_id.in_(upstream_ids))))
    plan.append(_Node(Comment, Comment.comment_id, await _ids(session, Comment.comment_id, Comment.upstream_id.in_(upstream_ids))))
    plan.append(
        _Node(
            UpstreamStem,
            UpstreamStem.id,
            await _ids(session, UpstreamStem.id, UpstreamStem.upstream_id.in_(upstream_ids)),
        )
    )

    vs_ids = await _ids(session, VersionStem.version_stem_id, VersionStem.stage_id == stage_id)
    plan.append(_Node(VersionStem, VersionStem.version_stem_id, vs_ids))
    plan.append(
        _Node(
            GuideVersionStem,
            GuideVersionStem.id,
            await _ids(session, GuideVersionStem.id, GuideVersionStem.version_stem_id.in_(vs_ids)),
        )
    )
    plan.append(
        _Node(
            UpstreamStem,
            UpstreamStem.id,
            await _ids(session, UpstreamStem.id, UpstreamStem.version_stem_id.in_(vs_ids)),
        )
    )
    return plan


async def _delete_rows(session: AsyncSession, node: _Node) -> int:
    if not node.ids:
        return 0
    result = await session.execute(
        delete(node.model)
        .where(node.pk.in_(node.ids))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def rollback(session: AsyncSession, track_id: str, target_version: int) -> RollbackResult:
    """Discard every stage after *target_version* and reopen it.

    Raises:
        NotFoundError:     The track or the target version does not exist.
        InvalidStateError: The target version is the active stage.
        TransactionError:  The cascade could not complete; nothing changed.
    """
    async with track_write_lock(session, track_id):
        async with unit_of_work(session):
            stmt = (
                select(Stage)
                .where(Stage.track_id == track_id, Stage.version == target_version)
                .execution_options(populate_existing=True)
            )
            target = (await session.execute(stmt)).scalar_one_or_none()
            if target is None:
                raise NotFoundError(f"Track {track_id} has no stage with version {target_version}")
            if target.status == StageStatus.ACTIVE.value:
                raise InvalidStateError(
                    f"Version {target_version} is already the active stage of track {track_id}"
                )

            doomed_stmt = (
                select(Stage.stage_id)
                .where(Stage.track_id == track_id, Stage.version > target_version)
                .order_by(Stage.version.desc())
            )
            doomed = list((await session.execute(doomed_stmt)).scalars().all())

            deleted: Counter[str] = Counter()
            for stage_id in doomed:
                plan = await plan_stage_deletion(session, stage_id)
                for node in reversed(plan):
                    deleted[node.model.__tablename__] += await _delete_rows(session, node)
                logger.info("🗑 Discarded stage %s of track %s", stage_id, track_id)

            assert_stage_transition(StageStatus(target.status), StageStatus.ACTIVE, reopen=True)
            target.status = StageStatus.ACTIVE.value
            await session.flush()

            logger.info(
                "✅ Rolled track %s back to v%d (%d stages discarded)",
                track_id,
                target_version,
                len(doomed),
            )
            result = RollbackResult(
                track_id=track_id,
                target_version=target_version,
                reopened_stage_id=target.stage_id,
                deleted_stage_ids=doomed,
                deleted_rows=dict(deleted),
            )
    return result
