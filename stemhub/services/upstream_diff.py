"""Upstream Diff Engine — classify proposed stems against a stage snapshot.

Classification is by stem identity, always relative to the target stage's
frozen VersionStem set, never to who submitted what:

- no snapshot entry shares the identity          → ``new``
- an entry shares the identity, different file   → ``modify``
- an entry shares the identity and the file      → ``unchanged``

A proposed stem whose matching snapshot entry itself came from the same
upstream (a re-submission) is still classified by file comparison alone.

Result ordering (new < modify < unchanged, then category, then identity) is
the review UI's presentation contract; storage order is irrelevant.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from stemhub.db.models import Stage
from stemhub.services.errors import InvalidRequestError, NotFoundError
from stemhub.services.stem_store import get_stems
from stemhub.services.version_stems import list_for_stage

logger = logging.getLogger(__name__)


class DiffKind(str, Enum):
    """How a proposed stem relates to the target snapshot."""

    NEW = "new"
    MODIFY = "modify"
    UNCHANGED = "unchanged"


KIND_ORDER: dict[DiffKind, int] = {
    DiffKind.NEW: 0,
    DiffKind.MODIFY: 1,
    DiffKind.UNCHANGED: 2,
}


class SnapshotEntry(Protocol):
    """What the engine needs from a frozen VersionStem."""

    version_stem_id: str
    stem_identity: str
    file_path: str


class ProposedStem(Protocol):
    """What the engine needs from a proposed live Stem."""

    stem_id: str
    stem_identity: str
    category: str
    file_path: str


@dataclass(frozen=True)
class StemDiffEntry:
    """One classified proposed stem.

    Attributes:
        stem_id:            The proposed live stem.
        stem_identity:      Stable layer key used for matching.
        category:           Layer category, used for stable ordering.
        file_path:          Proposed file reference.
        kind:               new | modify | unchanged.
        version_stem_id:    Snapshot entry compared against (None for new).
        previous_file_path: The snapshot's file reference (None for new).
    """

    stem_id: str
    stem_identity: str
    category: str
    file_path: str
    kind: DiffKind
    version_stem_id: str | None = None
    previous_file_path: str | None = None


def sort_key(entry: StemDiffEntry) -> tuple[int, str, str]:
    return (KIND_ORDER[entry.kind], entry.category, entry.stem_identity)


def classify_stem(
    snapshot_by_identity: dict[str, SnapshotEntry],
    proposed: ProposedStem,
) -> StemDiffEntry:
    """Classify a single proposed stem against an identity-indexed snapshot."""
    match = snapshot_by_identity.get(proposed.stem_identity)
    if match is None:
        kind = DiffKind.NEW
    elif match.file_path == proposed.file_path:
        kind = DiffKind.UNCHANGED
    else:
        kind = DiffKind.MODIFY
    return StemDiffEntry(
        stem_id=proposed.stem_id,
        stem_identity=proposed.stem_identity,
        category=proposed.category,
        file_path=proposed.file_path,
        kind=kind,
        version_stem_id=match.version_stem_id if match is not None else None,
        previous_file_path=match.file_path if match is not None else None,
    )


def classify(
    snapshot: Iterable[SnapshotEntry],
    proposed: Iterable[ProposedStem],
) -> list[StemDiffEntry]:
    """Classify every proposed stem and return the diff in review order.

    Raises:
        InvalidRequestError: Two proposed stems share one identity.
    """
    by_identity = {entry.stem_identity: entry for entry in snapshot}
    seen: set[str] = set()
    entries: list[StemDiffEntry] = []
    for stem in proposed:
        if stem.stem_identity in seen:
            raise InvalidRequestError(
                f"Layer {stem.stem_identity} is proposed more than once"
            )
        seen.add(stem.stem_identity)
        entries.append(classify_stem(by_identity, stem))
    return sorted(entries, key=sort_key)


async def compute_diff(
    session: AsyncSession,
    target_stage_id: str,
    proposed_stem_ids: list[str],
) -> list[StemDiffEntry]:
    """Diff the proposed stems against the target stage's snapshot.

    Raises:
        NotFoundError:       Stage or a proposed stem does not exist.
        InvalidRequestError: A stem belongs to another track or a layer repeats.
    """
    stage = await session.get(Stage, target_stage_id)
    if stage is None:
        raise NotFoundError(f"Stage {target_stage_id} not found")

    stems = await get_stems(session, proposed_stem_ids)
    foreign = [s.stem_id for s in stems if s.track_id != stage.track_id]
    if foreign:
        raise InvalidRequestError(
            f"Stems {', '.join(foreign)} do not belong to track {stage.track_id}"
        )

    snapshot = await list_for_stage(session, target_stage_id)
    entries = classify(snapshot, stems)
    logger.debug(
        "Diff vs stage %s (v%d): %s",
        target_stage_id,
        stage.version,
        ", ".join(f"{e.stem_identity}={e.kind.value}" for e in entries),
    )
    return entries
