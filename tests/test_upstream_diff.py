"""Tests for the upstream diff engine.

Verifies:
- new / modify / unchanged classification by identity and file reference
- review ordering (new < modify < unchanged, then category, identity)
- the classification definition over seeded random snapshot/proposal pairs
- compute_diff against a real stage snapshot (the kick/bass/vocal scenario)
- rejection of foreign-track stems and repeated layers
"""
from __future__ import annotations

import random
from dataclasses import dataclass

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import WorkflowBuilder
from stemhub.services.errors import InvalidRequestError, NotFoundError
from stemhub.services.upstream_diff import DiffKind, classify, compute_diff


@dataclass
class Snap:
    version_stem_id: str
    stem_identity: str
    file_path: str


@dataclass
class Proposed:
    stem_id: str
    stem_identity: str
    category: str
    file_path: str


# ---------------------------------------------------------------------------
# Pure classification
# ---------------------------------------------------------------------------


class TestClassify:
    def test_new_modify_unchanged(self) -> None:
        snapshot = [
            Snap("vs-bass", "bass:1", "v3/bass.wav"),
            Snap("vs-vocal", "vocal:2", "v3/vocal.wav"),
        ]
        proposed = [
            Proposed("s-vocal", "vocal:2", "vocal", "v3/vocal.wav"),
            Proposed("s-bass", "bass:1", "bass", "u/bass-take2.wav"),
            Proposed("s-kick", "kick:3", "kick", "u/kick.wav"),
        ]

        entries = classify(snapshot, proposed)

        assert [(e.stem_identity, e.kind) for e in entries] == [
            ("kick:3", DiffKind.NEW),
            ("bass:1", DiffKind.MODIFY),
            ("vocal:2", DiffKind.UNCHANGED),
        ]
        kick, bass, vocal = entries
        assert kick.version_stem_id is None and kick.previous_file_path is None
        assert bass.version_stem_id == "vs-bass"
        assert bass.previous_file_path == "v3/bass.wav"
        assert vocal.version_stem_id == "vs-vocal"

    def test_same_file_under_a_new_identity_is_new(self) -> None:
        """File paths never participate in identity."""
        snapshot = [Snap("vs-1", "drums:1", "shared/loop.wav")]
        proposed = [Proposed("s-2", "drums:2", "drums", "shared/loop.wav")]
        assert classify(snapshot, proposed)[0].kind == DiffKind.NEW

    def test_stable_order_within_a_kind(self) -> None:
        proposed = [
            Proposed("s1", "vocal:1", "vocal", "a.wav"),
            Proposed("s2", "bass:9", "bass", "b.wav"),
            Proposed("s3", "bass:1", "bass", "c.wav"),
        ]
        entries = classify([], proposed)
        assert [e.stem_identity for e in entries] == ["bass:1", "bass:9", "vocal:1"]

    def test_repeated_layer_is_rejected(self) -> None:
        proposed = [
            Proposed("s1", "bass:1", "bass", "a.wav"),
            Proposed("s2", "bass:1", "bass", "b.wav"),
        ]
        with pytest.raises(InvalidRequestError):
            classify([], proposed)

    @pytest.mark.parametrize("seed", range(30))
    def test_matches_definition_for_random_inputs(self, seed: int) -> None:
        rng = random.Random(seed)
        identities = [f"cat{i % 3}:{i}" for i in range(8)]
        files = [f"f{i}.wav" for i in range(4)]
        snapshot = [
            Snap(f"vs-{ident}", ident, rng.choice(files))
            for ident in rng.sample(identities, rng.randint(0, len(identities)))
        ]
        proposed = [
            Proposed(f"s-{ident}", ident, ident.split(":")[0], rng.choice(files))
            for ident in rng.sample(identities, rng.randint(1, len(identities)))
        ]
        by_identity = {s.stem_identity: s for s in snapshot}

        entries = classify(snapshot, proposed)

        assert len(entries) == len(proposed)
        for entry in entries:
            match = by_identity.get(entry.stem_identity)
            if match is None:
                assert entry.kind == DiffKind.NEW
            elif match.file_path == entry.file_path:
                assert entry.kind == DiffKind.UNCHANGED
            else:
                assert entry.kind == DiffKind.MODIFY
        ranks = [(list(DiffKind).index(e.kind), e.category, e.stem_identity) for e in entries]
        assert ranks == sorted(ranks)


# ---------------------------------------------------------------------------
# compute_diff against stored snapshots
# ---------------------------------------------------------------------------


class TestComputeDiff:
    async def test_kick_bass_vocal_scenario(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        """Upstream against v3: kick is new, bass differs, vocal is identical."""
        track, v1 = await workflow.track()
        bass = await workflow.stem(track.track_id, "bass", "takes/bass-1.wav")
        v2 = await workflow.merge(v1, [bass])
        vocal = await workflow.stem(track.track_id, "vocal", "takes/vocal-1.wav")
        v3 = await workflow.merge(v2, [vocal])
        assert v3.version == 3

        kick = await workflow.stem(track.track_id, "kick", "takes/kick-1.wav")
        bass_take2 = await workflow.stem(track.track_id, "bass", "takes/bass-2.wav", replaces=bass)

        entries = await compute_diff(
            db_session, v3.stage_id, [vocal.stem_id, bass_take2.stem_id, kick.stem_id]
        )

        assert [(e.category, e.kind) for e in entries] == [
            ("kick", DiffKind.NEW),
            ("bass", DiffKind.MODIFY),
            ("vocal", DiffKind.UNCHANGED),
        ]
        assert entries[1].previous_file_path == "takes/bass-1.wav"

    async def test_classification_is_relative_to_target_snapshot(
        self, db_session: AsyncSession, workflow: WorkflowBuilder
    ) -> None:
        """A layer merged into v2 is 'unchanged' against v2 but 'new' against v1."""
        track, v1 = await workflow.track()
        drums = await workflow.stem(track.track_id, "drums", "takes/drums.wav")
        v2 = await workflow.merge(v1, [drums])

        against_v2 = await compute_diff(db_session, v2.stage_id, [drums.stem_id])
        against_v1 = await compute_diff(db_session, v1.stage_id, [drums.stem_id])

        assert against_v2[0].kind == DiffKind.UNCHANGED
        assert against_v1[0].kind == DiffKind.NEW

    async def test_foreign_track_stem_is_rejected(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        track_a, stage_a = await workflow.track(title="A")
        track_b, _ = await workflow.track(title="B")
        foreign = await workflow.stem(track_b.track_id, "keys", "b/keys.wav")

        with pytest.raises(InvalidRequestError):
            await compute_diff(db_session, stage_a.stage_id, [foreign.stem_id])

    async def test_unknown_stage_or_stem(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        _, stage = await workflow.track()
        with pytest.raises(NotFoundError):
            await compute_diff(db_session, "no-such-stage", [])
        with pytest.raises(NotFoundError):
            await compute_diff(db_session, stage.stage_id, ["no-such-stem"])
