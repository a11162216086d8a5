"""Tests for the track registry: creation, collaborators, membership."""
from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import ALICE, BOB, OUTSIDER, OWNER, WorkflowBuilder
from stemhub.services import stages, tracks
from stemhub.services.errors import NotFoundError


class TestCreateTrack:
    async def test_owner_is_never_a_collaborator(self, db_session: AsyncSession) -> None:
        track = await tracks.create_track(
            db_session,
            title="Loop Study",
            owner_user_id=OWNER,
            collaborator_ids=[ALICE, OWNER, ALICE, BOB],
        )
        assert await tracks.list_collaborator_ids(db_session, track.track_id) == [ALICE, BOB]

    async def test_initialize_track_commits_track_and_first_stage(
        self, db_session: AsyncSession, workflow: WorkflowBuilder
    ) -> None:
        track, stage = await workflow.track(collaborators=())
        track_id, stage_id = track.track_id, stage.stage_id
        assert stage.track_id == track_id

        await db_session.rollback()

        assert (await tracks.get_track(db_session, track_id)).owner_user_id == OWNER
        active = await stages.get_active_stage(db_session, track_id)
        assert active is not None and active.stage_id == stage_id

    async def test_unknown_track(self, db_session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await tracks.get_track(db_session, "missing")


class TestMembership:
    async def test_owner_and_collaborators_are_members(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        track, _ = await workflow.track(collaborators=(ALICE,))

        assert await tracks.is_owner(db_session, track.track_id, OWNER)
        assert not await tracks.is_owner(db_session, track.track_id, ALICE)
        assert await tracks.is_member(db_session, track.track_id, OWNER)
        assert await tracks.is_member(db_session, track.track_id, ALICE)
        assert not await tracks.is_member(db_session, track.track_id, OUTSIDER)

    async def test_add_collaborator(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        track, _ = await workflow.track(collaborators=(ALICE,))

        added = await tracks.add_collaborator(db_session, track.track_id, BOB, role="mixer")
        assert added is not None and added.role == "mixer"
        assert await tracks.is_member(db_session, track.track_id, BOB)

    async def test_re_adding_updates_role(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        track, _ = await workflow.track(collaborators=(ALICE,))
        updated = await tracks.add_collaborator(db_session, track.track_id, ALICE, role="producer")
        assert updated is not None and updated.role == "producer"
        assert await tracks.list_collaborator_ids(db_session, track.track_id) == [ALICE]

    async def test_adding_the_owner_is_a_no_op(self, db_session: AsyncSession, workflow: WorkflowBuilder) -> None:
        track, _ = await workflow.track(collaborators=())
        assert await tracks.add_collaborator(db_session, track.track_id, OWNER) is None
        assert await tracks.list_collaborator_ids(db_session, track.track_id) == []
