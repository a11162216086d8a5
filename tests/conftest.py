"""Pytest configuration and fixtures."""
from __future__ import annotations

import logging
import os

os.environ.setdefault("STEMHUB_ACCESS_TOKEN_SECRET", "test-secret-do-not-use-in-production")

from collections.abc import AsyncIterator, Callable, Iterable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stemhub.auth.tokens import create_access_token
from stemhub.db import database
from stemhub.db.database import Base, enable_sqlite_foreign_keys, get_db
from stemhub.db.models import Stage, Stem, Track, Upstream
from stemhub.main import app
from stemhub.services import reviews, stem_store, tracks, upstreams
from stemhub.services.mixing import PathMixingBackend, set_mixing_backend
from stemhub.services.track_lock import reset_locks

OWNER = "user-owner"
ALICE = "user-alice"
BOB = "user-bob"
OUTSIDER = "user-outsider"


def pytest_configure(config: pytest.Config) -> None:
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_workflow_singletons() -> Iterable[None]:
    """Fresh lock registry and a path-only mixer for every test."""
    reset_locks()
    set_mixing_backend(PathMixingBackend())
    yield
    reset_locks()
    set_mixing_backend(None)


@pytest_asyncio.fixture
async def db_session() -> AsyncIterator[AsyncSession]:
    """Create an in-memory test database session with SQLite FKs enforced."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    old_engine = database._engine
    old_factory = database._async_session_factory
    database._engine = engine
    database._async_session_factory = async_session_factory
    try:
        async with async_session_factory() as session:
            async def override_get_db() -> AsyncIterator[AsyncSession]:
                yield session
            app.dependency_overrides[get_db] = override_get_db
            yield session
            app.dependency_overrides.clear()
    finally:
        database._engine = old_engine
        database._async_session_factory = old_factory
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory over a file-backed SQLite database.

    Each session gets its own connection, so two sessions really are two
    concurrent clients of the store.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stemhub.db'}")
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncIterator[AsyncClient]:
    """Create an async test client bound to the in-memory test database."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# -----------------------------------------------------------------------------
# Auth fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def headers_for() -> Callable[[str], dict[str, str]]:
    """Build Bearer headers for any user id."""
    def _headers(user_id: str) -> dict[str, str]:
        token = create_access_token(user_id, expires_hours=1)
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
    return _headers


@pytest.fixture
def auth_headers(headers_for: Callable[[str], dict[str, str]]) -> dict[str, str]:
    """Headers for the track owner."""
    return headers_for(OWNER)


# -----------------------------------------------------------------------------
# Workflow builder
# -----------------------------------------------------------------------------


class WorkflowBuilder:
    """Drives the service layer to set up tracks, stems and merged stages."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def track(
        self,
        *,
        owner: str = OWNER,
        collaborators: Iterable[str] = (ALICE, BOB),
        title: str = "Night Drive",
    ) -> tuple[Track, Stage]:
        return await tracks.initialize_track(
            self.session,
            title=title,
            owner_user_id=owner,
            collaborator_ids=list(collaborators),
        )

    async def stem(
        self,
        track_id: str,
        category: str,
        file_path: str,
        *,
        replaces: Stem | None = None,
        uploader: str = ALICE,
    ) -> Stem:
        stem = await stem_store.upload_stem(
            self.session,
            track_id=track_id,
            category=category,
            file_path=file_path,
            uploader_user_id=uploader,
            replaces_stem_id=replaces.stem_id if replaces is not None else None,
        )
        await self.session.commit()
        return stem

    async def propose(
        self,
        stage: Stage,
        stems: Iterable[Stem],
        *,
        author: str = ALICE,
        reviewers: Iterable[str] = (),
        title: str = "",
    ) -> Upstream:
        return await upstreams.create_upstream(
            self.session,
            stage_id=stage.stage_id,
            author_user_id=author,
            proposed_stem_ids=[s.stem_id for s in stems],
            title=title,
            reviewer_ids=list(reviewers),
        )

    async def merge(self, stage: Stage, stems: Iterable[Stem], *, author: str = ALICE) -> Stage:
        """Propose *stems* and let the owner's approval merge them."""
        upstream = await self.propose(stage, stems, author=author)
        outcome = await reviews.record_decision(self.session, upstream.upstream_id, OWNER, "approved")
        assert outcome.merged_stage is not None
        return outcome.merged_stage


@pytest.fixture
def workflow(db_session: AsyncSession) -> WorkflowBuilder:
    return WorkflowBuilder(db_session)
