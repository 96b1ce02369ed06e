"""Shared test fixtures for backend tests."""

import asyncio
import os
from types import SimpleNamespace
from typing import AsyncGenerator

# Settings are read at import time; point the app at throwaway services first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PROCESSING_STAGE_DELAY_SECONDS", "0")
os.environ.setdefault("PROCESSING_START_DELAY_SECONDS", "0")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.database import Base  # noqa: E402
from app.main import app  # noqa: E402
from app.api.deps import get_db, get_run_supervisor  # noqa: E402
from app.auth.jwt import create_access_token  # noqa: E402
from app.models import Organisation, User, Project, Source, ProcessingRun, ProcessingStage  # noqa: E402
from app.pipeline.stages import StageHandler, StageResult  # noqa: E402
from app.pipeline.states import STAGE_ORDER, StageName  # noqa: E402
from app.services.run_supervisor import RunSupervisor  # noqa: E402
from app.services.stage_sequencer import StageSequencer  # noqa: E402


class GatedStage(StageHandler):
    """Passes records through once the shared gate is open."""

    def __init__(self, stage: StageName, gate: asyncio.Event):
        super().__init__()
        self.stage = stage
        self.gate = gate

    async def run(self, input_count, config_snapshot):
        await self.gate.wait()
        return StageResult(output_count=input_count)


class FailingStage(StageHandler):
    def __init__(self, stage: StageName, message: str):
        super().__init__()
        self.stage = stage
        self.message = message

    async def run(self, input_count, config_snapshot):
        raise RuntimeError(self.message)


def gated_handlers(gate: asyncio.Event) -> dict[StageName, StageHandler]:
    return {name: GatedStage(name, gate) for name in STAGE_ORDER}


# ── Database ──────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A fresh file-backed SQLite database per test.

    File-backed so the background sequencer gets its own connections.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(session_factory) -> SimpleNamespace:
    """Two organisations; org A owns a project with a ready 120-record source."""
    async with session_factory() as session:
        org = Organisation(name="Acme Data")
        other_org = Organisation(name="Globex")
        user = User(email="member@acme.test", name="Acme Member")
        outsider = User(email="someone@globex.test", name="Globex Member")
        session.add_all([org, other_org, user, outsider])
        await session.flush()

        project = Project(
            organisation_id=org.id,
            name="Support transcripts",
            target_schema="qa_pairs",
            created_by_id=user.id,
        )
        empty_project = Project(
            organisation_id=org.id,
            name="Not ingested yet",
            target_schema="chat",
            created_by_id=user.id,
        )
        session.add_all([project, empty_project])
        await session.flush()

        session.add_all([
            Source(project_id=project.id, name="tickets.csv", status="ready", record_count=120),
            Source(project_id=project.id, name="chat-export.json", status="pending", record_count=40),
            Source(project_id=empty_project.id, name="broken.xlsx", status="error"),
        ])
        await session.commit()

        return SimpleNamespace(
            org_id=org.id,
            other_org_id=other_org.id,
            user_id=user.id,
            user_email=user.email,
            outsider_id=outsider.id,
            project_id=project.id,
            empty_project_id=empty_project.id,
        )


# ── Background runs ───────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def stage_gate() -> asyncio.Event:
    """Open by default; clear it to hold runs inside their current stage."""
    gate = asyncio.Event()
    gate.set()
    return gate


@pytest_asyncio.fixture
async def supervisor(session_factory, stage_gate) -> AsyncGenerator[RunSupervisor, None]:
    sequencer = StageSequencer(session_factory, handlers=gated_handlers(stage_gate))
    sup = RunSupervisor(session_factory, sequencer=sequencer, start_delay=0)
    yield sup
    stage_gate.set()
    await sup.shutdown()


async def wait_for_stage(session_factory, run_id: int, stage: str, status: str, timeout: float = 5.0) -> None:
    """Poll until the named stage of a run reaches `status`."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        async with session_factory() as session:
            current = (await session.execute(
                select(ProcessingStage.status).where(
                    ProcessingStage.run_id == run_id, ProcessingStage.stage == stage,
                )
            )).scalar_one_or_none()
        if current == status:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"stage {stage} of run {run_id} stuck in {current!r}")
        await asyncio.sleep(0.01)


async def load_run(session_factory, run_id: int) -> ProcessingRun:
    async with session_factory() as session:
        return await session.get(ProcessingRun, run_id)


async def load_stages(session_factory, run_id: int) -> list[ProcessingStage]:
    async with session_factory() as session:
        result = await session.execute(
            select(ProcessingStage).where(ProcessingStage.run_id == run_id).order_by(ProcessingStage.id)
        )
        return list(result.scalars())


# ── HTTP clients ──────────────────────────────────────────────────────────────

def _make_auth_header(user_id: int, email: str, organisation_id: int, role: str) -> dict:
    """Create an Authorization header with a valid JWT."""
    token = create_access_token(user_id, email, organisation_id, role)
    return {"Authorization": f"Bearer {token}"}


def _override_db(factory: async_sessionmaker[AsyncSession]):
    """Create a dependency override for get_db backed by the test database."""
    async def _get_db():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    return _get_db


@pytest_asyncio.fixture
async def api(session_factory, supervisor) -> AsyncGenerator[None, None]:
    """Route the app's DB and supervisor dependencies to the test fixtures."""
    app.dependency_overrides[get_db] = _override_db(session_factory)
    app.dependency_overrides[get_run_supervisor] = lambda: supervisor
    yield
    app.dependency_overrides.clear()


def _client(headers: dict | None = None) -> AsyncClient:
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test", headers=headers or {})


@pytest_asyncio.fixture
async def member_client(api, seed) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client authenticated as an organisation member."""
    headers = _make_auth_header(seed.user_id, seed.user_email, seed.org_id, "member")
    async with _client(headers) as client:
        yield client


@pytest_asyncio.fixture
async def viewer_client(api, seed) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client authenticated as viewer (read-only)."""
    headers = _make_auth_header(seed.user_id, seed.user_email, seed.org_id, "viewer")
    async with _client(headers) as client:
        yield client


@pytest_asyncio.fixture
async def outsider_client(api, seed) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for an admin of a different organisation."""
    headers = _make_auth_header(seed.outsider_id, "someone@globex.test", seed.other_org_id, "admin")
    async with _client(headers) as client:
        yield client


@pytest_asyncio.fixture
async def anon_client(api) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with no authentication."""
    async with _client() as client:
        yield client
