"""
Pytest fixtures for TaskGate tests.
"""

import os
import tempfile
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure test config is set before importing taskgate modules.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="taskgate-test-")
os.environ.setdefault("TASKGATE_ALLOW_INSECURE_DEV", "true")
os.environ.setdefault("TASKGATE_ENV", "development")
os.environ.setdefault("TASKGATE_AUDIT_MODE", "inline")
os.environ.setdefault(
    "TASKGATE_DATABASE_URL",
    os.getenv(
        "TASKGATE_TEST_DATABASE_URL",
        f"sqlite+aiosqlite:///{_TEST_DB_DIR}/taskgate_test.db",
    ),
)

from taskgate.audit import AuditRecorder, InlineAuditSink
from taskgate.config import settings
from taskgate.db import base as db_base
from taskgate.db.base import Base, build_engine
import taskgate.db.tables  # noqa: F401
from taskgate.engine import TaskGateEngine
from taskgate.models import Actor, Role, Stage, Task, TaskDraft
from taskgate.observability.metrics import metrics

pytest_plugins = ("pytest_asyncio",)

TEAM_A = "team-a"
TEAM_B = "team-b"


def _ensure_test_database_url(database_url: str) -> None:
    if "test" not in database_url:
        raise RuntimeError(
            "Refusing to run TaskGate tests against a non-test database. "
            "Set TASKGATE_TEST_DATABASE_URL to a dedicated test database."
        )


@pytest.fixture
async def engine(monkeypatch):
    """Create a test engine with a fresh schema and wire it into taskgate.db.base."""
    _ensure_test_database_url(settings.database_url)
    engine = build_engine(settings.database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Override global engine/session factory for dependency injection.
    monkeypatch.setattr(db_base, "engine", engine)
    monkeypatch.setattr(
        db_base,
        "async_session_factory",
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
    )

    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine):
    """Provide a database session per test."""
    async with db_base.async_session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def audit_sink():
    """Inline sink so audit entries exist as soon as a call returns."""
    return InlineAuditSink(AuditRecorder(retry_delay_ms=0))


@pytest.fixture
def task_engine(session, audit_sink):
    return TaskGateEngine(session, audit_sink)


# ============================================================================
# Actors
# ============================================================================


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def director():
    return Actor(id="md-1", role=Role.MANAGING_DIRECTOR)


@pytest.fixture
def lead():
    return Actor(id="lead-a", role=Role.TEAM_LEAD, team_id=TEAM_A)


@pytest.fixture
def other_lead():
    return Actor(id="lead-b", role=Role.TEAM_LEAD, team_id=TEAM_B)


@pytest.fixture
def assignee():
    return Actor(id="emp-a1", role=Role.EMPLOYEE, team_id=TEAM_A)


@pytest.fixture
def teammate():
    return Actor(id="emp-a2", role=Role.EMPLOYEE, team_id=TEAM_A)


@pytest.fixture
def outsider():
    return Actor(id="emp-b1", role=Role.EMPLOYEE, team_id=TEAM_B)


@pytest.fixture
def make_task(task_engine, lead, assignee):
    """
    Create a team-a task by the lead, assigned to the employee, and walk it
    forward to ``stage`` through the engine.
    """

    async def _make(stage: Stage = Stage.BACKLOG, **overrides) -> Task:
        draft = TaskDraft(
            title=overrides.pop("title", "Write the quarterly report"),
            project_id=overrides.pop("project_id", "project-1"),
            team_id=overrides.pop("team_id", TEAM_A),
            assignee_id=overrides.pop("assignee_id", assignee.id),
            **overrides,
        )
        task = await task_engine.create_task(draft, actor=lead)

        path = [Stage.BACKLOG, Stage.TODO, Stage.IN_PROGRESS, Stage.REVIEW]
        if stage == Stage.DONE:
            target = path.index(Stage.REVIEW)
        else:
            target = path.index(stage)
        for next_stage in path[path.index(task.stage) + 1 : target + 1]:
            task = await task_engine.move_task(task.task_id, next_stage, actor=lead)
        if stage == Stage.DONE:
            task = await task_engine.approve_task(task.task_id, actor=lead)
        return task

    return _make


@pytest.fixture
def headers_for():
    """Gateway identity headers for an actor."""

    def _headers(actor: Actor) -> dict[str, str]:
        headers = {"X-Actor-ID": actor.id, "X-Actor-Role": actor.role.value}
        if actor.team_id:
            headers["X-Actor-Team-ID"] = actor.team_id
        return headers

    return _headers


@pytest.fixture
async def client(session, audit_sink):
    """Async test client with overridden dependencies."""
    from taskgate.api.deps import get_audit_sink, get_db_session
    from taskgate.main import app

    async def override_get_db_session():
        yield session

    async def override_get_audit_sink():
        return audit_sink

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_audit_sink] = override_get_audit_sink

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
