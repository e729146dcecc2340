from __future__ import annotations

from pathlib import Path
import pytest

from agentrelay.db.database import Database
from agentrelay.models.agent import Agent
from agentrelay.models.project import Project
from agentrelay.services.agent_cache import AgentRegistry
from agentrelay.services.audit import AuditLog
from agentrelay.services.event_bus import EventBus
from agentrelay.services.idempotency import IdempotencyGuard
from agentrelay.services.run_tracker import RunTracker
from agentrelay.services.work_queue import WorkQueue
from agentrelay.utils.config import Config
from helpers import FakeReviewHost, git

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    await database.initialize()
    yield database  # type: ignore[misc]
    await database.close()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def audit(db: Database) -> AuditLog:
    return AuditLog(db)


@pytest.fixture
def agents(db: Database) -> AgentRegistry:
    return AgentRegistry(db, ttl_seconds=60)


@pytest.fixture
def work_queue(db: Database, event_bus: EventBus, audit: AuditLog) -> WorkQueue:
    return WorkQueue(db, event_bus, audit)


@pytest.fixture
def tracker(db: Database, event_bus: EventBus, audit: AuditLog) -> RunTracker:
    return RunTracker(db, event_bus, audit)


@pytest.fixture
def guard(db: Database) -> IdempotencyGuard:
    return IdempotencyGuard(db)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(db_path=tmp_path / "test.db", anthropic_api_key=None)


@pytest.fixture
async def project(db: Database) -> Project:
    row = await db.create_project(
        "widgets",
        name="Widgets",
        repo_full_name="acme/widgets",
        repo_default_branch="main",
        token_secret_name="WIDGETS_TOKEN",
        webhook_secret=WEBHOOK_SECRET,
    )
    return Project.from_row(row)


@pytest.fixture
async def agent(agents: AgentRegistry) -> Agent:
    return await agents.register("executor-x", "Executor X", max_concurrency=1)


@pytest.fixture
def review_host() -> FakeReviewHost:
    return FakeReviewHost()


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Bare repository at ``<tmp>/remotes/acme/widgets.git`` with one commit on main."""
    bare = tmp_path / "remotes" / "acme" / "widgets.git"
    bare.parent.mkdir(parents=True)
    git(tmp_path, "init", "--bare", "--initial-branch=main", str(bare))

    seed = tmp_path / "seed"
    git(tmp_path, "clone", str(bare), str(seed))
    git(seed, "checkout", "-B", "main")
    (seed / "README.md").write_text("# widgets\n")
    git(seed, "add", "README.md")
    git(seed, "commit", "-m", "initial commit")
    git(seed, "push", "origin", "main")
    return bare
