"""
Build Chain - Test Fixtures
===========================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from buildchain.core.config import Settings
from buildchain.core.database import create_session_factory, init_db
from buildchain.core.models import BuildSession, BuildStatus
from buildchain.core.pipeline.agent_client import AgentRequest, AgentResponse
from buildchain.core.pipeline.catalogs import StaticAgentDefinitions, YamlLocalizationCatalog
from buildchain.core.pipeline.factory import BuildPipeline, create_pipeline
from buildchain.core.pipeline.phases import all_agents


# ==========================================================================
# Canned Agent Output
# ==========================================================================

DISCOVERY_DONE = "DISCOVERY_COMPLETE\nA command line todo manager with SQLite storage."

ANALYST_BRIEF = """\
Here is the brief.

PROJECT_NAME: todo-cli
LANGUAGE: Rust
DATABASE: SQLite
FRONTEND: no
SCOPE: A command line todo manager.
COMPONENTS:
- storage
- cli
"""

QA_PASS = "Ran 12 tests, all green.\nVERIFICATION: PASS"
REVIEW_APPROVED = "Looks solid.\nREVIEW: APPROVED"

DELIVERY_DONE = """\
BUILD_COMPLETE
PROJECT: todo-cli
LOCATION: /builds/todo-cli
LANGUAGE: Rust
SUMMARY: Todo manager with add, list and done commands.
USAGE: todo-cli add "milk"
SKILL: todo-cli
"""

DEFAULT_OUTPUTS = {
    "build-discovery": DISCOVERY_DONE,
    "build-analyst": ANALYST_BRIEF,
    "build-qa": QA_PASS,
    "build-reviewer": REVIEW_APPROVED,
    "build-delivery": DELIVERY_DONE,
}


def qa_fail(reason: str) -> str:
    return f"3 tests failing.\nVERIFICATION: FAIL | {reason}"


def review_changes(feedback: str) -> str:
    return f"Some issues.\nREVIEW: CHANGES_REQUESTED | {feedback}"


# Files each agent leaves in the project directory on success
DEFAULT_FILES = {
    "build-architect": {"specs/architecture.md": "# Architecture\n\n- storage\n- cli\n"},
    "build-test-writer": {"tests/test_todo.py": "def test_add():\n    assert False\n"},
    "build-developer": {"src/main.rs": "fn main() {}\n"},
}


def scaffold_project(project_dir: Path, *agents: str) -> Path:
    """Write the files the given agents would have produced."""
    for agent in agents:
        for relative, content in DEFAULT_FILES.get(agent, {}).items():
            path = project_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
    return project_dir


# ==========================================================================
# Fakes
# ==========================================================================

class ScriptedAgentService:
    """
    Agent execution service that replays scripted replies per agent.

    A scripted item may be a string, an AgentResponse, an exception to raise
    or an async callable taking the request. Unscripted calls fall back to
    DEFAULT_OUTPUTS, then to "done".

    With a `project_dir`, every call that does not raise also writes that
    agent's files (DEFAULT_FILES unless overridden with `produces`).
    """

    def __init__(
        self,
        scripts: Optional[dict[str, list[Any]]] = None,
        project_dir: Optional[Path] = None,
    ):
        self.scripts = {agent: list(items) for agent, items in (scripts or {}).items()}
        self.calls: list[AgentRequest] = []
        self.project_dir = project_dir
        self.files = {agent: dict(files) for agent, files in DEFAULT_FILES.items()}

    def produces(self, agent: str, *paths: str) -> None:
        """Replace the files `agent` writes; no paths means it writes nothing."""
        self.files[agent] = {path: "generated\n" for path in paths}

    def script(self, agent: str, *items: Any) -> None:
        self.scripts.setdefault(agent, []).extend(items)

    def calls_for(self, agent: str) -> list[AgentRequest]:
        return [call for call in self.calls if call.agent_identity == agent]

    @property
    def agents_called(self) -> list[str]:
        return [call.agent_identity for call in self.calls]

    async def execute(self, request: AgentRequest) -> AgentResponse:
        self.calls.append(request)
        queue = self.scripts.get(request.agent_identity)
        item = queue.pop(0) if queue else DEFAULT_OUTPUTS.get(request.agent_identity, "done")

        if isinstance(item, BaseException):
            raise item
        if isinstance(item, AgentResponse):
            response = item
        elif callable(item):
            response = await item(request)
        else:
            response = AgentResponse(raw_text=item, turns_used=1)

        if self.project_dir is not None:
            for relative, content in self.files.get(request.agent_identity, {}).items():
                path = self.project_dir / relative
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)
        return response


class RecordingNotifier:
    """Collects outgoing channel messages."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, requester_id: str, channel: str, text: str) -> None:
        self.sent.append((requester_id, channel, text))

    @property
    def texts(self) -> list[str]:
        return [text for _, _, text in self.sent]


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh file-backed SQLite database per test.

    A file (not :memory:) so concurrent tasks get their own connections.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    await init_db(bind=engine)

    yield create_session_factory(engine)

    await engine.dispose()


async def create_build_session(
    session_factory: async_sessionmaker[AsyncSession],
    status: BuildStatus = BuildStatus.RUNNING,
    requester_id: str = "user-1",
    request_text: str = "build me a todo cli app",
    locale: str = "en",
) -> UUID:
    async with session_factory() as db:
        session = BuildSession(
            requester_id=requester_id,
            channel="telegram",
            locale=locale,
            request_text=request_text,
            status=status,
        )
        db.add(session)
        await db.commit()
        return session.id


# ==========================================================================
# Pipeline Fixtures
# ==========================================================================

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        WORKSPACE_DIR=tmp_path / "workspace",
        PHASE_RETRY_BACKOFF_SECONDS=0,
        CONFIRMATION_TTL_MINUTES=15,
    )


@pytest.fixture
def project_dir(test_settings: Settings) -> Path:
    """Where the pipeline puts the todo-cli build from ANALYST_BRIEF."""
    return test_settings.WORKSPACE_DIR / "builds" / "todo-cli"


@pytest.fixture
def agent_service(project_dir: Path) -> ScriptedAgentService:
    return ScriptedAgentService(project_dir=project_dir)


@pytest.fixture
def definitions() -> StaticAgentDefinitions:
    return StaticAgentDefinitions({name: f"# {name}\nYou are {name}.\n" for name in all_agents()})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def catalog() -> YamlLocalizationCatalog:
    return YamlLocalizationCatalog.bundled()


@pytest_asyncio.fixture
async def pipeline(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    agent_service: ScriptedAgentService,
    definitions: StaticAgentDefinitions,
    notifier: RecordingNotifier,
    catalog: YamlLocalizationCatalog,
    clock: FakeClock,
) -> AsyncGenerator[BuildPipeline, None]:
    pipeline = create_pipeline(
        test_settings,
        session_factory,
        service=agent_service,
        definitions=definitions,
        notifier=notifier,
        catalog=catalog,
        clock=clock,
    )
    yield pipeline
    await pipeline.aclose()
