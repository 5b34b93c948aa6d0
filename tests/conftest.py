"""Test fixtures: async in-memory SQLite store, manual clock, fake invoker, wired router."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from omni_controller.config import Settings
from omni_controller.controller import register
from omni_controller.core.eventbus import MemoryEventBus
from omni_controller.handlers import LocalWorkspaceProvider
from omni_controller.invoker import SystemTaskOptions, ToolDef
from omni_controller.resources import Agent, AgentSpec, Workspace, WorkspaceSpec
from omni_controller.router import Router
from omni_controller.store import Base, ResourceStore


class ManualClock:
    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeTaskHandle:
    def __init__(self, output: str):
        self.output = output
        self.closed = False

    async def result(self) -> str:
        return self.output

    async def close(self) -> None:
        self.closed = True


class FakeInvoker:
    """Records calls instead of running anything."""

    def __init__(self):
        self.resumed: list[str] = []
        self.system_tasks: list[tuple[str, ToolDef, str]] = []
        self.handles: list[FakeTaskHandle] = []
        self.title = "  Quarterly Budget Review\n"

    async def resume(self, store, thread, run) -> None:
        self.resumed.append(run.name)

    async def system_task(self, thread, tool: ToolDef, input: str, options: SystemTaskOptions | None = None):
        self.system_tasks.append((thread.name, tool, input))
        handle = FakeTaskHandle(self.title)
        self.handles.append(handle)
        return handle


@pytest_asyncio.fixture
async def engine():
    """Create an async in-memory SQLite engine for tests."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus():
    return MemoryEventBus()


@pytest_asyncio.fixture
async def store(session_factory, bus, clock):
    return ResourceStore(session_factory, bus=bus, clock=clock)


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        env="test",
        workspace_root=str(tmp_path / "workspaces"),
        retry_base_seconds=30,
        retry_max_seconds=300,
    )


@pytest_asyncio.fixture
async def router(store, bus, settings, invoker):
    r = Router(
        store,
        bus,
        workers=1,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )
    register(r, settings, invoker=invoker, workspace_provider=LocalWorkspaceProvider(settings.workspace_root))
    yield r
    await r.stop()


@pytest.fixture
def make_agent(store):
    """Create an agent whose own workspace is already recorded in status."""

    async def _make(name: str = "a1agenta", alias: str = "agentA") -> Agent:
        ws = await store.create(Workspace.new(name=f"wksp1-{name}", spec=WorkspaceSpec(agent_name=name)))
        agent = await store.create(Agent.new(name=name, spec=AgentSpec(name=alias, alias=alias)))
        agent.status.workspace_name = ws.name
        await store.update_status(agent)
        return agent

    return _make
