"""Controller assembly: store, bus, router and the registered convergence steps."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings
from .convergence import DEFAULT_MAX_CHAIN_DEPTH
from .core.eventbus import MemoryEventBus
from .handlers import (
    LocalWorkspaceProvider,
    RunHandler,
    ThreadHandler,
    WorkspaceHandler,
    WorkspaceProvider,
    delete_run_state,
    ensure_shared,
    ensure_template_thread_share,
    snapshot_upgrade_status,
)
from .invoker import Invoker
from .logging_utils import get_logger
from .resources import (
    Agent,
    KnowledgeSet,
    Resource,
    Run,
    Thread,
    ThreadShare,
    Workflow,
    WorkflowExecution,
    Workspace,
)
from .router import Router
from .services.template_service import TemplateService
from .store import ObjectKey, ResourceStore, create_tables, key_of, make_engine, make_session_factory

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# watch mappers: changed object -> keys of objects that depend on it
# ---------------------------------------------------------------------------
def _keys(objs: list[Resource]) -> list[ObjectKey]:
    return [key_of(o) for o in objs]


async def thread_of(store: ResourceStore, obj: Resource) -> list[ObjectKey]:
    name = getattr(obj.spec, "thread_name", "")
    return [ObjectKey(Thread.kind, obj.namespace, name)] if name else []


async def dependent_threads(store: ResourceStore, thread: Thread) -> list[ObjectKey]:
    """Copies (by source) and all descendants (by parent) of a thread.

    Descendants wait on every ancestor, not only the nearest one, so the whole
    subtree is re-triggered.
    """
    ns = thread.namespace
    found = _keys(await store.list(Thread, namespace=ns, fields={"spec.source_thread_name": thread.name}))
    seen = {thread.name}
    frontier = [thread.name]
    for _ in range(DEFAULT_MAX_CHAIN_DEPTH):
        below: list[str] = []
        for name in frontier:
            for child in await store.list(Thread, namespace=ns, fields={"spec.parent_thread_name": name}):
                if child.name not in seen:
                    seen.add(child.name)
                    below.append(child.name)
                    found.append(key_of(child))
        if not below:
            break
        frontier = below
    return found


async def runs_of_thread(store: ResourceStore, thread: Thread) -> list[ObjectKey]:
    return _keys(await store.list(Run, namespace=thread.namespace, fields={"spec.thread_name": thread.name}))


async def workflows_shared_by(store: ResourceStore, thread: Thread) -> list[ObjectKey]:
    return _keys(
        await store.list(Workflow, namespace=thread.namespace, fields={"spec.source_thread_name": thread.name})
    )


async def threads_of_agent(store: ResourceStore, agent: Agent) -> list[ObjectKey]:
    refs = [agent.name] + ([agent.spec.alias] if agent.spec.alias else [])
    keys: list[ObjectKey] = []
    for ref in refs:
        keys.extend(_keys(await store.list(Thread, namespace=agent.namespace, fields={"spec.agent_name": ref})))
    return keys


async def threads_of_execution(store: ResourceStore, wfe: WorkflowExecution) -> list[ObjectKey]:
    return _keys(
        await store.list(Thread, namespace=wfe.namespace, fields={"spec.workflow_execution_name": wfe.name})
    )


async def seeded_workspaces(store: ResourceStore, ws: Workspace) -> list[ObjectKey]:
    """Workspaces waiting on ``ws`` as one of their seeds."""
    return [
        key_of(other)
        for other in await store.list(Workspace, namespace=ws.namespace)
        if ws.name in other.spec.from_workspace_names and not other.status.workspace_id
    ]


async def next_runs(store: ResourceStore, run: Run) -> list[ObjectKey]:
    return _keys(await store.list(Run, namespace=run.namespace, fields={"spec.previous_run_name": run.name}))


async def shared_project(store: ResourceStore, share: ThreadShare) -> list[ObjectKey]:
    name = share.spec.project_thread_name
    return [ObjectKey(Thread.kind, share.namespace, name)] if name else []


# ---------------------------------------------------------------------------
# registration
# ---------------------------------------------------------------------------
def register(
    router: Router,
    settings: Settings,
    invoker: Invoker | None = None,
    workspace_provider: WorkspaceProvider | None = None,
) -> None:
    """Register every convergence step and dependency watch on ``router``."""
    threads = ThreadHandler(
        invoker=invoker,
        max_chain_depth=settings.max_chain_depth,
        ephemeral_ttl=timedelta(hours=settings.ephemeral_thread_ttl_hours),
    )
    runs = RunHandler(invoker=invoker, finished_ttl=timedelta(hours=settings.finished_run_ttl_hours))
    workspaces = WorkspaceHandler(workspace_provider or LocalWorkspaceProvider(settings.workspace_root))

    router.handle(Thread, threads.remove_old_finalizers)
    router.handle(Thread, threads.cleanup_ephemeral_threads)
    router.handle(Thread, threads.workflow_state)
    router.handle(Thread, threads.create_workspaces)
    router.handle(Thread, threads.create_shared_workspace)
    router.handle(Thread, threads.create_knowledge_set)
    router.handle(Thread, threads.copy_tools_from_source)
    router.handle(Thread, threads.copy_tasks_from_source)
    router.handle(Thread, threads.set_created)
    router.handle(Thread, ensure_template_thread_share)
    router.handle(Thread, snapshot_upgrade_status)
    if invoker is not None:
        router.handle(Thread, threads.generate_name)

    router.handle(Run, runs.delete_finished)
    # guards still record failed runs without an invoker
    router.handle(Run, runs.resume)
    if invoker is None:
        logger.warning("no invoker configured; runs will not be resumed and threads not titled")
    router.on_remove(Run, delete_run_state)

    router.handle(Workflow, ensure_shared)
    router.handle(Workspace, workspaces.provision)

    router.watch(Thread, Thread, dependent_threads)
    router.watch(Thread, Run, runs_of_thread)
    router.watch(Thread, Workflow, workflows_shared_by)
    router.watch(Workspace, Thread, thread_of)
    router.watch(Workspace, Workspace, seeded_workspaces)
    router.watch(KnowledgeSet, Thread, thread_of)
    router.watch(Agent, Thread, threads_of_agent)
    router.watch(WorkflowExecution, Thread, threads_of_execution)
    router.watch(Run, Thread, thread_of)
    router.watch(Run, Run, next_runs)
    router.watch(ThreadShare, Thread, shared_project)


@dataclass
class Controller:
    settings: Settings
    engine: AsyncEngine
    store: ResourceStore
    router: Router
    templates: TemplateService

    async def start(self) -> None:
        await self.router.start()

    async def stop(self) -> None:
        await self.router.stop()
        await self.engine.dispose()


async def build_controller(
    settings: Settings,
    invoker: Invoker | None = None,
    workspace_provider: WorkspaceProvider | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Controller:
    engine = make_engine(settings.database_url)
    if settings.is_dev:
        await create_tables(engine)

    bus = MemoryEventBus()
    store = ResourceStore(
        make_session_factory(engine),
        bus=bus,
        clock=clock,
        serialize=settings.database_url.startswith("sqlite"),
    )
    router = Router(
        store,
        bus,
        workers=settings.workers,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )
    register(router, settings, invoker=invoker, workspace_provider=workspace_provider)
    return Controller(settings=settings, engine=engine, store=store, router=router, templates=TemplateService(store))
