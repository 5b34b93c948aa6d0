"""Thread lifecycle steps.

Each step is re-entrant and a no-op once its postcondition holds. A step
that finds a dependency not yet visible returns without error; the
dependency's own write re-triggers it through the router's watches.
"""

from __future__ import annotations

from datetime import timedelta

from ..convergence import (
    DEFAULT_MAX_CHAIN_DEPTH,
    create_if_not_exists,
    create_or_update_spec,
    get_or_none,
    ignore_not_found,
    lookup,
    walk_parents,
)
from ..errors import InvalidReferenceError, NotFoundError
from ..invoker import Invoker, ToolDef, ephemeral_thread_task
from ..logging_utils import get_logger
from ..naming import (
    KNOWLEDGE_SET_PREFIX,
    MCP_SERVER_INSTANCE_PREFIX,
    MCP_SERVER_PREFIX,
    PROJECT_MCP_SERVER_PREFIX,
    WORKFLOW_PREFIX,
    WORKSPACE_PREFIX,
    is_mcp_server_id,
    is_mcp_server_instance_id,
    random_token,
    safe_hash_concat_name,
)
from ..resources import (
    DEPRECATED_THREAD_FINALIZERS,
    KNOWLEDGE_SET_FINALIZER,
    MCP_SERVER_FINALIZER,
    MCP_SERVER_INSTANCE_FINALIZER,
    PROJECT_MCP_SERVER_FINALIZER,
    WORKSPACE_FINALIZER,
    Agent,
    KnowledgeSet,
    KnowledgeSetSpec,
    MCPServer,
    MCPServerInstance,
    MCPServerInstanceSpec,
    MCPServerSpec,
    ProjectMCPServer,
    ProjectMCPServerSpec,
    Run,
    RunStateType,
    Thread,
    Tool,
    ToolSpec,
    Workflow,
    WorkflowExecution,
    WorkflowSpec,
    Workspace,
    WorkspaceSpec,
)
from ..router import Request, Response
from ..store import ResourceStore

logger = get_logger(__name__)

TITLE_INSTRUCTIONS = (
    "Generate a concise (3 to 4 words) and descriptive thread name that encapsulates "
    "the main topic or theme of the following conversation starter. "
    "Do not enclose the title in quotes."
)


def copies_from_source(thread: Thread) -> bool:
    """Top-level projects created from another thread copy its tools and tasks."""
    return thread.spec.project and thread.spec.source_thread_name != "" and thread.spec.parent_thread_name == ""


class ThreadHandler:
    def __init__(
        self,
        invoker: Invoker | None = None,
        max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
        ephemeral_ttl: timedelta = timedelta(hours=12),
    ):
        self._invoker = invoker
        self._max_depth = max_chain_depth
        self._ephemeral_ttl = ephemeral_ttl

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------
    async def remove_old_finalizers(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        kept = [f for f in thread.finalizers if f not in DEPRECATED_THREAD_FINALIZERS]
        if len(kept) == len(thread.finalizers):
            return
        thread.metadata.finalizers = kept
        await req.store.update(thread)
        if thread.deleting and not kept:
            req.deleted = True

    async def cleanup_ephemeral_threads(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if not thread.spec.ephemeral or thread.metadata.creation_timestamp is None:
            return
        age = req.now() - thread.metadata.creation_timestamp
        if age < self._ephemeral_ttl:
            resp.retry_after((self._ephemeral_ttl - age).total_seconds())
            return
        logger.info("deleting expired ephemeral thread", data={"thread": thread.name})
        await req.delete_object()

    async def workflow_state(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if not thread.spec.workflow_execution_name:
            return
        wfe = await req.store.get(WorkflowExecution, thread.namespace, thread.spec.workflow_execution_name)
        thread.status.workflow_state = wfe.status.state

    # ------------------------------------------------------------------
    # workspaces
    # ------------------------------------------------------------------
    async def _parent_workspace_names(self, store: ResourceStore, thread: Thread) -> list[str] | None:
        """Ordered ancestor workspaces (farthest first), or None while an ancestor is not ready."""
        if thread.spec.project:
            # projects only start from another workspace when copied
            if not thread.spec.source_thread_name:
                return []
            source = await store.get(Thread, thread.namespace, thread.spec.source_thread_name)
            if not source.status.workspace_name:
                return None
            return [source.status.workspace_name]

        result: list[str] = []

        def visit(parent: Thread) -> bool:
            if not parent.status.created or not parent.status.workspace_name:
                return False
            result.append(parent.status.workspace_name)
            return True

        if not await walk_parents(store, thread, visit, self._max_depth):
            return None

        if thread.spec.agent_name:
            agent = await lookup(store, Agent, thread.namespace, thread.spec.agent_name)
            if not agent.status.workspace_name:
                return None
            result.append(agent.status.workspace_name)

        result.reverse()
        return result

    async def _workspace(self, store: ResourceStore, thread: Thread) -> Workspace | None:
        if thread.spec.workspace_name:
            return await store.get(Workspace, thread.namespace, thread.spec.workspace_name)
        if thread.status.workspace_name:
            return await store.get(Workspace, thread.namespace, thread.status.workspace_name)

        parents = await self._parent_workspace_names(store, thread)
        if parents is None:
            return None

        ws = Workspace.new(
            name=safe_hash_concat_name(WORKSPACE_PREFIX, thread.name),
            namespace=thread.namespace,
            finalizers=[WORKSPACE_FINALIZER],
            spec=WorkspaceSpec(thread_name=thread.name, from_workspace_names=parents),
        )
        return await create_if_not_exists(store, ws)

    async def create_workspaces(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        try:
            ws = await self._workspace(req.store, thread)
        except InvalidReferenceError as exc:
            thread.status.error = exc.message
            return
        if ws is None:
            return
        thread.status.workspace_name = ws.name
        thread.status.workspace_id = ws.status.workspace_id

    async def create_shared_workspace(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if thread.status.shared_workspace_name or not thread.is_project_based():
            return

        if thread.is_user_thread():
            parent = await req.store.get(Thread, thread.namespace, thread.spec.parent_thread_name)
            if parent.status.shared_workspace_name:
                thread.status.shared_workspace_name = parent.status.shared_workspace_name
            return

        if not thread.is_project_thread():
            raise AssertionError(f"thread {thread.name}: only project threads own a shared workspace")

        if thread.spec.source_thread_name:
            source = await req.store.get(Thread, thread.namespace, thread.spec.source_thread_name)
            if source.status.shared_workspace_name:
                thread.status.shared_workspace_name = source.status.shared_workspace_name
            return

        ws = Workspace.new(
            name=safe_hash_concat_name(WORKSPACE_PREFIX, "shared", thread.name),
            namespace=thread.namespace,
            finalizers=[WORKSPACE_FINALIZER],
            spec=WorkspaceSpec(thread_name=thread.name),
        )
        ws = await create_if_not_exists(req.store, ws)
        thread.status.shared_workspace_name = ws.name

    # ------------------------------------------------------------------
    # knowledge
    # ------------------------------------------------------------------
    async def create_knowledge_set(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if thread.status.knowledge_set_names or not thread.spec.agent_name:
            return

        store = req.store
        related: list[str] = []

        if thread.spec.source_thread_name:
            source = await store.get(Thread, thread.namespace, thread.spec.source_thread_name)
            if not source.status.shared_knowledge_set_name:
                return
            from_name = source.status.shared_knowledge_set_name
        else:
            from_name = ""

            def visit(parent: Thread) -> bool:
                if not parent.status.shared_knowledge_set_name:
                    return False
                related.append(parent.status.shared_knowledge_set_name)
                return True

            try:
                if not await walk_parents(store, thread, visit, self._max_depth):
                    return
            except InvalidReferenceError as exc:
                thread.status.error = exc.message
                return

        if not thread.status.shared_knowledge_set_name:
            ks = KnowledgeSet.new(
                name=safe_hash_concat_name(KNOWLEDGE_SET_PREFIX, thread.name),
                namespace=thread.namespace,
                finalizers=[KNOWLEDGE_SET_FINALIZER],
                spec=KnowledgeSetSpec(
                    thread_name=thread.name,
                    related_knowledge_set_names=related,
                    from_knowledge_set_name=from_name,
                ),
            )
            ks = await create_if_not_exists(store, ks)
            thread.status.shared_knowledge_set_name = ks.name

        thread.status.knowledge_set_names = [thread.status.shared_knowledge_set_name, *related]

    # ------------------------------------------------------------------
    # copy from source
    # ------------------------------------------------------------------
    async def copy_tools_from_source(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if not copies_from_source(thread) or thread.status.copied_tools:
            return

        store = req.store
        ns = thread.namespace
        source_name = thread.spec.source_thread_name

        for tool in await store.list(Tool, namespace=ns, fields={"spec.thread_name": source_name}):
            await create_if_not_exists(
                store,
                Tool.new(
                    name=safe_hash_concat_name(tool.name, thread.name),
                    namespace=ns,
                    spec=ToolSpec(thread_name=thread.name, manifest=dict(tool.spec.manifest)),
                ),
            )

        desired: set[str] = set()
        for binding in await store.list(ProjectMCPServer, namespace=ns, fields={"spec.thread_name": source_name}):
            target = await self._copy_mcp_backend(store, thread, binding.spec.manifest.mcp_id)
            name = safe_hash_concat_name(PROJECT_MCP_SERVER_PREFIX, thread.name, binding.name)
            await create_or_update_spec(
                store,
                ProjectMCPServer.new(
                    name=name,
                    namespace=ns,
                    finalizers=[PROJECT_MCP_SERVER_FINALIZER],
                    spec=ProjectMCPServerSpec(
                        manifest=binding.spec.manifest.model_copy(update={"mcp_id": target}),
                        thread_name=thread.name,
                        user_id=thread.spec.user_id,
                    ),
                ),
            )
            desired.add(name)

        # prune bindings copied earlier that the source no longer has
        for binding in await store.list(ProjectMCPServer, namespace=ns, fields={"spec.thread_name": thread.name}):
            if binding.name not in desired:
                await ignore_not_found(store.delete(binding))

        thread.status.copied_tools = True

    async def _copy_mcp_backend(self, store: ResourceStore, thread: Thread, mcp_id: str) -> str:
        """Point the copied binding at a backend usable by the new thread's user."""
        ns = thread.namespace
        user_id = thread.spec.user_id

        if is_mcp_server_instance_id(mcp_id):
            src = await store.get(MCPServerInstance, ns, mcp_id)
            name = safe_hash_concat_name(MCP_SERVER_INSTANCE_PREFIX, thread.name, src.spec.mcp_server_name)
            await create_or_update_spec(
                store,
                MCPServerInstance.new(
                    name=name,
                    namespace=ns,
                    finalizers=[MCP_SERVER_INSTANCE_FINALIZER],
                    spec=MCPServerInstanceSpec(
                        user_id=user_id,
                        mcp_server_name=src.spec.mcp_server_name,
                        mcp_catalog_name=src.spec.mcp_catalog_name,
                        mcp_server_catalog_entry_name=src.spec.mcp_server_catalog_entry_name,
                    ),
                ),
            )
            return name

        if not is_mcp_server_id(mcp_id):
            return mcp_id

        server = await store.get(MCPServer, ns, mcp_id)

        if server.spec.shared_within_mcp_catalog_name:
            # multi-user server: every user gets an instance pointing at it
            name = safe_hash_concat_name(MCP_SERVER_INSTANCE_PREFIX, thread.name, server.name)
            await create_or_update_spec(
                store,
                MCPServerInstance.new(
                    name=name,
                    namespace=ns,
                    finalizers=[MCP_SERVER_INSTANCE_FINALIZER],
                    spec=MCPServerInstanceSpec(
                        user_id=user_id,
                        mcp_server_name=server.name,
                        mcp_catalog_name=server.spec.shared_within_mcp_catalog_name,
                        mcp_server_catalog_entry_name=server.spec.mcp_server_catalog_entry_name,
                    ),
                ),
            )
            return name

        # single-user server
        if server.spec.user_id == user_id:
            return server.name

        name = safe_hash_concat_name(MCP_SERVER_PREFIX, thread.name, server.name)
        await create_or_update_spec(
            store,
            MCPServer.new(
                name=name,
                namespace=ns,
                finalizers=[MCP_SERVER_FINALIZER],
                spec=MCPServerSpec(
                    manifest=dict(server.spec.manifest),
                    unsupported_tools=list(server.spec.unsupported_tools),
                    thread_name="",
                    alias=server.spec.alias,
                    user_id=user_id,
                    shared_within_mcp_catalog_name="",
                    mcp_server_catalog_entry_name=server.spec.mcp_server_catalog_entry_name,
                ),
            ),
        )
        return name

    async def copy_tasks_from_source(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if not copies_from_source(thread) or thread.status.copied_tasks:
            return

        store = req.store
        ns = thread.namespace
        modified = False
        task_names: list[str] = []

        for ref in thread.spec.manifest.shared_tasks:
            try:
                task = await lookup(store, Workflow, ns, ref)
            except NotFoundError:
                modified = True
                continue

            if task.spec.thread_name != thread.spec.source_thread_name:
                task_names.append(ref)
                continue

            modified = True
            clone_name = safe_hash_concat_name(WORKFLOW_PREFIX, thread.name, task.name)
            existing = await get_or_none(store, Workflow, ns, clone_name)
            alias = existing.spec.manifest.alias if existing is not None else random_token()
            clone = await create_or_update_spec(
                store,
                Workflow.new(
                    name=clone_name,
                    namespace=ns,
                    spec=WorkflowSpec(
                        thread_name=thread.name,
                        manifest=task.spec.manifest.model_copy(update={"alias": alias}),
                    ),
                ),
            )
            task_names.append(clone.name)

        if modified:
            thread.spec.manifest.shared_tasks = task_names
            await store.update(thread)

        thread.status.copied_tasks = True

    # ------------------------------------------------------------------
    # readiness
    # ------------------------------------------------------------------
    async def set_created(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        status = thread.status
        if status.created:
            return
        if not status.workspace_id:
            return
        if thread.is_project_based() and not status.shared_workspace_name:
            return
        if copies_from_source(thread):
            if thread.spec.manifest.shared_tasks and not status.copied_tasks:
                return
            if not status.copied_tools:
                return
        if thread.spec.agent_name:
            if not status.shared_knowledge_set_name or not status.knowledge_set_names:
                return
        status.created = True
        logger.info("thread ready", data={"thread": thread.name})

    # ------------------------------------------------------------------
    # titles
    # ------------------------------------------------------------------
    async def generate_name(self, req: Request, resp: Response) -> None:
        thread: Thread = req.obj
        if (
            self._invoker is None
            or not thread.is_user_thread()
            or thread.spec.manifest.name
            or not thread.status.last_run_name
            or thread.spec.ephemeral
            or thread.status.last_run_state not in (RunStateType.CONTINUE.value, RunStateType.WAITING.value)
        ):
            return

        run = await req.store.get(Run, thread.namespace, thread.status.last_run_name)
        title = await ephemeral_thread_task(
            req.store,
            self._invoker,
            thread,
            ToolDef(instructions=TITLE_INSTRUCTIONS),
            f"User Input: {run.spec.input}\n\nLLM Response: {run.status.output}",
        )
        thread.spec.manifest.name = title.strip()
        await req.store.update(thread)


async def ensure_shared(req: Request, resp: Response) -> None:
    """Delete managed workflows whose source thread no longer shares them."""
    wf: Workflow = req.obj
    if not wf.spec.managed:
        return
    source = await get_or_none(req.store, Thread, wf.namespace, wf.spec.source_thread_name)
    if source is None or wf.spec.source_workflow_name not in source.spec.manifest.shared_tasks:
        logger.info("deleting unshared workflow", data={"workflow": wf.name, "source": wf.spec.source_thread_name})
        await req.delete_object()
