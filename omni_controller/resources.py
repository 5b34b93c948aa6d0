"""Resource kinds managed by the controller.

Every kind is a pydantic model with ``metadata``, ``spec`` and ``status``.
``spec`` is written by the API layer (and by controllers through explicit
updates); ``status`` is owned by the reconcilers.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_NAMESPACE = "default"

# Annotation carrying the template snapshot revision (RFC 3339, UTC)
TEMPLATE_SNAPSHOT_ANNOTATION = "omni.ai/project-snapshot-revision"

THREAD_FINALIZER = "omni.ai/thread"
WORKSPACE_FINALIZER = "omni.ai/workspace"
KNOWLEDGE_SET_FINALIZER = "omni.ai/knowledge-set"
MCP_SERVER_FINALIZER = "omni.ai/mcp-server"
MCP_SERVER_INSTANCE_FINALIZER = "omni.ai/mcp-server-instance"
PROJECT_MCP_SERVER_FINALIZER = "omni.ai/project-mcp-server"

# Finalizers no longer used; stripped from threads that still carry them
DEPRECATED_THREAD_FINALIZERS = (THREAD_FINALIZER + "-child-cleanup", MCP_SERVER_FINALIZER)


class ObjectMeta(BaseModel):
    name: str = ""
    namespace: str = DEFAULT_NAMESPACE
    generate_name: str = ""
    uid: str = ""
    resource_version: int = 0
    generation: int = 0
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)


class Resource(BaseModel):
    """Base for all stored kinds."""

    kind: ClassVar[str] = ""
    # field selector -> value extractor, maintained by the store on every write
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {}

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations

    @property
    def finalizers(self) -> list[str]:
        return self.metadata.finalizers

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @classmethod
    def new(cls, name: str = "", namespace: str = DEFAULT_NAMESPACE, **kwargs: Any):
        """Build an object from metadata shortcuts plus ``spec``/``status``."""
        meta = {
            "name": name,
            "namespace": namespace,
            "generate_name": kwargs.pop("generate_name", ""),
            "annotations": kwargs.pop("annotations", {}) or {},
            "finalizers": kwargs.pop("finalizers", []) or [],
        }
        return cls(metadata=ObjectMeta(**meta), **kwargs)


class _Status(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------
class AgentSpec(BaseModel):
    name: str = ""
    alias: str = ""
    prompt: str = ""


class AgentStatus(_Status):
    workspace_name: str = ""
    knowledge_set_names: list[str] = Field(default_factory=list)


class Agent(Resource):
    kind: ClassVar[str] = "Agent"

    spec: AgentSpec = Field(default_factory=AgentSpec)
    status: AgentStatus = Field(default_factory=AgentStatus)


# ---------------------------------------------------------------------------
# Thread
# ---------------------------------------------------------------------------
class ThreadManifest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    name: str = ""
    description: str = ""
    prompt: str = ""
    model_provider: str = ""
    model: str = ""
    tools: list[str] = Field(default_factory=list)
    shared_tasks: list[str] = Field(default_factory=list)
    allowed_mcp_tools: dict[str, list[str]] = Field(default_factory=dict)


class ThreadSpec(BaseModel):
    manifest: ThreadManifest = Field(default_factory=ThreadManifest)
    parent_thread_name: str = ""
    source_thread_name: str = ""
    agent_name: str = ""
    workflow_name: str = ""
    workflow_execution_name: str = ""
    workspace_name: str = ""
    user_id: str = ""
    project: bool = False
    template: bool = False
    ephemeral: bool = False
    system_task: bool = False
    abort: bool = False


class ThreadStatus(_Status):
    workspace_name: str = ""
    workspace_id: str = ""
    shared_workspace_name: str = ""
    shared_knowledge_set_name: str = ""
    knowledge_set_names: list[str] = Field(default_factory=list)
    copied_tools: bool = False
    copied_tasks: bool = False
    created: bool = False
    snapshot_upgrade_available: bool = False
    workflow_state: str = ""
    last_run_name: str = ""
    last_run_state: str = ""
    error: str = ""


class Thread(Resource):
    kind: ClassVar[str] = "Thread"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.source_thread_name": lambda t: t.spec.source_thread_name,
        "spec.parent_thread_name": lambda t: t.spec.parent_thread_name,
        "spec.template": lambda t: t.spec.template,
        "spec.agent_name": lambda t: t.spec.agent_name,
        "spec.workflow_execution_name": lambda t: t.spec.workflow_execution_name,
    }

    spec: ThreadSpec = Field(default_factory=ThreadSpec)
    status: ThreadStatus = Field(default_factory=ThreadStatus)

    def is_project_thread(self) -> bool:
        return self.spec.project

    def is_user_thread(self) -> bool:
        """A chat thread living inside a project."""
        return (
            self.spec.parent_thread_name != ""
            and not self.spec.project
            and not self.spec.system_task
            and self.spec.workflow_name == ""
        )

    def is_project_based(self) -> bool:
        return self.is_project_thread() or self.is_user_thread()


# ---------------------------------------------------------------------------
# Run / RunState
# ---------------------------------------------------------------------------
class RunStateType(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    CONTINUE = "Continue"
    WAITING = "Waiting"
    ERROR = "Error"
    FINISHED = "Finished"

    def is_terminal(self) -> bool:
        return self in (RunStateType.ERROR, RunStateType.FINISHED)


class ExternalCall(BaseModel):
    id: str
    name: str = ""
    input: str = ""


class ExternalCallResult(BaseModel):
    id: str
    output: str = ""


class RunSpec(BaseModel):
    thread_name: str = ""
    agent_name: str = ""
    workflow_name: str = ""
    workflow_step_id: str = ""
    previous_run_name: str = ""
    input: str = ""
    synchronous: bool = False
    external_call_results: list[ExternalCallResult] = Field(default_factory=list)


class RunStatus(_Status):
    # empty until the invoker has recorded a state
    state: RunStateType | None = None
    output: str = ""
    error: str = ""
    external_call: ExternalCall | None = None
    end_time: datetime | None = None


class Run(Resource):
    kind: ClassVar[str] = "Run"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda r: r.spec.thread_name,
        "spec.previous_run_name": lambda r: r.spec.previous_run_name,
    }

    spec: RunSpec = Field(default_factory=RunSpec)
    status: RunStatus = Field(default_factory=RunStatus)


class RunStateSpec(BaseModel):
    thread_name: str = ""
    program: dict[str, Any] = Field(default_factory=dict)
    call_frame: dict[str, Any] = Field(default_factory=dict)
    output: str = ""
    error: str = ""
    done: bool = False


class RunState(Resource):
    """Externally tracked execution state, named after its run or external call."""

    kind: ClassVar[str] = "RunState"

    spec: RunStateSpec = Field(default_factory=RunStateSpec)
    status: _Status = Field(default_factory=_Status)


# ---------------------------------------------------------------------------
# Workspace / KnowledgeSet
# ---------------------------------------------------------------------------
class WorkspaceSpec(BaseModel):
    thread_name: str = ""
    agent_name: str = ""
    # snapshot of the ancestor chain at creation time
    from_workspace_names: list[str] = Field(default_factory=list)


class WorkspaceStatus(_Status):
    workspace_id: str = ""


class Workspace(Resource):
    kind: ClassVar[str] = "Workspace"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda w: w.spec.thread_name,
    }

    spec: WorkspaceSpec = Field(default_factory=WorkspaceSpec)
    status: WorkspaceStatus = Field(default_factory=WorkspaceStatus)


class KnowledgeSetSpec(BaseModel):
    thread_name: str = ""
    agent_name: str = ""
    related_knowledge_set_names: list[str] = Field(default_factory=list)
    from_knowledge_set_name: str = ""


class KnowledgeSetStatus(_Status):
    has_content: bool = False


class KnowledgeSet(Resource):
    kind: ClassVar[str] = "KnowledgeSet"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda k: k.spec.thread_name,
    }

    spec: KnowledgeSetSpec = Field(default_factory=KnowledgeSetSpec)
    status: KnowledgeSetStatus = Field(default_factory=KnowledgeSetStatus)


# ---------------------------------------------------------------------------
# Tool / Workflow / WorkflowExecution
# ---------------------------------------------------------------------------
class ToolSpec(BaseModel):
    thread_name: str = ""
    manifest: dict[str, Any] = Field(default_factory=dict)


class Tool(Resource):
    kind: ClassVar[str] = "Tool"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda t: t.spec.thread_name,
    }

    spec: ToolSpec = Field(default_factory=ToolSpec)
    status: _Status = Field(default_factory=_Status)


class WorkflowManifest(BaseModel):
    name: str = ""
    alias: str = ""
    description: str = ""
    prompt: str = ""
    steps: list[dict[str, Any]] = Field(default_factory=list)


class WorkflowSpec(BaseModel):
    thread_name: str = ""
    manifest: WorkflowManifest = Field(default_factory=WorkflowManifest)
    managed: bool = False
    source_thread_name: str = ""
    source_workflow_name: str = ""


class Workflow(Resource):
    kind: ClassVar[str] = "Workflow"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda w: w.spec.thread_name,
        "spec.source_thread_name": lambda w: w.spec.source_thread_name,
    }

    spec: WorkflowSpec = Field(default_factory=WorkflowSpec)
    status: _Status = Field(default_factory=_Status)


class WorkflowExecutionSpec(BaseModel):
    workflow_name: str = ""
    thread_name: str = ""


class WorkflowExecutionStatus(_Status):
    state: str = ""


class WorkflowExecution(Resource):
    kind: ClassVar[str] = "WorkflowExecution"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda w: w.spec.thread_name,
    }

    spec: WorkflowExecutionSpec = Field(default_factory=WorkflowExecutionSpec)
    status: WorkflowExecutionStatus = Field(default_factory=WorkflowExecutionStatus)


# ---------------------------------------------------------------------------
# MCP server family
# ---------------------------------------------------------------------------
class MCPServerSpec(BaseModel):
    manifest: dict[str, Any] = Field(default_factory=dict)
    unsupported_tools: list[str] = Field(default_factory=list)
    thread_name: str = ""
    alias: str = ""
    user_id: str = ""
    # non-empty for multi-user servers shared within a catalog
    shared_within_mcp_catalog_name: str = ""
    mcp_server_catalog_entry_name: str = ""


class MCPServer(Resource):
    kind: ClassVar[str] = "MCPServer"

    spec: MCPServerSpec = Field(default_factory=MCPServerSpec)
    status: _Status = Field(default_factory=_Status)


class MCPServerInstanceSpec(BaseModel):
    user_id: str = ""
    mcp_server_name: str = ""
    mcp_catalog_name: str = ""
    mcp_server_catalog_entry_name: str = ""


class MCPServerInstance(Resource):
    kind: ClassVar[str] = "MCPServerInstance"

    spec: MCPServerInstanceSpec = Field(default_factory=MCPServerInstanceSpec)
    status: _Status = Field(default_factory=_Status)


class ProjectMCPServerManifest(BaseModel):
    mcp_id: str = ""
    alias: str = ""


class ProjectMCPServerSpec(BaseModel):
    manifest: ProjectMCPServerManifest = Field(default_factory=ProjectMCPServerManifest)
    thread_name: str = ""
    user_id: str = ""


class ProjectMCPServer(Resource):
    kind: ClassVar[str] = "ProjectMCPServer"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.thread_name": lambda p: p.spec.thread_name,
    }

    spec: ProjectMCPServerSpec = Field(default_factory=ProjectMCPServerSpec)
    status: _Status = Field(default_factory=_Status)


# ---------------------------------------------------------------------------
# ThreadShare
# ---------------------------------------------------------------------------
class ThreadShareSpec(BaseModel):
    user_id: str = ""
    project_thread_name: str = ""
    template: bool = False
    featured: bool = False
    public: bool = False
    public_id: str = ""


class ThreadShare(Resource):
    kind: ClassVar[str] = "ThreadShare"
    field_indexes: ClassVar[dict[str, Callable[[Any], Any]]] = {
        "spec.public_id": lambda s: s.spec.public_id,
        "spec.template": lambda s: s.spec.template,
        "spec.project_thread_name": lambda s: s.spec.project_thread_name,
    }

    spec: ThreadShareSpec = Field(default_factory=ThreadShareSpec)
    status: _Status = Field(default_factory=_Status)


KINDS: dict[str, type[Resource]] = {
    cls.kind: cls
    for cls in (
        Agent,
        Thread,
        Run,
        RunState,
        Workspace,
        KnowledgeSet,
        Tool,
        Workflow,
        WorkflowExecution,
        MCPServer,
        MCPServerInstance,
        ProjectMCPServer,
        ThreadShare,
    )
}
