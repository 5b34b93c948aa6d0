"""Test the thread lifecycle steps."""

from __future__ import annotations

import pytest

from omni_controller.handlers.threads import ThreadHandler
from omni_controller.naming import (
    KNOWLEDGE_SET_PREFIX,
    MCP_SERVER_INSTANCE_PREFIX,
    MCP_SERVER_PREFIX,
    PROJECT_MCP_SERVER_PREFIX,
    WORKFLOW_PREFIX,
    WORKSPACE_PREFIX,
    safe_hash_concat_name,
)
from omni_controller.resources import (
    DEPRECATED_THREAD_FINALIZERS,
    PROJECT_MCP_SERVER_FINALIZER,
    WORKSPACE_FINALIZER,
    MCPServer,
    MCPServerInstance,
    MCPServerInstanceSpec,
    MCPServerSpec,
    ProjectMCPServer,
    ProjectMCPServerManifest,
    ProjectMCPServerSpec,
    Run,
    RunSpec,
    RunStatus,
    Thread,
    ThreadManifest,
    ThreadSpec,
    Tool,
    ToolSpec,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionSpec,
    WorkflowManifest,
    WorkflowSpec,
    Workspace,
)
from omni_controller.router import Request, Response
from omni_controller.store import ObjectKey

pytestmark = pytest.mark.asyncio


async def get_thread(store, name: str) -> Thread:
    return await store.get(Thread, "default", name)


class TestWorkspaces:
    async def test_project_gets_private_and_shared_workspace(self, store, router):
        await store.create(Thread.new(name="t1proj", spec=ThreadSpec(project=True, user_id="u1")))
        await router.drain()

        thread = await get_thread(store, "t1proj")
        assert thread.status.workspace_name == safe_hash_concat_name(WORKSPACE_PREFIX, "t1proj")
        assert thread.status.workspace_id.startswith("directory://")
        assert thread.status.shared_workspace_name == safe_hash_concat_name(WORKSPACE_PREFIX, "shared", "t1proj")
        assert thread.status.created is True

        ws = await store.get(Workspace, "default", thread.status.workspace_name)
        assert ws.spec.from_workspace_names == []
        assert ws.finalizers == [WORKSPACE_FINALIZER]

    async def test_user_thread_chain_is_farthest_first(self, store, router, make_agent):
        agent = await make_agent()
        await store.create(Thread.new(name="t1root", spec=ThreadSpec(project=True)))
        await store.create(Thread.new(name="t1mid", spec=ThreadSpec(project=True, parent_thread_name="t1root")))
        await store.create(
            Thread.new(name="t1chat", spec=ThreadSpec(parent_thread_name="t1mid", agent_name=agent.name))
        )
        await router.drain()

        chat = await get_thread(store, "t1chat")
        ws = await store.get(Workspace, "default", chat.status.workspace_name)
        assert ws.spec.from_workspace_names == [
            agent.status.workspace_name,
            safe_hash_concat_name(WORKSPACE_PREFIX, "t1root"),
            safe_hash_concat_name(WORKSPACE_PREFIX, "t1mid"),
        ]
        # user threads share their project's shared workspace
        mid = await get_thread(store, "t1mid")
        assert chat.status.shared_workspace_name == mid.status.shared_workspace_name

    async def test_child_waits_for_parent_created(self, store):
        handler = ThreadHandler()
        await store.create(Thread.new(name="t1parent", spec=ThreadSpec(project=True)))
        child = await store.create(Thread.new(name="t1kid", spec=ThreadSpec(parent_thread_name="t1parent")))

        req = Request(store=store, obj=child)
        await handler.create_workspaces(req, Response())
        assert child.status.workspace_name == ""
        assert await store.list(Workspace, fields={"spec.thread_name": "t1kid"}) == []

    async def test_explicit_workspace_is_used(self, store, router):
        ws = await store.create(Workspace.new(name="wksp1-explicit"))
        await store.create(Thread.new(name="t1exp", spec=ThreadSpec(workspace_name=ws.name)))
        await router.drain()

        thread = await get_thread(store, "t1exp")
        assert thread.status.workspace_name == "wksp1-explicit"
        assert await store.list(Workspace, fields={"spec.thread_name": "t1exp"}) == []

    async def test_non_project_parent_is_terminal(self, store, router):
        await store.create(Thread.new(name="t1plain"))
        await store.create(Thread.new(name="t1under", spec=ThreadSpec(parent_thread_name="t1plain")))
        await router.drain()

        thread = await get_thread(store, "t1under")
        assert thread.status.error == "parent thread t1plain is not a project"
        assert thread.status.created is False
        assert ObjectKey("Thread", "default", "t1under") not in router.pending_timers()

    async def test_missing_parent_is_retried(self, store, router):
        await store.create(Thread.new(name="t1orphan", spec=ThreadSpec(parent_thread_name="t1ghost")))
        await router.drain()

        thread = await get_thread(store, "t1orphan")
        assert thread.status.error == ""
        assert ObjectKey("Thread", "default", "t1orphan") in router.pending_timers()

    async def test_cyclic_parents_are_terminal(self, store):
        for name, parent in (("t1loopa", "t1loopb"), ("t1loopb", "t1loopa")):
            looped = await store.create(Thread.new(name=name, spec=ThreadSpec(project=True, parent_thread_name=parent)))
            looped.status.created = True
            looped.status.workspace_name = f"wksp1-{name}"
            await store.update_status(looped)
        thread = await store.create(Thread.new(name="t1inloop", spec=ThreadSpec(parent_thread_name="t1loopa")))

        await ThreadHandler(max_chain_depth=8).create_workspaces(Request(store=store, obj=thread), Response())
        assert "exceeds" in thread.status.error
        assert thread.status.workspace_name == ""


class TestKnowledgeSets:
    async def test_nearest_ancestor_sets_follow_own(self, store, router, make_agent):
        agent = await make_agent()
        await store.create(Thread.new(name="t1top", spec=ThreadSpec(project=True, agent_name=agent.name)))
        await store.create(
            Thread.new(name="t1sub", spec=ThreadSpec(project=True, parent_thread_name="t1top", agent_name=agent.name))
        )
        await store.create(
            Thread.new(name="t1leaf", spec=ThreadSpec(parent_thread_name="t1sub", agent_name=agent.name))
        )
        await router.drain()

        leaf = await get_thread(store, "t1leaf")
        assert leaf.status.knowledge_set_names == [
            safe_hash_concat_name(KNOWLEDGE_SET_PREFIX, "t1leaf"),
            safe_hash_concat_name(KNOWLEDGE_SET_PREFIX, "t1sub"),
            safe_hash_concat_name(KNOWLEDGE_SET_PREFIX, "t1top"),
        ]
        assert leaf.status.created is True

    async def test_agent_alias_resolves(self, store, router, make_agent):
        agent = await make_agent(name="a1byalias", alias="helper")
        await store.create(Thread.new(name="t1alias", spec=ThreadSpec(agent_name="helper")))
        await router.drain()

        thread = await get_thread(store, "t1alias")
        ws = await store.get(Workspace, "default", thread.status.workspace_name)
        assert ws.spec.from_workspace_names == [agent.status.workspace_name]

    async def test_thread_without_agent_has_no_knowledge(self, store, router):
        await store.create(Thread.new(name="t1noagent", spec=ThreadSpec(project=True)))
        await router.drain()
        thread = await get_thread(store, "t1noagent")
        assert thread.status.knowledge_set_names == []
        assert thread.status.created is True


class TestCopyFromSource:
    async def _source(self, store):
        await store.create(Thread.new(name="t1src", spec=ThreadSpec(project=True, user_id="owner")))
        for name in ("tl1search", "tl1mail"):
            await store.create(Tool.new(name=name, spec=ToolSpec(thread_name="t1src", manifest={"name": name})))

    async def test_tools_copied_once(self, store, router):
        await self._source(store)
        await store.create(Thread.new(name="t1dst", spec=ThreadSpec(project=True, source_thread_name="t1src")))
        await router.drain()

        thread = await get_thread(store, "t1dst")
        assert thread.status.copied_tools is True

        # simulate re-delivery of the whole copy pass
        thread.status.copied_tools = False
        await store.update_status(thread)
        await router.drain()

        tools = await store.list(Tool, fields={"spec.thread_name": "t1dst"})
        assert sorted(t.name for t in tools) == sorted(
            safe_hash_concat_name(src, "t1dst") for src in ("tl1search", "tl1mail")
        )

    async def test_copy_inherits_source_shared_workspace(self, store, router):
        await self._source(store)
        await store.create(Thread.new(name="t1dst", spec=ThreadSpec(project=True, source_thread_name="t1src")))
        await router.drain()

        src = await get_thread(store, "t1src")
        dst = await get_thread(store, "t1dst")
        assert dst.status.shared_workspace_name == src.status.shared_workspace_name
        ws = await store.get(Workspace, "default", dst.status.workspace_name)
        assert ws.spec.from_workspace_names == [src.status.workspace_name]
        assert dst.status.created is True

    async def test_tasks_cloned_and_missing_dropped(self, store, router):
        await self._source(store)
        await store.create(
            Workflow.new(
                name="w1owned",
                spec=WorkflowSpec(thread_name="t1src", manifest=WorkflowManifest(name="Digest", alias="digest")),
            )
        )
        await store.create(Workflow.new(name="w1global", spec=WorkflowSpec(manifest=WorkflowManifest(name="Global"))))
        await store.create(
            Thread.new(
                name="t1dst",
                spec=ThreadSpec(
                    project=True,
                    source_thread_name="t1src",
                    manifest=ThreadManifest(shared_tasks=["digest", "w1missing", "w1global"]),
                ),
            )
        )
        await router.drain()

        thread = await get_thread(store, "t1dst")
        clone_name = safe_hash_concat_name(WORKFLOW_PREFIX, "t1dst", "w1owned")
        assert thread.spec.manifest.shared_tasks == [clone_name, "w1global"]
        assert thread.status.copied_tasks is True
        assert thread.status.created is True

        clone = await store.get(Workflow, "default", clone_name)
        assert clone.spec.thread_name == "t1dst"
        assert clone.spec.manifest.name == "Digest"
        assert clone.spec.manifest.alias not in ("", "digest")

    async def test_mcp_bindings_follow_backend_kind(self, store, router):
        await self._source(store)
        await store.create(
            MCPServerInstance.new(name="msi1src", spec=MCPServerInstanceSpec(user_id="owner", mcp_server_name="ms1base"))
        )
        await store.create(
            MCPServer.new(name="ms1team", spec=MCPServerSpec(shared_within_mcp_catalog_name="catalog1", alias="team"))
        )
        await store.create(MCPServer.new(name="ms1mine", spec=MCPServerSpec(user_id="u2", alias="mine")))
        await store.create(MCPServer.new(name="ms1theirs", spec=MCPServerSpec(user_id="owner", alias="theirs")))
        bindings = {"pms1inst": "msi1src", "pms1team": "ms1team", "pms1mine": "ms1mine", "pms1theirs": "ms1theirs"}
        for name, mcp_id in bindings.items():
            await store.create(
                ProjectMCPServer.new(
                    name=name,
                    spec=ProjectMCPServerSpec(thread_name="t1src", manifest=ProjectMCPServerManifest(mcp_id=mcp_id)),
                )
            )
        await store.create(ProjectMCPServer.new(name="pms1stale", spec=ProjectMCPServerSpec(thread_name="t1dst")))
        await store.create(
            Thread.new(name="t1dst", spec=ThreadSpec(project=True, source_thread_name="t1src", user_id="u2"))
        )
        await router.drain()

        copied = {
            b.name: b for b in await store.list(ProjectMCPServer, fields={"spec.thread_name": "t1dst"})
        }
        expected = {safe_hash_concat_name(PROJECT_MCP_SERVER_PREFIX, "t1dst", n): n for n in bindings}
        assert set(copied) == set(expected)
        targets = {expected[name]: b.spec.manifest.mcp_id for name, b in copied.items()}
        assert all(b.finalizers == [PROJECT_MCP_SERVER_FINALIZER] for b in copied.values())

        # instance: a fresh instance of the same server for the new user
        inst = await store.get(MCPServerInstance, "default", targets["pms1inst"])
        assert targets["pms1inst"] == safe_hash_concat_name(MCP_SERVER_INSTANCE_PREFIX, "t1dst", "ms1base")
        assert inst.spec.user_id == "u2" and inst.spec.mcp_server_name == "ms1base"

        # shared multi-user server: an instance pointing at it
        team = await store.get(MCPServerInstance, "default", targets["pms1team"])
        assert team.spec.mcp_server_name == "ms1team"
        assert team.spec.mcp_catalog_name == "catalog1"

        # single-user server already owned by the new user is reused
        assert targets["pms1mine"] == "ms1mine"

        # single-user server of another user is cloned
        assert targets["pms1theirs"] == safe_hash_concat_name(MCP_SERVER_PREFIX, "t1dst", "ms1theirs")
        clone = await store.get(MCPServer, "default", targets["pms1theirs"])
        assert clone.spec.user_id == "u2" and clone.spec.alias == "theirs"

    async def test_children_of_copies_do_not_copy(self, store, router):
        await self._source(store)
        await store.create(
            Thread.new(
                name="t1nested",
                spec=ThreadSpec(project=True, source_thread_name="t1src", parent_thread_name="t1src"),
            )
        )
        await router.drain()
        assert await store.list(Tool, fields={"spec.thread_name": "t1nested"}) == []
        thread = await get_thread(store, "t1nested")
        assert thread.status.copied_tools is False


class TestReadiness:
    async def test_created_never_reverts(self, store):
        handler = ThreadHandler()
        thread = await store.create(Thread.new(name="t1mono", spec=ThreadSpec(project=True)))
        thread.status.created = True
        await handler.set_created(Request(store=store, obj=thread), Response())
        assert thread.status.created is True

    async def test_not_created_without_workspace_id(self, store):
        handler = ThreadHandler()
        thread = await store.create(Thread.new(name="t1wait"))
        thread.status.workspace_name = "wksp1-pending"
        await handler.set_created(Request(store=store, obj=thread), Response())
        assert thread.status.created is False

    async def test_converged_thread_is_not_rewritten(self, store, router, make_agent):
        agent = await make_agent()
        await store.create(Thread.new(name="t1stable", spec=ThreadSpec(project=True, agent_name=agent.name)))
        await router.drain()

        before = await get_thread(store, "t1stable")
        workspaces = len(await store.list(Workspace))
        await router.reconcile(Thread, "default", "t1stable")
        await router.reconcile(Thread, "default", "t1stable")

        after = await get_thread(store, "t1stable")
        assert after.metadata.resource_version == before.metadata.resource_version
        assert len(await store.list(Workspace)) == workspaces


class TestHousekeeping:
    async def test_deprecated_finalizers_stripped(self, store, router):
        keep = "example.com/keep"
        await store.create(Thread.new(name="t1old", finalizers=[*DEPRECATED_THREAD_FINALIZERS, keep]))
        await router.drain()

        thread = await get_thread(store, "t1old")
        assert thread.finalizers == [keep]
        assert thread.metadata.generation == 1

    async def test_ephemeral_thread_expires(self, store, router, clock):
        await store.create(Thread.new(name="t1temp", spec=ThreadSpec(ephemeral=True)))
        await router.drain()

        key = ObjectKey("Thread", "default", "t1temp")
        assert router.pending_timers()[key] > 11 * 3600

        clock.advance(hours=11)
        await router.reconcile(Thread, "default", "t1temp")
        assert (await get_thread(store, "t1temp")).name == "t1temp"

        clock.advance(hours=2)
        await router.reconcile(Thread, "default", "t1temp")
        assert await store.list(Thread) == []

    async def test_workflow_state_mirrored(self, store, router):
        await store.create(WorkflowExecution.new(name="we1run", spec=WorkflowExecutionSpec(workflow_name="w1x")))
        await store.create(Thread.new(name="t1wf", spec=ThreadSpec(workflow_execution_name="we1run")))
        await router.drain()

        wfe = await store.get(WorkflowExecution, "default", "we1run")
        wfe.status.state = "Running"
        await store.update_status(wfe)
        await router.drain()

        assert (await get_thread(store, "t1wf")).status.workflow_state == "Running"


class TestTitles:
    async def _chat(self, store, state: str, **spec):
        await store.create(Thread.new(name="t1proj", spec=ThreadSpec(project=True)))
        await store.create(
            Run.new(name="r1last", spec=RunSpec(thread_name="t1chat", input="How do I plan a budget?"))
        )
        run = await store.get(Run, "default", "r1last")
        run.status = RunStatus(output="Start with fixed costs.")
        await store.update_status(run)
        thread = await store.create(
            Thread.new(name="t1chat", spec=ThreadSpec(parent_thread_name="t1proj", **spec))
        )
        thread.status.last_run_name = "r1last"
        thread.status.last_run_state = state
        await store.update_status(thread)

    async def test_title_generated_on_throwaway_thread(self, store, router, invoker):
        await self._chat(store, "Continue")
        await router.drain()

        thread = await get_thread(store, "t1chat")
        assert thread.spec.manifest.name == "Quarterly Budget Review"

        assert len(invoker.system_tasks) == 1
        system_thread, tool, text = invoker.system_tasks[0]
        assert system_thread not in {"t1chat", "t1proj"}
        assert "How do I plan a budget?" in text and "Start with fixed costs." in text
        assert "3 to 4 words" in tool.instructions
        assert invoker.handles[0].closed is True
        assert {t.name for t in await store.list(Thread)} == {"t1proj", "t1chat"}

    async def test_no_title_while_running(self, store, router, invoker):
        await self._chat(store, "Running")
        await router.drain()
        assert invoker.system_tasks == []

    async def test_no_title_without_recorded_run(self, store, router, invoker):
        await store.create(Thread.new(name="t1proj", spec=ThreadSpec(project=True)))
        await store.create(Thread.new(name="t1fresh", spec=ThreadSpec(parent_thread_name="t1proj")))
        await router.drain()
        assert invoker.system_tasks == []
        assert (await get_thread(store, "t1fresh")).spec.manifest.name == ""

    async def test_named_thread_keeps_name(self, store, router, invoker):
        await self._chat(store, "Waiting", manifest=ThreadManifest(name="Mine"))
        await router.drain()
        assert (await get_thread(store, "t1chat")).spec.manifest.name == "Mine"
        assert invoker.system_tasks == []


class TestManagedWorkflows:
    async def test_unshared_managed_workflow_deleted(self, store, router):
        await store.create(
            Thread.new(name="t1owner", spec=ThreadSpec(project=True, manifest=ThreadManifest(shared_tasks=["w1kept"])))
        )
        for name, source_wf in (("w1copykept", "w1kept"), ("w1copydropped", "w1dropped")):
            await store.create(
                Workflow.new(
                    name=name,
                    spec=WorkflowSpec(managed=True, source_thread_name="t1owner", source_workflow_name=source_wf),
                )
            )
        await store.create(
            Workflow.new(name="w1orphan", spec=WorkflowSpec(managed=True, source_thread_name="t1gone"))
        )
        await router.drain()

        assert [w.name for w in await store.list(Workflow)] == ["w1copykept"]

    async def test_unmanaged_workflow_untouched(self, store, router):
        await store.create(Workflow.new(name="w1free", spec=WorkflowSpec(source_thread_name="t1gone")))
        await router.drain()
        assert [w.name for w in await store.list(Workflow)] == ["w1free"]
