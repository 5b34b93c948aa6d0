"""Invoker contract and the throwaway system-thread task helper.

The invoker executes model/tool invocations; this package only calls it.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .errors import InvokerError
from .logging_utils import get_logger
from .naming import THREAD_PREFIX
from .resources import Run, Thread, ThreadSpec
from .store import ResourceStore

logger = get_logger(__name__)


@dataclass
class ToolDef:
    instructions: str
    name: str = ""
    tools: list[str] = field(default_factory=list)


@dataclass
class SystemTaskOptions:
    env: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None


@runtime_checkable
class TaskHandle(Protocol):
    async def result(self) -> str: ...
    async def close(self) -> None: ...


@runtime_checkable
class Invoker(Protocol):
    """Executes runs on behalf of the controller.

    Besides advancing runs, an implementation records each run it drives on
    the owning thread as ``status.last_run_name`` and ``status.last_run_state``;
    thread titles are only generated from those fields.
    """

    async def resume(self, store: ResourceStore, thread: Thread, run: Run) -> None:
        """Advance a suspended (Continue/Waiting) run."""
        ...

    async def system_task(
        self,
        thread: Thread,
        tool: ToolDef,
        input: str,
        options: SystemTaskOptions | None = None,
    ) -> TaskHandle: ...


async def ephemeral_thread_task(
    store: ResourceStore,
    invoker: Invoker,
    owner: Thread,
    tool: ToolDef,
    input: str,
    options: SystemTaskOptions | None = None,
) -> str:
    """Run ``tool`` on a system thread created for the call and deleted afterwards."""
    system_thread = Thread.new(
        namespace=owner.namespace,
        generate_name=THREAD_PREFIX,
        spec=ThreadSpec(system_task=True, ephemeral=True, user_id=owner.spec.user_id),
    )
    await store.create(system_thread)
    try:
        handle = await invoker.system_task(system_thread, tool, input, options)
        try:
            return await handle.result()
        finally:
            await handle.close()
    except InvokerError:
        raise
    except Exception as exc:
        raise InvokerError(f"system task on thread {system_thread.name} failed: {exc}") from exc
    finally:
        try:
            await store.delete(system_thread)
        except Exception:
            logger.warning("failed to delete system thread", exc_info=True, data={"thread": system_thread.name})


def load_invoker(factory_path: str) -> Invoker | None:
    """Instantiate the invoker named by a ``module:attr`` factory path."""
    if not factory_path:
        return None
    module_name, _, attr = factory_path.partition(":")
    if not attr:
        raise ValueError(f"invoker factory must look like 'module:attr', got {factory_path!r}")
    factory: Any = getattr(importlib.import_module(module_name), attr)
    invoker = factory()
    if not isinstance(invoker, Invoker):
        raise TypeError(f"{factory_path} did not return an Invoker")
    return invoker
