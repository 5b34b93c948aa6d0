"""Run lifecycle steps: resumption, run-state cleanup and garbage collection."""

from __future__ import annotations

from datetime import timedelta

from ..convergence import get_or_none, ignore_not_found
from ..errors import NotFoundError
from ..invoker import Invoker
from ..logging_utils import get_logger
from ..resources import Run, RunState, RunStateType, Thread
from ..router import Request, Response
from ..store import ResourceStore

logger = get_logger(__name__)


class RunHandler:
    def __init__(self, invoker: Invoker | None = None, finished_ttl: timedelta = timedelta(hours=12)):
        self._invoker = invoker
        self._finished_ttl = finished_ttl

    def _fail(self, req: Request, run: Run, message: str) -> None:
        run.status.state = RunStateType.ERROR
        run.status.error = message
        run.status.end_time = req.now()
        logger.info("run failed", data={"run": run.name, "error": message})

    async def resume(self, req: Request, resp: Response) -> None:
        run: Run = req.obj
        if run.status.state is not None and run.status.state.is_terminal():
            return

        thread = await get_or_none(req.store, Thread, run.namespace, run.spec.thread_name)
        if thread is None:
            self._fail(req, run, f"thread {run.spec.thread_name} not found")
            return
        if thread.spec.abort:
            self._fail(req, run, "thread was aborted")
            return

        if run.spec.previous_run_name:
            try:
                await req.store.get(Run, run.namespace, run.spec.previous_run_name)
            except NotFoundError as exc:
                self._fail(req, run, f"previous run {run.spec.previous_run_name} not found: {exc.message}")
                return

        # synchronous runs are driven by their caller
        if run.spec.synchronous or not thread.status.created:
            return

        if self._invoker is None:
            return
        await self._invoker.resume(req.store, thread, run)

    async def delete_finished(self, req: Request, resp: Response) -> None:
        run: Run = req.obj
        if run.status.state == RunStateType.FINISHED:
            since = run.status.end_time or run.metadata.creation_timestamp
        elif run.spec.synchronous and run.status.state is None:
            # a synchronous run nobody drove to completion
            since = run.metadata.creation_timestamp
        else:
            return
        if since is None:
            return

        age = req.now() - since
        if age > self._finished_ttl:
            logger.debug("collecting run", data={"run": run.name, "age_seconds": age.total_seconds()})
            await req.delete_object()
            return
        resp.retry_after((self._finished_ttl - age).total_seconds())


async def delete_run_state(store: ResourceStore, run: Run) -> None:
    """Remove the run-state records keyed by the run and by each external call it made."""
    names = [run.name]
    if run.status.external_call is not None:
        names.append(run.status.external_call.id)
    names.extend(result.id for result in run.spec.external_call_results)

    failed: Exception | None = None
    for name in dict.fromkeys(names):
        try:
            await ignore_not_found(store.delete(RunState.new(name=name, namespace=run.namespace)))
        except Exception as exc:
            logger.warning("failed to delete run state", data={"run": run.name, "run_state": name})
            failed = failed or exc
    if failed is not None:
        raise failed
