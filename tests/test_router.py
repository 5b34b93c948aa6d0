"""Test the dispatcher: status persistence, dedupe, retry, timed requeue, watches, removal."""

from __future__ import annotations

import asyncio
import logging

import pytest
import pytest_asyncio

from omni_controller.logging_utils import reconcile_context
from omni_controller.resources import Run, RunSpec, Thread, ThreadSpec
from omni_controller.router import Router
from omni_controller.store import ObjectKey

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def bare_router(store, bus):
    r = Router(store, bus, workers=2, retry_base_seconds=5, retry_max_seconds=60)
    yield r
    await r.stop()


class TestStatusPersistence:
    async def test_changed_status_written_once(self, store, bare_router):
        calls = []

        async def set_workspace(req, resp):
            calls.append(req.obj.name)
            req.obj.status.workspace_name = "wksp1-x"

        bare_router.handle(Thread, set_workspace)
        await store.create(Thread.new(name="t1a"))
        await bare_router.drain()

        thread = await store.get(Thread, "default", "t1a")
        assert thread.status.workspace_name == "wksp1-x"
        version = thread.metadata.resource_version

        await bare_router.reconcile(Thread, "default", "t1a")
        thread = await store.get(Thread, "default", "t1a")
        assert thread.metadata.resource_version == version
        # create event, then the status write's own event
        assert len(calls) == 3

    async def test_each_step_persists_separately(self, store, bare_router):
        async def first(req, resp):
            req.obj.status.workspace_name = "w"

        async def second(req, resp):
            raise RuntimeError("store unavailable")

        bare_router.handle(Thread, first)
        bare_router.handle(Thread, second)
        await store.create(Thread.new(name="t1partial"))

        with pytest.raises(RuntimeError):
            await bare_router.reconcile(Thread, "default", "t1partial")
        thread = await store.get(Thread, "default", "t1partial")
        assert thread.status.workspace_name == "w"
        assert thread.status.error == ""

    async def test_missing_object_is_noop(self, bare_router):
        async def boom(req, resp):
            raise AssertionError("should not run")

        bare_router.handle(Thread, boom)
        resp = await bare_router.reconcile(Thread, "default", "t1missing")
        assert resp.delay is None

    async def test_context_is_set_during_step(self, store, bare_router):
        seen = []

        async def capture(req, resp):
            seen.append(reconcile_context.get())

        bare_router.handle(Thread, capture)
        await store.create(Thread.new(name="t1ctx"))
        await bare_router.reconcile(Thread, "default", "t1ctx")
        assert seen == [{"kind": "Thread", "key": "Thread/default/t1ctx"}]
        assert reconcile_context.get() == {}


class TestQueueing:
    async def test_duplicate_keys_are_collapsed(self, store, bare_router):
        async def noop(req, resp):
            pass

        bare_router.handle(Thread, noop)
        await store.create(Thread.new(name="t1dedupe"))
        key = ObjectKey("Thread", "default", "t1dedupe")
        bare_router.enqueue(key)
        bare_router.enqueue(key)
        assert await bare_router.drain() == 1

    async def test_failure_schedules_backoff(self, store, bare_router):
        async def flaky(req, resp):
            raise RuntimeError("conflict")

        bare_router.handle(Thread, flaky)
        await store.create(Thread.new(name="t1retry"))
        await bare_router.drain()

        timers = bare_router.pending_timers()
        key = ObjectKey("Thread", "default", "t1retry")
        assert key in timers
        assert 0 < timers[key] <= 5

    async def test_invariant_violation_not_retried(self, store, bare_router, caplog):
        async def broken(req, resp):
            raise AssertionError("impossible thread shape")

        bare_router.handle(Thread, broken)
        await store.create(Thread.new(name="t1broken"))
        with caplog.at_level(logging.CRITICAL, logger="omni_controller.router"):
            await bare_router.drain()

        assert ObjectKey("Thread", "default", "t1broken") not in bare_router.pending_timers()
        assert any("violated an invariant" in r.getMessage() for r in caplog.records)

    async def test_retry_after_schedules_requeue(self, store, bare_router):
        async def later(req, resp):
            resp.retry_after(3600)
            resp.retry_after(120)

        bare_router.handle(Thread, later)
        await store.create(Thread.new(name="t1later"))
        await bare_router.drain()

        delay = bare_router.pending_timers()[ObjectKey("Thread", "default", "t1later")]
        assert 100 < delay <= 120

    async def test_unregistered_kinds_ignored(self, bare_router):
        bare_router.enqueue(ObjectKey("Run", "default", "r1x"))
        assert await bare_router.drain() == 0


class TestWatchesAndRemoval:
    async def test_watch_retriggers_target(self, store, bare_router):
        reconciled = []

        async def record(req, resp):
            reconciled.append(req.obj.name)

        async def run_to_thread(store, run):
            return [ObjectKey("Thread", run.namespace, run.spec.thread_name)]

        bare_router.handle(Thread, record)
        bare_router.watch(Run, Thread, run_to_thread)

        await store.create(Thread.new(name="t1owner"))
        await bare_router.drain()
        reconciled.clear()

        await store.create(Run.new(name="r1child", spec=RunSpec(thread_name="t1owner")))
        await bare_router.drain()
        assert reconciled == ["t1owner"]

    async def test_failing_mapper_is_logged_not_raised(self, store, bare_router):
        async def noop(req, resp):
            pass

        async def broken(store, obj):
            raise RuntimeError("index unavailable")

        bare_router.handle(Run, noop)
        bare_router.watch(Run, Thread, broken)
        await store.create(Run.new(name="r1m"))
        assert await bare_router.drain() == 1

    async def test_remove_steps_get_last_copy(self, store, bare_router):
        removed = []

        async def noop(req, resp):
            pass

        async def on_gone(store, run):
            removed.append((run.name, run.spec.thread_name))

        bare_router.handle(Run, noop)
        bare_router.on_remove(Run, on_gone)

        run = await store.create(Run.new(name="r1bye", spec=RunSpec(thread_name="t1z")))
        await bare_router.drain()
        await store.delete(run)
        await bare_router.drain()
        assert removed == [("r1bye", "t1z")]

    async def test_delete_object_skips_remaining_steps(self, store, bare_router):
        after = []

        async def remove(req, resp):
            await req.delete_object()

        async def never(req, resp):
            after.append(req.obj.name)

        bare_router.handle(Thread, remove)
        bare_router.handle(Thread, never)
        await store.create(Thread.new(name="t1del", spec=ThreadSpec(ephemeral=True)))
        await bare_router.drain()
        assert after == []


class TestBackground:
    async def test_start_and_stop(self, store, bare_router):
        async def mark(req, resp):
            req.obj.status.created = True

        bare_router.handle(Thread, mark)
        await store.create(Thread.new(name="t1pre"))
        await bare_router.start()
        await store.create(Thread.new(name="t1live"))

        for _ in range(200):
            threads = await store.list(Thread)
            if all(t.status.created for t in threads):
                break
            await asyncio.sleep(0.01)
        await bare_router.stop()

        assert {t.name for t in await store.list(Thread) if t.status.created} == {"t1pre", "t1live"}
