"""Convergence step registry and change dispatcher.

Steps are plain ``async def step(req, resp)`` functions bound to a resource
kind. The router re-invokes every step of a kind whenever an object of that
kind changes, or whenever a watched dependency maps back to it. It owns
deduplication, per-object serialization, retry with backoff and status
persistence; steps only read, create dependents, and mutate ``req.obj.status``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from .core.eventbus import BusEvent, EventBus
from .errors import NotFoundError
from .logging_utils import get_logger, reconcile_context
from .resources import Resource
from .store import DELETE, ObjectKey, ResourceStore, key_of

logger = get_logger(__name__)


@dataclass
class Request:
    """One invocation of a step against a freshly read object."""

    store: ResourceStore
    obj: Resource
    deleted: bool = False

    @property
    def namespace(self) -> str:
        return self.obj.namespace

    def now(self) -> datetime:
        return self.store.now()

    async def delete_object(self) -> None:
        """Delete ``req.obj``; remaining steps of this pass are skipped."""
        try:
            await self.store.delete(self.obj)
        except NotFoundError:
            pass
        self.deleted = True


@dataclass
class Response:
    delay: float | None = None

    def retry_after(self, seconds: float) -> None:
        """Ask for another invocation after ``seconds`` (keeps the earliest request)."""
        seconds = max(seconds, 0.0)
        if self.delay is None or seconds < self.delay:
            self.delay = seconds


Step = Callable[[Request, Response], Awaitable[None]]
RemoveStep = Callable[[ResourceStore, Resource], Awaitable[None]]
Mapper = Callable[[ResourceStore, Resource], Awaitable[list[ObjectKey]]]


@dataclass
class _Registration:
    cls: type[Resource]
    steps: list[tuple[str, Step]] = field(default_factory=list)
    remove_steps: list[tuple[str, RemoveStep]] = field(default_factory=list)


class Router:
    def __init__(
        self,
        store: ResourceStore,
        bus: EventBus | None = None,
        workers: int = 4,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 300.0,
    ):
        self.store = store
        self._bus = bus
        self._workers = workers
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds

        self._registrations: dict[str, _Registration] = {}
        self._watches: dict[str, list[tuple[str, Mapper]]] = defaultdict(list)

        self._queue: asyncio.Queue[ObjectKey] = asyncio.Queue()
        self._queued: set[ObjectKey] = set()
        self._in_flight: set[ObjectKey] = set()
        self._dirty: set[ObjectKey] = set()
        self._attempts: dict[ObjectKey, int] = defaultdict(int)
        self._timers: dict[ObjectKey, asyncio.TimerHandle] = {}
        # last seen copy of deleted objects, consumed by remove steps
        self._tombstones: dict[ObjectKey, Resource] = {}

        self._inboxes: dict[str, asyncio.Queue[BusEvent]] = {}
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------
    def _registration(self, cls: type[Resource]) -> _Registration:
        reg = self._registrations.get(cls.kind)
        if reg is None:
            reg = self._registrations[cls.kind] = _Registration(cls)
            self._attach(cls.kind)
        return reg

    def _attach(self, kind: str) -> None:
        if self._bus is not None and kind not in self._inboxes:
            self._inboxes[kind] = self._bus.open_queue(kind)

    def handle(self, cls: type[Resource], step: Step, name: str | None = None) -> None:
        """Register ``step`` to run on every change of ``cls`` objects, in registration order."""
        self._registration(cls).steps.append((name or step.__name__, step))

    def on_remove(self, cls: type[Resource], step: RemoveStep, name: str | None = None) -> None:
        """Register ``step`` to run once an object of ``cls`` is gone from the store."""
        self._registration(cls).remove_steps.append((name or step.__name__, step))

    def watch(self, trigger: type[Resource], target: type[Resource], mapper: Mapper) -> None:
        """Re-trigger ``target`` objects returned by ``mapper`` when a ``trigger`` object changes."""
        self._registration(target)
        self._watches[trigger.kind].append((target.kind, mapper))
        self._attach(trigger.kind)

    # ------------------------------------------------------------------
    # queueing
    # ------------------------------------------------------------------
    def enqueue(self, key: ObjectKey, delay: float = 0.0) -> None:
        if key.kind not in self._registrations:
            return
        if delay > 0:
            self._schedule(key, delay)
            return
        if key in self._in_flight:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def _schedule(self, key: ObjectKey, delay: float) -> None:
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        timer = self._timers.get(key)
        if timer is not None:
            if timer.when() <= when:
                return
            timer.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def pending_timers(self) -> dict[ObjectKey, float]:
        """Seconds until each scheduled re-invocation (tests, diagnostics)."""
        loop = asyncio.get_running_loop()
        return {key: max(t.when() - loop.time(), 0.0) for key, t in self._timers.items()}

    async def dispatch(self, event: BusEvent) -> None:
        """Translate one change notification into queued keys."""
        data = event.data
        obj: Resource = data["object"]
        key = ObjectKey(data["kind"], data["namespace"], data["name"])
        if data["type"] == DELETE:
            if self._registrations.get(key.kind) and self._registrations[key.kind].remove_steps:
                self._tombstones[key] = obj
        self.enqueue(key)

        for target_kind, mapper in self._watches.get(key.kind, []):
            try:
                keys = await mapper(self.store, obj)
            except Exception:
                logger.error("watch mapper failed", exc_info=True, data={"trigger": str(key), "target": target_kind})
                continue
            for target in keys:
                self.enqueue(target)

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------
    async def reconcile(self, cls: type[Resource], namespace: str, name: str) -> Response:
        """Run one pass of every step registered for the object; errors propagate."""
        reg = self._registration(cls)
        resp = Response()
        key = ObjectKey(cls.kind, namespace, name)
        token = reconcile_context.set({"kind": cls.kind, "key": str(key)})
        try:
            try:
                obj = await self.store.get(cls, namespace, name)
            except NotFoundError:
                tombstone = self._tombstones.pop(key, None)
                if tombstone is not None:
                    await self._run_remove_steps(reg, tombstone)
                return resp

            req = Request(store=self.store, obj=obj)
            for step_name, step in reg.steps:
                before = obj.status.model_dump(mode="json")
                await step(req, resp)
                if req.deleted:
                    logger.debug("object deleted by step", data={"step": step_name})
                    break
                # one atomic status write per step, only when something changed
                if obj.status.model_dump(mode="json") != before:
                    await self.store.update_status(obj)
            return resp
        finally:
            reconcile_context.reset(token)

    async def _run_remove_steps(self, reg: _Registration, obj: Resource) -> None:
        for step_name, step in reg.remove_steps:
            try:
                await step(self.store, obj)
            except Exception:
                # keep the tombstone so the key is retried
                self._tombstones[key_of(obj)] = obj
                raise

    async def process(self, key: ObjectKey) -> None:
        """Reconcile ``key`` with error handling, backoff and timed requeue."""
        self._queued.discard(key)
        self._in_flight.add(key)
        try:
            reg = self._registrations[key.kind]
            resp = await self.reconcile(reg.cls, key.namespace, key.name)
        except asyncio.CancelledError:
            raise
        except AssertionError:
            # a broken invariant does not heal on retry; the key waits for its next change
            logger.critical(f"reconcile {key} violated an invariant", exc_info=True)
            self._attempts.pop(key, None)
            self._in_flight.discard(key)
            self._dirty.discard(key)
            return
        except Exception as exc:
            self._attempts[key] += 1
            delay = min(self._retry_base * 2 ** (self._attempts[key] - 1), self._retry_max)
            logger.warning(
                f"reconcile {key} failed: {type(exc).__name__}: {exc}",
                data={"attempt": self._attempts[key], "retry_in": delay},
            )
            self._in_flight.discard(key)
            self._dirty.discard(key)
            self._schedule(key, delay)
            return
        self._attempts.pop(key, None)
        self._in_flight.discard(key)
        if resp.delay is not None:
            self._schedule(key, resp.delay)
        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)

    async def resync(self) -> None:
        """Queue every object of every registered kind (startup, after lost events)."""
        for reg in list(self._registrations.values()):
            for obj in await self.store.list(reg.cls):
                self.enqueue(key_of(obj))

    async def drain(self, max_iterations: int = 10_000) -> int:
        """Process notifications and queued keys inline until both are empty.

        Scheduled retries are left alone. Returns the number of processed keys.
        """
        processed = 0
        while processed < max_iterations:
            moved = False
            for inbox in self._inboxes.values():
                while not inbox.empty():
                    await self.dispatch(inbox.get_nowait())
                    moved = True
            if not self._queue.empty():
                key = self._queue.get_nowait()
                await self.process(key)
                processed += 1
                continue
            if not moved:
                break
        return processed

    # ------------------------------------------------------------------
    # background operation
    # ------------------------------------------------------------------
    async def _pump(self, inbox: asyncio.Queue[BusEvent]) -> None:
        while True:
            event = await inbox.get()
            await self.dispatch(event)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            if key in self._in_flight:
                # another worker holds this object; it re-queues on completion
                self._queued.discard(key)
                self._dirty.add(key)
                continue
            await self.process(key)

    async def start(self) -> None:
        await self.resync()
        for inbox in self._inboxes.values():
            self._tasks.append(asyncio.create_task(self._pump(inbox)))
        for _ in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker()))
        logger.info(
            "router started",
            data={"kinds": sorted(self._registrations), "workers": self._workers},
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._bus is not None:
            for kind, inbox in self._inboxes.items():
                self._bus.close_queue(kind, inbox)
            self._inboxes.clear()
        logger.info("router stopped")
