"""Shared convergence primitives: idempotent writes and dependency-chain walking."""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from .errors import AlreadyExistsError, InvalidReferenceError, NotFoundError
from .resources import Resource, Thread
from .store import ResourceStore

R = TypeVar("R", bound=Resource)
T = TypeVar("T")

DEFAULT_MAX_CHAIN_DEPTH = 32


async def ignore_not_found(aw: Awaitable[T]) -> T | None:
    """Await ``aw``; a NotFoundError yields None."""
    try:
        return await aw
    except NotFoundError:
        return None


async def get_or_none(store: ResourceStore, cls: type[R], namespace: str, name: str) -> R | None:
    """Lookup treating absence as a transient condition."""
    if not name:
        return None
    return await ignore_not_found(store.get(cls, namespace, name))


async def create_if_not_exists(store: ResourceStore, obj: R) -> R:
    """Create ``obj`` unless an object with its name exists; returns the stored copy."""
    try:
        return await store.create(obj)
    except AlreadyExistsError:
        return await store.get(type(obj), obj.namespace, obj.name)


async def create_or_update_spec(store: ResourceStore, desired: R) -> R:
    """Create ``desired``, or reconcile an existing object's spec in place."""
    existing = await get_or_none(store, type(desired), desired.namespace, desired.name)
    if existing is None:
        try:
            return await store.create(desired)
        except AlreadyExistsError:
            existing = await store.get(type(desired), desired.namespace, desired.name)
    if existing.spec != desired.spec:
        existing.spec = desired.spec.model_copy(deep=True)
        await store.update(existing)
    return existing


async def walk_parents(
    store: ResourceStore,
    thread: Thread,
    visit: Callable[[Thread], bool],
    max_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
) -> bool:
    """Walk ``thread``'s parent chain nearest-first.

    Every ancestor must be a project thread (``InvalidReferenceError``
    otherwise). ``visit`` returns False to signal the ancestor is not ready
    yet, which stops the walk and makes this return False. A missing ancestor
    propagates as NotFoundError.
    """
    seen = {thread.name}
    parent_name = thread.spec.parent_thread_name
    depth = 0
    while parent_name:
        depth += 1
        if depth > max_depth or parent_name in seen:
            raise InvalidReferenceError(f"parent chain of thread {thread.name} exceeds {max_depth} levels")
        seen.add(parent_name)

        parent = await store.get(Thread, thread.namespace, parent_name)
        if not parent.spec.project:
            raise InvalidReferenceError(f"parent thread {parent_name} is not a project")
        if not visit(parent):
            return False
        parent_name = parent.spec.parent_thread_name
    return True


async def resolve(store: ResourceStore, cls: type[R], namespace: str) -> dict[str, R]:
    """Name/alias lookup table for ``cls`` rebuilt from the store on every call.

    Names always win over aliases; among aliases the oldest object wins.
    """
    objects = await store.list(cls, namespace=namespace)
    table: dict[str, R] = {obj.name: obj for obj in objects}
    for obj in objects:
        alias = _alias_of(obj)
        if alias and alias not in table:
            table[alias] = obj
    return table


def _alias_of(obj: Resource) -> str:
    spec = getattr(obj, "spec", None)
    alias = getattr(spec, "alias", "")
    if not alias:
        manifest = getattr(spec, "manifest", None)
        alias = getattr(manifest, "alias", "") if manifest is not None else ""
    return alias or ""


async def lookup(store: ResourceStore, cls: type[R], namespace: str, ref: str) -> R:
    """Resolve a name-or-alias reference; raises NotFoundError."""
    found = await get_or_none(store, cls, namespace, ref)
    if found is not None:
        return found
    table = await resolve(store, cls, namespace)
    if ref in table:
        return table[ref]
    raise NotFoundError(cls.kind, ref, namespace)
