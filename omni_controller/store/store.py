"""ResourceStore: versioned, watchable object store keyed by (kind, namespace, name).

Writes use optimistic concurrency: every object carries the
``resource_version`` it was read at, and a write against a stale version is
rejected with ``ConflictError``. Spec and status are written through separate
calls so that a status write never clobbers a concurrent spec edit. Every
committed write publishes a change event on the kind's bus channel.
"""

from __future__ import annotations

import asyncio
import copy
from contextlib import nullcontext
from datetime import UTC, datetime
from typing import Any, Callable, NamedTuple, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from ..core.eventbus import BusEvent, EventBus
from ..errors import AlreadyExistsError, BadRequestError, ConflictError, NotFoundError
from ..logging_utils import get_logger
from ..naming import generate_name
from ..resources import Resource
from .models import ResourceField, ResourceRecord
from .types import GUID

logger = get_logger(__name__)

R = TypeVar("R", bound=Resource)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"

_GENERATE_NAME_ATTEMPTS = 5


class ObjectKey(NamedTuple):
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


def key_of(obj: Resource) -> ObjectKey:
    return ObjectKey(obj.kind, obj.namespace, obj.name)


def index_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _index_values(obj: Resource) -> dict[str, str]:
    return {field: index_value(fn(obj)) for field, fn in type(obj).field_indexes.items()}


def _load_into(obj: Resource, row: ResourceRecord) -> None:
    """Overwrite ``obj`` with the stored representation of ``row``."""
    cls = type(obj)
    fresh = cls.model_validate(
        {
            "metadata": {
                "name": row.name,
                "namespace": row.namespace,
                "uid": row.id,
                "resource_version": row.resource_version,
                "generation": row.generation,
                "creation_timestamp": row.created_at,
                "deletion_timestamp": row.deletion_timestamp,
                "annotations": copy.deepcopy(row.annotations or {}),
                "finalizers": list(row.finalizers or []),
            },
            "spec": copy.deepcopy(row.spec or {}),
            "status": copy.deepcopy(row.status or {}),
        }
    )
    obj.metadata = fresh.metadata
    obj.spec = fresh.spec
    obj.status = fresh.status


def _to_object(cls: type[R], row: ResourceRecord) -> R:
    obj = cls()
    _load_into(obj, row)
    return obj


def _sync_fields(row: ResourceRecord, values: dict[str, str]) -> None:
    """Update index rows in place; replacing the collection would re-insert the same keys."""
    existing = {f.field: f for f in row.fields}
    for field, value in values.items():
        if field in existing:
            existing[field].value = value
        else:
            row.fields.append(ResourceField(field=field, value=value))
    for field, record in existing.items():
        if field not in values:
            row.fields.remove(record)


class ResourceStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        serialize: bool = True,
    ):
        self._sf = session_factory
        self._bus = bus
        self._clock = clock or (lambda: datetime.now(UTC))
        # SQLite allows a single writer; serialize all store transactions there
        self._lock = asyncio.Lock() if serialize else None

    def now(self) -> datetime:
        return self._clock()

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()

    async def _load_row(self, session: AsyncSession, kind: str, namespace: str, name: str) -> ResourceRecord:
        result = await session.execute(
            select(ResourceRecord).where(
                ResourceRecord.kind == kind,
                ResourceRecord.namespace == namespace,
                ResourceRecord.name == name,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(kind, name, namespace)
        return row

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get(self, cls: type[R], namespace: str, name: str) -> R:
        if not name:
            raise NotFoundError(cls.kind, name, namespace)
        async with self._guard():
            async with self._sf() as session:
                row = await self._load_row(session, cls.kind, namespace, name)
                return _to_object(cls, row)

    async def list(
        self,
        cls: type[R],
        namespace: str | None = None,
        fields: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[R]:
        """List objects of a kind, optionally filtered by indexed field equality."""
        stmt = select(ResourceRecord).where(ResourceRecord.kind == cls.kind)
        if namespace is not None:
            stmt = stmt.where(ResourceRecord.namespace == namespace)
        for field, value in (fields or {}).items():
            if field not in cls.field_indexes:
                raise BadRequestError(f"field {field} is not indexed for {cls.kind}")
            idx = aliased(ResourceField)
            stmt = stmt.join(idx, idx.resource_id == ResourceRecord.id).where(
                idx.field == field, idx.value == index_value(value)
            )
        stmt = stmt.order_by(ResourceRecord.created_at, ResourceRecord.name)
        if limit:
            stmt = stmt.limit(limit)

        async with self._guard():
            async with self._sf() as session:
                result = await session.execute(stmt)
                return [_to_object(cls, row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def create(self, obj: R) -> R:
        """Persist a new object; fills name (from generate_name), uid and versions."""
        meta = obj.metadata
        if not meta.name and not meta.generate_name:
            raise BadRequestError(f"{obj.kind}: name or generate_name is required")

        attempts = 1 if meta.name else _GENERATE_NAME_ATTEMPTS
        for attempt in range(attempts):
            name = meta.name or generate_name(meta.generate_name)
            row = ResourceRecord(
                id=GUID.new(),
                kind=obj.kind,
                namespace=meta.namespace,
                name=name,
                resource_version=1,
                generation=1,
                spec=obj.spec.model_dump(mode="json"),
                status=obj.status.model_dump(mode="json"),
                annotations=dict(meta.annotations),
                finalizers=list(meta.finalizers),
                created_at=self.now(),
            )
            for field, value in _index_values(obj).items():
                row.fields.append(ResourceField(field=field, value=value))
            try:
                await self._insert(row)
            except AlreadyExistsError:
                if meta.name or attempt == attempts - 1:
                    raise
                continue
            break

        _load_into(obj, row)
        logger.debug("created %s/%s/%s", obj.kind, obj.namespace, obj.name)
        await self._publish(CREATE, obj)
        return obj

    async def _insert(self, row: ResourceRecord) -> None:
        try:
            async with self._guard():
                async with self._sf() as session:
                    async with session.begin():
                        existing = await session.execute(
                            select(ResourceRecord.id).where(
                                ResourceRecord.kind == row.kind,
                                ResourceRecord.namespace == row.namespace,
                                ResourceRecord.name == row.name,
                            )
                        )
                        if existing.scalar_one_or_none() is not None:
                            raise AlreadyExistsError(row.kind, row.name, row.namespace)
                        session.add(row)
        except IntegrityError as exc:
            raise AlreadyExistsError(row.kind, row.name, row.namespace) from exc

    async def update(self, obj: R) -> R:
        """Write metadata (annotations, finalizers) and spec. Status is left as stored."""
        meta = obj.metadata
        removed = False
        changed = False
        async with self._guard():
            async with self._sf() as session:
                async with session.begin():
                    row = await self._load_row(session, obj.kind, meta.namespace, meta.name)
                    if row.resource_version != meta.resource_version:
                        raise ConflictError(obj.kind, meta.name, meta.resource_version, row.resource_version)

                    spec = obj.spec.model_dump(mode="json")
                    annotations = dict(meta.annotations)
                    finalizers = list(meta.finalizers)
                    if spec != row.spec:
                        row.spec = spec
                        row.generation += 1
                        changed = True
                    if annotations != row.annotations:
                        row.annotations = annotations
                        changed = True
                    if finalizers != row.finalizers:
                        row.finalizers = finalizers
                        changed = True

                    if changed:
                        row.resource_version += 1
                        _sync_fields(row, _index_values(obj))
                        if row.deletion_timestamp is not None and not row.finalizers:
                            await session.delete(row)
                            removed = True

        _load_into(obj, row)
        if removed:
            await self._publish(DELETE, obj)
        elif changed:
            await self._publish(UPDATE, obj)
        return obj

    async def update_status(self, obj: R) -> R:
        """Write the status subresource only."""
        meta = obj.metadata
        changed = False
        async with self._guard():
            async with self._sf() as session:
                async with session.begin():
                    row = await self._load_row(session, obj.kind, meta.namespace, meta.name)
                    if row.resource_version != meta.resource_version:
                        raise ConflictError(obj.kind, meta.name, meta.resource_version, row.resource_version)

                    status = obj.status.model_dump(mode="json")
                    if status != row.status:
                        row.status = status
                        row.resource_version += 1
                        changed = True

        _load_into(obj, row)
        if changed:
            await self._publish(UPDATE, obj)
        return obj

    async def delete(self, obj: Resource) -> None:
        """Delete an object. Objects with finalizers are only marked for deletion."""
        meta = obj.metadata
        removed = False
        marked = False
        async with self._guard():
            async with self._sf() as session:
                async with session.begin():
                    row = await self._load_row(session, obj.kind, meta.namespace, meta.name)
                    if row.finalizers:
                        if row.deletion_timestamp is None:
                            row.deletion_timestamp = self.now()
                            row.resource_version += 1
                            marked = True
                    else:
                        await session.delete(row)
                        removed = True

        snapshot = type(obj)()
        _load_into(snapshot, row)
        if removed:
            logger.debug("deleted %s/%s/%s", obj.kind, meta.namespace, meta.name)
            await self._publish(DELETE, snapshot)
        elif marked:
            await self._publish(UPDATE, snapshot)

    async def _publish(self, change: str, obj: Resource) -> None:
        if self._bus is None:
            return
        key = f"{obj.kind}/{obj.namespace}/{obj.name}"
        await self._bus.publish(
            obj.kind,
            BusEvent(
                channel=obj.kind,
                event_id=f"{key}:{obj.metadata.resource_version}",
                data={
                    "type": change,
                    "kind": obj.kind,
                    "namespace": obj.namespace,
                    "name": obj.name,
                    "object": obj.model_copy(deep=True),
                },
            ),
        )
