"""Store SQLAlchemy ORM models: generic resource rows plus field indexes."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .types import GUID, JSONB, UTCDateTime


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# 1. resources
# ---------------------------------------------------------------------------
class ResourceRecord(Base):
    __tablename__ = "resources"
    __table_args__ = (
        UniqueConstraint("kind", "namespace", "name", name="uq_resources_kind_ns_name"),
        Index("ix_resources_kind_ns", "kind", "namespace"),
    )

    id: Mapped[str] = mapped_column(GUID(), primary_key=True, default=GUID.new)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    resource_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    spec: Mapped[dict] = mapped_column(JSONB(), nullable=False, default=dict)
    status: Mapped[dict] = mapped_column(JSONB(), nullable=False, default=dict)
    annotations: Mapped[dict] = mapped_column(JSONB(), nullable=False, default=dict)
    finalizers: Mapped[list] = mapped_column(JSONB(), nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )
    deletion_timestamp: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    fields: Mapped[list[ResourceField]] = relationship(
        back_populates="resource", cascade="all, delete-orphan", lazy="selectin"
    )


# ---------------------------------------------------------------------------
# 2. resource_fields
# ---------------------------------------------------------------------------
class ResourceField(Base):
    __tablename__ = "resource_fields"
    __table_args__ = (
        Index("ix_resource_fields_lookup", "field", "value"),
    )

    resource_id: Mapped[str] = mapped_column(
        GUID(), ForeignKey("resources.id", ondelete="CASCADE"), primary_key=True
    )
    field: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(String(253), nullable=False)

    resource: Mapped[ResourceRecord] = relationship(back_populates="fields")
