"""Sync persistence models.

Two SQLAlchemy models:
- SyncProcessModel: one row per sync run, context/results as JSON documents
  guarded by an integer version column for optimistic concurrency
- MappingModel: external identity -> target identity links, unique per
  (integration_id, source_key)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.bridge.core.database import Base


class SyncProcessModel(Base):
    """Persisted sync process.

    ``context`` and ``results`` hold the pydantic ProcessContext and
    ProcessResults documents serialized with ``model_dump(mode="json")``.
    """

    __tablename__ = "sync_processes"
    __table_args__ = (
        Index("ix_sync_processes_integration_state", "integration_id", "state"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    integration_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="CRM_SYNC")
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    context: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    results: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class MappingModel(Base):
    """External identity to target-platform identity link."""

    __tablename__ = "sync_mappings"
    __table_args__ = (
        UniqueConstraint(
            "integration_id",
            "source_key",
            name="uq_mapping_integration_source_key",
        ),
        Index("ix_sync_mappings_external_id", "integration_id", "external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    integration_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source_key: Mapped[str] = mapped_column(String(300), nullable=False)
    key_type: Mapped[str] = mapped_column(String(20), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(300), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(300), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    sync_method: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    data: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
