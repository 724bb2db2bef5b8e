"""Sync repositories -- async persistence for processes and mappings.

Provides ProcessRepository and MappingRepository with the session_factory
callable pattern. Process documents are serialized via Pydantic
model_dump(mode="json") and deserialized via model_validate().

ProcessRepository.update is a compare-and-set on the ``version`` column:
the row is written only if nobody else wrote it since it was read,
otherwise StaleProcessError is raised and the caller re-reads.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Collection

import structlog
from sqlalchemy import desc, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.bridge.sync.errors import StaleProcessError
from src.bridge.sync.models import MappingModel, SyncProcessModel
from src.bridge.sync.schemas import (
    TERMINAL_STATES,
    Mapping,
    ProcessContext,
    ProcessResults,
    ProcessState,
    SyncProcess,
    SyncType,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


def _model_to_process(model: SyncProcessModel) -> SyncProcess:
    """Convert SyncProcessModel to SyncProcess schema."""
    return SyncProcess(
        id=str(model.id),
        integration_id=model.integration_id,
        user_id=model.user_id,
        name=model.name,
        type=model.type,
        state=ProcessState(model.state),
        context=ProcessContext.model_validate(model.context or {}),
        results=ProcessResults.model_validate(model.results or {}),
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_mapping(model: MappingModel) -> Mapping:
    """Convert MappingModel to Mapping schema."""
    return Mapping(
        integration_id=model.integration_id,
        source_key=model.source_key,
        key_type=model.key_type,
        external_id=model.external_id,
        target_id=model.target_id,
        entity_type=model.entity_type,
        phone_number=model.phone_number,
        last_synced_at=model.last_synced_at,
        sync_method=model.sync_method,
        action=model.action,
        data=model.data or {},
    )


# ── Process Repository ──────────────────────────────────────────────────────


class ProcessRepository:
    """Async store of sync processes.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, process_id: str) -> SyncProcess | None:
        """Get a process by id, or None if it does not exist."""
        pid = _parse_uuid(process_id)
        if pid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncProcessModel).where(SyncProcessModel.id == pid)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_process(model)

    async def create(self, process: SyncProcess) -> SyncProcess:
        """Insert a new process row."""
        async for session in self._session_factory():
            model = SyncProcessModel(
                id=uuid.UUID(process.id),
                integration_id=process.integration_id,
                user_id=process.user_id,
                name=process.name,
                type=process.type,
                state=process.state.value,
                context=process.context.model_dump(mode="json"),
                results=process.results.model_dump(mode="json"),
                version=process.version,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_process(model)

    async def update(self, process: SyncProcess, expected_version: int) -> SyncProcess:
        """Write state/context/results if the row is still at ``expected_version``.

        Returns:
            The process with its version bumped.

        Raises:
            StaleProcessError: The row was written by someone else first.
        """
        async for session in self._session_factory():
            stmt = (
                update(SyncProcessModel)
                .where(
                    SyncProcessModel.id == uuid.UUID(process.id),
                    SyncProcessModel.version == expected_version,
                )
                .values(
                    state=process.state.value,
                    context=process.context.model_dump(mode="json"),
                    results=process.results.model_dump(mode="json"),
                    version=expected_version + 1,
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                raise StaleProcessError(process.id, expected_version)
            return process.model_copy(update={"version": expected_version + 1})

    async def find_latest_completed(
        self,
        integration_id: str,
        object_type: str | None = None,
        sync_types: Collection[SyncType] | None = None,
    ) -> SyncProcess | None:
        """Most recently created COMPLETED process, optionally narrowed by type."""
        async for session in self._session_factory():
            stmt = select(SyncProcessModel).where(
                SyncProcessModel.integration_id == integration_id,
                SyncProcessModel.state == ProcessState.COMPLETED.value,
            )
            if object_type is not None:
                stmt = stmt.where(
                    SyncProcessModel.context["object_type"].as_string() == object_type
                )
            if sync_types:
                stmt = stmt.where(
                    SyncProcessModel.context["sync_type"].as_string().in_(
                        [sync_type.value for sync_type in sync_types]
                    )
                )
            stmt = stmt.order_by(desc(SyncProcessModel.created_at)).limit(1)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_process(model) if model is not None else None

    async def find_active(self, integration_id: str) -> list[SyncProcess]:
        """All non-terminal processes for an integration."""
        async for session in self._session_factory():
            stmt = select(SyncProcessModel).where(
                SyncProcessModel.integration_id == integration_id,
                SyncProcessModel.state.not_in([s.value for s in TERMINAL_STATES]),
            )
            result = await session.execute(stmt)
            return [_model_to_process(m) for m in result.scalars().all()]


# ── Mapping Repository ──────────────────────────────────────────────────────


class MappingRepository:
    """Async store of identity mappings keyed by (integration_id, source_key).

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get(self, integration_id: str, source_key: str) -> Mapping | None:
        async for session in self._session_factory():
            stmt = select(MappingModel).where(
                MappingModel.integration_id == integration_id,
                MappingModel.source_key == source_key,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_mapping(model) if model is not None else None

    async def upsert(self, mapping: Mapping) -> Mapping:
        """Insert or overwrite the mapping for its (integration_id, source_key)."""
        values = mapping.model_dump(mode="json")
        values["last_synced_at"] = mapping.last_synced_at
        async for session in self._session_factory():
            stmt = insert(MappingModel).values(**values)
            stmt = stmt.on_conflict_do_update(
                constraint="uq_mapping_integration_source_key",
                set_={
                    k: stmt.excluded[k]
                    for k in values
                    if k not in ("integration_id", "source_key")
                },
            )
            await session.execute(stmt)
            await session.commit()

            logger.debug(
                "mapping.upserted",
                integration_id=mapping.integration_id,
                source_key=mapping.source_key,
                action=mapping.action.value,
            )
            return mapping
