"""Mapping-based idempotency for contact writes to the target platform.

Both the bulk pagination path and the real-time webhook path write
contacts through MappingService, and every successful write leaves a
mapping behind:

- Bulk: submit, wait for the platform to make the contacts visible,
  re-list them by external id and map each confirmed one. Anything not
  visible after the wait is counted as a failure, not dropped.
- Webhook create: a 409 means bulk sync (or an earlier delivery) won the
  race. The existing contact is looked up and mapped with
  ``conflict_resolved`` instead of failing the webhook.
- Phone lookups for inbound activity go mapping-first, then fall back to
  the vendor's phone search and cache the hit.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.bridge.core.monitoring import records_synced_total
from src.bridge.sync.errors import ContactNotFoundError, PhoneLookupUnsupportedError
from src.bridge.sync.repository import MappingRepository
from src.bridge.sync.schemas import (
    BulkUpsertResult,
    EntityType,
    IntegrationContext,
    KeyType,
    Mapping,
    MappingAction,
    RecordEvent,
    SyncConfig,
    SyncMethod,
    TargetContact,
    normalize_phone,
    utcnow,
)
from src.bridge.target.client import TargetConflictError, TargetPlatformClient
from src.bridge.vendors.base import CRMVendor

logger = structlog.get_logger(__name__)

CONTACT_NOT_FOUND_AFTER_BULK = "Contact not found after bulk create"


def contact_payload(contact: TargetContact) -> dict[str, Any]:
    """Target platform JSON body for a contact."""
    payload: dict[str, Any] = {
        "externalId": contact.external_id,
        "defaultFields": contact.default_fields,
    }
    if contact.source:
        payload["source"] = contact.source
    if contact.custom_fields:
        payload["customFields"] = contact.custom_fields
    return payload


def _first_phone(target_contact: dict[str, Any]) -> str | None:
    phones = (target_contact.get("defaultFields") or {}).get("phoneNumbers") or []
    return phones[0].get("value") if phones else None


class MappingService:
    """Contact writes and identity lookups backed by the mapping store.

    Args:
        integration: Integration whose mappings are read/written.
        target: Target platform client.
        mappings: MappingRepository.
        sync_config: Supplies the bulk confirmation delay.
    """

    def __init__(
        self,
        integration: IntegrationContext,
        target: TargetPlatformClient,
        mappings: MappingRepository,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self._integration = integration
        self._target = target
        self._mappings = mappings
        self._sync_config = sync_config or SyncConfig()

    @property
    def integration_id(self) -> str:
        return self._integration.integration_id

    # ── Mapping Primitives ──────────────────────────────────────────────────

    async def get_mapping(self, source_key: str) -> Mapping | None:
        return await self._mappings.get(self.integration_id, source_key)

    async def _map_contact(
        self,
        target_contact: dict[str, Any],
        sync_method: SyncMethod,
        action: MappingAction,
    ) -> Mapping:
        """Write the external-id mapping plus the phone-keyed secondary mapping."""
        external_id = str(target_contact["externalId"])
        phone = normalize_phone(_first_phone(target_contact))
        mapping = Mapping(
            integration_id=self.integration_id,
            source_key=external_id,
            key_type=KeyType.external_id,
            external_id=external_id,
            target_id=target_contact.get("id"),
            entity_type=EntityType.person,
            phone_number=phone,
            last_synced_at=utcnow(),
            sync_method=sync_method,
            action=action,
        )
        await self._mappings.upsert(mapping)
        if phone:
            await self._mappings.upsert(
                mapping.model_copy(update={"source_key": phone, "key_type": KeyType.phone})
            )
        return mapping

    # ── Bulk Path ───────────────────────────────────────────────────────────

    async def bulk_upsert_to_target(self, contacts: list[TargetContact]) -> BulkUpsertResult:
        """Bulk create contacts and map every one the platform confirms.

        The whole batch fails (``error_count == len(contacts)``) when the
        bulk submit or the confirmation listing raises.
        """
        result = BulkUpsertResult()
        if not contacts:
            return result

        try:
            await self._target.bulk_create_contacts([contact_payload(c) for c in contacts])
            await asyncio.sleep(self._sync_config.bulk_confirm_delay_seconds)

            external_ids = [c.external_id for c in contacts]
            confirmed = await self._target.list_contacts(
                external_ids, max_results=len(contacts)
            )
        except Exception as exc:
            logger.error(
                "mapping.bulk_upsert_failed",
                integration_id=self.integration_id,
                count=len(contacts),
                error=str(exc),
            )
            records_synced_total.labels(
                integration_id=self.integration_id, status="failed"
            ).inc(len(contacts))
            return BulkUpsertResult(
                error_count=len(contacts),
                errors=[{
                    "error": str(exc),
                    "timestamp": utcnow().isoformat(),
                    "contact_count": len(contacts),
                }],
            )

        confirmed_ids: set[str] = set()
        for target_contact in confirmed:
            external_id = str(target_contact.get("externalId"))
            try:
                await self._map_contact(target_contact, SyncMethod.bulk, MappingAction.created)
                confirmed_ids.add(external_id)
                result.success_count += 1
            except Exception as exc:
                logger.warning(
                    "mapping.write_failed",
                    integration_id=self.integration_id,
                    external_id=external_id,
                    error=str(exc),
                )
                confirmed_ids.add(external_id)
                result.error_count += 1
                result.errors.append({"error": str(exc), "external_id": external_id})

        for contact in contacts:
            if contact.external_id not in confirmed_ids:
                result.error_count += 1
                result.errors.append({
                    "error": CONTACT_NOT_FOUND_AFTER_BULK,
                    "external_id": contact.external_id,
                })

        records_synced_total.labels(
            integration_id=self.integration_id, status="success"
        ).inc(result.success_count)
        records_synced_total.labels(
            integration_id=self.integration_id, status="failed"
        ).inc(result.error_count)

        logger.info(
            "mapping.bulk_upserted",
            integration_id=self.integration_id,
            submitted=len(contacts),
            success=result.success_count,
            failed=result.error_count,
        )
        return result

    # ── Webhook Path ────────────────────────────────────────────────────────

    async def _find_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        found = await self._target.list_contacts([external_id], max_results=1)
        for target_contact in found:
            if str(target_contact.get("externalId")) == external_id:
                return target_contact
        return None

    async def create_contact(self, contact: TargetContact) -> Mapping:
        """Create one contact, resolving a duplicate-external-id conflict locally.

        Raises:
            TargetConflictError: Conflict reported but the existing contact
                could not be found.
            TargetPlatformError: Any other platform error (no mapping written).
        """
        try:
            created = await self._target.create_contact(contact_payload(contact))
        except TargetConflictError:
            existing = await self._find_by_external_id(contact.external_id)
            if existing is None:
                logger.error(
                    "mapping.conflict_unresolved",
                    integration_id=self.integration_id,
                    external_id=contact.external_id,
                )
                raise
            logger.info(
                "mapping.conflict_resolved",
                integration_id=self.integration_id,
                external_id=contact.external_id,
                target_id=existing.get("id"),
            )
            return await self._map_contact(
                existing, SyncMethod.webhook, MappingAction.conflict_resolved
            )

        body = {**contact_payload(contact), **created}
        return await self._map_contact(body, SyncMethod.webhook, MappingAction.created)

    async def update_contact(self, contact: TargetContact) -> Mapping:
        """Update the mapped contact, or create it when the platform has none."""
        mapping = await self.get_mapping(contact.external_id)
        target_id = mapping.target_id if mapping and mapping.action != MappingAction.deleted else None
        if target_id is None:
            existing = await self._find_by_external_id(contact.external_id)
            target_id = existing.get("id") if existing else None

        if target_id is None:
            logger.info(
                "mapping.update_fell_through_to_create",
                integration_id=self.integration_id,
                external_id=contact.external_id,
            )
            return await self.create_contact(contact)

        updated = await self._target.update_contact(target_id, contact_payload(contact))
        body = {**contact_payload(contact), **updated, "id": target_id}
        return await self._map_contact(body, SyncMethod.webhook, MappingAction.updated)

    async def delete_contact(self, external_id: str) -> Mapping | None:
        """Delete the contact with this external id. Missing contacts are ignored."""
        existing = await self._find_by_external_id(external_id)
        if existing is None:
            logger.info(
                "mapping.delete_target_missing",
                integration_id=self.integration_id,
                external_id=external_id,
            )
            return None

        await self._target.delete_contact(existing["id"])
        return await self._map_contact(existing, SyncMethod.webhook, MappingAction.deleted)

    async def apply_record_event(
        self,
        event: RecordEvent,
        external_id: str,
        contact: TargetContact | None = None,
    ) -> Mapping | None:
        """Mirror one CRM record change onto the target platform."""
        if event == RecordEvent.deleted:
            return await self.delete_contact(external_id)
        if contact is None:
            msg = f"{event.value} event for '{external_id}' requires a contact"
            raise ValueError(msg)
        if event == RecordEvent.created:
            return await self.create_contact(contact)
        return await self.update_contact(contact)

    # ── Phone Lookup ────────────────────────────────────────────────────────

    async def resolve_contact_by_phone(self, phone_number: str, vendor: CRMVendor) -> str:
        """CRM contact id for a phone number, mapping first then vendor search.

        A vendor hit is cached as a phone-keyed mapping with action
        ``backfill``.

        Raises:
            ContactNotFoundError: Neither the mappings nor the vendor know
                the number, or the vendor cannot search by phone.
        """
        phone = normalize_phone(phone_number)
        if phone is None:
            raise ContactNotFoundError(str(phone_number))

        mapping = await self.get_mapping(phone)
        if mapping is not None and mapping.external_id and mapping.action != MappingAction.deleted:
            return mapping.external_id

        try:
            found = await vendor.find_contact_by_phone(phone)
        except PhoneLookupUnsupportedError as exc:
            raise ContactNotFoundError(phone) from exc
        if not found or found.get("id") is None:
            raise ContactNotFoundError(phone)

        external_id = str(found["id"])
        await self._mappings.upsert(
            Mapping(
                integration_id=self.integration_id,
                source_key=phone,
                key_type=KeyType.phone,
                external_id=external_id,
                entity_type=EntityType.person,
                phone_number=phone,
                sync_method=SyncMethod.webhook,
                action=MappingAction.backfill,
            )
        )
        logger.info(
            "mapping.phone_backfilled",
            integration_id=self.integration_id,
            phone_number=phone,
            external_id=external_id,
        )
        return external_id

    # ── Activity Events ─────────────────────────────────────────────────────

    async def get_event_mapping(self, event_id: str) -> Mapping | None:
        return await self.get_mapping(event_id)

    async def record_event(
        self,
        event_id: str,
        activity_id: str,
        contact_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Mapping:
        """Remember that inbound event ``event_id`` produced CRM activity ``activity_id``."""
        mapping = Mapping(
            integration_id=self.integration_id,
            source_key=event_id,
            key_type=KeyType.event,
            external_id=activity_id,
            target_id=event_id,
            entity_type=EntityType.activity,
            sync_method=SyncMethod.webhook,
            action=MappingAction.created,
            data={"contact_id": contact_id, **(data or {})},
        )
        return await self._mappings.upsert(mapping)
