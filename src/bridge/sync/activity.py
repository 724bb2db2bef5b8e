"""Inbound call/message activity logging into the CRM.

The target platform may deliver the same call or message event more than
once, so every logged event leaves an event-keyed mapping and a repeat
delivery is answered with ``{"logged": False, "skipped": True,
"reason": "duplicate"}`` without touching the CRM.

Unanswered calls often get their voicemail attached a few seconds after
the webhook fires. Instead of sleeping, the call is re-enqueued as a
delayed LOG_CALL with ``voicemail_checked`` set; the continuation fetches
the voicemail and then logs.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import structlog

from src.bridge.core.monitoring import activities_logged_total
from src.bridge.sync.errors import ContactNotFoundError
from src.bridge.sync.mappings import MappingService
from src.bridge.sync.queue_manager import QueueManager
from src.bridge.sync.schemas import IntegrationContext, SyncConfig, TaskAction, normalize_phone
from src.bridge.target.client import TargetPlatformClient
from src.bridge.vendors.base import ActivityRecord, CRMVendor

logger = structlog.get_logger(__name__)

NO_ANSWER = "no-answer"


def _direction(raw: str | None) -> str:
    return "outbound" if raw in ("outgoing", "outbound") else "inbound"


def _first(value: Any) -> str | None:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


async def _nothing() -> None:
    return None


def _duplicate(kind: str, event_id: str, activity_id: str | None) -> dict[str, Any]:
    key = "message_id" if kind == "message" else "call_id"
    return {
        "logged": False,
        "skipped": True,
        "reason": "duplicate",
        key: event_id,
        "note_id": activity_id,
    }


class ActivityLogger:
    """Mirror target-platform calls and messages onto CRM contacts.

    Args:
        integration: The integration (its own numbers are not contacts).
        vendor: CRM vendor that writes the activity.
        target: Target platform client (voicemail fetch).
        mappings: MappingService for dedup and phone resolution.
        queue_manager: Used to defer the voicemail recheck.
        sync_config: Supplies the voicemail delay.
    """

    def __init__(
        self,
        integration: IntegrationContext,
        vendor: CRMVendor,
        target: TargetPlatformClient,
        mappings: MappingService,
        queue_manager: QueueManager,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self._integration = integration
        self._vendor = vendor
        self._target = target
        self._mappings = mappings
        self._queue_manager = queue_manager
        self._sync_config = sync_config or SyncConfig()

    async def _line_details(self, event: dict[str, Any]) -> dict[str, Any]:
        """Inbox and user names for the target-platform line that carried ``event``."""
        phone_number_id = event.get("phoneNumberId")
        user_id = event.get("userId")
        number, user = await asyncio.gather(
            self._target.get_phone_number(str(phone_number_id)) if phone_number_id else _nothing(),
            self._target.get_user(str(user_id)) if user_id else _nothing(),
        )

        details: dict[str, Any] = {}
        if number:
            details["inbox_name"] = number.get("name") or number.get("number")
            details["inbox_number"] = number.get("number")
        if user:
            full_name = " ".join(p for p in (user.get("firstName"), user.get("lastName")) if p)
            details["user_name"] = full_name or user.get("email")
        return details

    # ── Messages ────────────────────────────────────────────────────────────

    async def log_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Log one SMS/message event on the matching CRM contact."""
        message_id = str(message["id"])

        existing = await self._mappings.get_event_mapping(message_id)
        if existing is not None:
            logger.info("activity.duplicate_message", message_id=message_id)
            activities_logged_total.labels(
                integration_id=self._integration.integration_id,
                kind="message",
                status="duplicate",
            ).inc()
            return _duplicate("message", message_id, existing.external_id)

        outgoing = _direction(message.get("direction")) == "outbound"
        contact_phone = _first(message.get("to") if outgoing else message.get("from"))

        try:
            contact_id = await self._mappings.resolve_contact_by_phone(
                contact_phone or "", self._vendor
            )
        except ContactNotFoundError:
            logger.warning(
                "activity.contact_not_found",
                message_id=message_id,
                phone_number=contact_phone,
            )
            activities_logged_total.labels(
                integration_id=self._integration.integration_id,
                kind="message",
                status="unmatched",
            ).inc()
            return {
                "logged": False,
                "skipped": True,
                "reason": "contact_not_found",
                "message_id": message_id,
            }

        line = await self._line_details(message)
        direction = _direction(message.get("direction"))
        activity = ActivityRecord(
            contact_id=contact_id,
            direction=direction,
            title=f"Message: {direction}",
            body=message.get("text") or message.get("body") or "",
            occurred_at=_parse_time(message.get("createdAt")),
            event_id=message_id,
            metadata={"phone_number": normalize_phone(contact_phone), **line},
        )
        note_id = await self._vendor.log_message_activity(activity)
        await self._mappings.record_event(message_id, note_id, contact_id=contact_id)

        activities_logged_total.labels(
            integration_id=self._integration.integration_id,
            kind="message",
            status="logged",
        ).inc()
        logger.info(
            "activity.message_logged",
            message_id=message_id,
            contact_id=contact_id,
            note_id=note_id,
        )
        return {
            "logged": True,
            "message_id": message_id,
            "note_id": note_id,
            "contact_id": contact_id,
        }

    # ── Calls ───────────────────────────────────────────────────────────────

    def _external_participants(self, call: dict[str, Any]) -> list[str]:
        participants = list(call.get("participants") or [])
        if not participants:
            participants = [p for p in (_first(call.get("from")), _first(call.get("to"))) if p]

        external: list[str] = []
        seen: set[str] = set()
        for participant in participants:
            normalized = normalize_phone(participant)
            if normalized is None or normalized in seen:
                continue
            if self._integration.is_own_number(normalized):
                continue
            seen.add(normalized)
            external.append(normalized)
        return external

    @staticmethod
    def _call_body(call: dict[str, Any]) -> str:
        status = call.get("status") or "unknown"
        lines = [f"Status: {status}"]
        if call.get("duration"):
            lines.append(f"Duration: {call['duration']}s")
        voicemail = call.get("voicemail") or {}
        if voicemail:
            lines.append(f"Voicemail ({voicemail.get('duration', 0)}s)")
            if voicemail.get("url"):
                lines.append(f"Listen: {voicemail['url']}")
        return "\n".join(lines)

    async def log_call(
        self,
        call: dict[str, Any],
        voicemail_checked: bool = False,
    ) -> dict[str, Any]:
        """Log one call on every external participant's CRM contact.

        A ``no-answer`` call without voicemail data is deferred once by
        ``voicemail_delay_seconds``. Each participant gets its own
        ``{call_id}:{phone}`` event mapping as soon as its activity exists,
        so when one participant fails the error is raised after the others
        are logged and a redelivery only retries the failed ones.
        """
        call_id = str(call["id"])

        existing = await self._mappings.get_event_mapping(call_id)
        if existing is not None:
            logger.info("activity.duplicate_call", call_id=call_id)
            activities_logged_total.labels(
                integration_id=self._integration.integration_id,
                kind="call",
                status="duplicate",
            ).inc()
            return _duplicate("call", call_id, existing.external_id)

        if call.get("status") == NO_ANSWER and not call.get("voicemail"):
            if not voicemail_checked:
                await self._queue_manager.queue_message(
                    TaskAction.LOG_CALL,
                    {"call": call, "voicemail_checked": True},
                    delay_seconds=self._sync_config.voicemail_delay_seconds,
                )
                logger.info(
                    "activity.call_deferred_for_voicemail",
                    call_id=call_id,
                    delay_seconds=self._sync_config.voicemail_delay_seconds,
                )
                return {
                    "logged": False,
                    "deferred": True,
                    "reason": "awaiting_voicemail",
                    "call_id": call_id,
                }

            refreshed = await self._target.get_call(call_id)
            if refreshed:
                call = {**call, **refreshed}
            voicemail = await self._target.get_call_voicemails(call_id)
            if voicemail:
                call = {**call, "voicemail": voicemail}

        external = self._external_participants(call)
        if not external:
            logger.warning("activity.no_external_participants", call_id=call_id)
            return {
                "logged": False,
                "skipped": True,
                "reason": "no_external_participants",
                "call_id": call_id,
            }

        direction = _direction(call.get("direction"))
        voicemail = call.get("voicemail") or {}
        line = await self._line_details(call)
        logged: list[dict[str, str]] = []
        unmatched: list[str] = []
        failures: list[Exception] = []

        for phone in external:
            participant_key = f"{call_id}:{phone}"
            previous = await self._mappings.get_event_mapping(participant_key)
            if previous is not None:
                logged.append(
                    {
                        "phone": phone,
                        "contact_id": previous.data.get("contact_id"),
                        "activity_id": previous.external_id,
                    }
                )
                continue

            try:
                contact_id = await self._mappings.resolve_contact_by_phone(phone, self._vendor)
            except ContactNotFoundError:
                unmatched.append(phone)
                continue

            activity = ActivityRecord(
                contact_id=contact_id,
                direction=direction,
                title=f"Call: {direction} ({call.get('duration') or 0}s)",
                body=self._call_body(call),
                occurred_at=_parse_time(call.get("createdAt")),
                event_id=call_id,
                duration=call.get("duration"),
                voicemail_url=voicemail.get("url"),
                metadata={"phone_number": phone, "status": call.get("status"), **line},
            )
            try:
                activity_id = await self._vendor.log_call_activity(activity)
            except Exception as exc:
                logger.warning(
                    "activity.call_participant_failed",
                    call_id=call_id,
                    phone_number=phone,
                    error=str(exc),
                )
                failures.append(exc)
                continue

            await self._mappings.record_event(
                participant_key, activity_id, contact_id=contact_id, data={"call_id": call_id}
            )
            logged.append({"phone": phone, "contact_id": contact_id, "activity_id": activity_id})

        if failures:
            # Participants already logged carry their own mapping; a redelivery skips them.
            activities_logged_total.labels(
                integration_id=self._integration.integration_id,
                kind="call",
                status="failed",
            ).inc()
            raise failures[0]

        if logged:
            await self._mappings.record_event(
                call_id,
                logged[0]["activity_id"],
                contact_id=logged[0]["contact_id"],
                data={"activities": logged},
            )

        activities_logged_total.labels(
            integration_id=self._integration.integration_id,
            kind="call",
            status="logged" if logged else "unmatched",
        ).inc()
        logger.info(
            "activity.call_logged",
            call_id=call_id,
            logged=len(logged),
            unmatched=len(unmatched),
        )
        return {
            "logged": bool(logged),
            "call_id": call_id,
            "activities": logged,
            "unmatched": unmatched,
        }
