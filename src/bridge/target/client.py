"""Target communications platform client.

TargetPlatformClient is the interface the sync engine writes contacts
and reads calls through. HttpTargetClient implements it over the
platform's REST API with httpx, retrying transport failures with
tenacity (3 attempts, exponential backoff 1-10s). HTTP error statuses
are not retried here: they surface as TargetPlatformError, with 409
mapped to TargetConflictError so the mapping layer can resolve
create races.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

_target_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class TargetPlatformError(Exception):
    """Non-2xx response from the target platform."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class TargetConflictError(TargetPlatformError):
    """409: a record with this external id already exists."""


# ── Interface ───────────────────────────────────────────────────────────────


class TargetPlatformClient(ABC):
    """Operations the sync engine needs from the target platform."""

    @abstractmethod
    async def bulk_create_contacts(self, contacts: list[dict[str, Any]]) -> dict[str, Any]:
        """Submit contacts for asynchronous creation."""
        ...

    @abstractmethod
    async def create_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        """Create one contact. Raises TargetConflictError on a duplicate external id."""
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def delete_contact(self, contact_id: str) -> None:
        ...

    @abstractmethod
    async def list_contacts(
        self, external_ids: list[str], max_results: int = 50
    ) -> list[dict[str, Any]]:
        """Contacts whose externalId is in ``external_ids``."""
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def get_call_voicemails(self, call_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def get_phone_number(self, phone_number_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def create_webhook(self, webhook: dict[str, Any]) -> dict[str, Any]:
        ...


# ── HTTP Implementation ─────────────────────────────────────────────────────


class HttpTargetClient(TargetPlatformClient):
    """Async REST client for the target platform.

    Args:
        api_key: Platform API key, sent verbatim in the Authorization header.
        base_url: API root, e.g. ``https://api.openphone.com/v1``.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, api_key: str, base_url: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": api_key,
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client bound to the API root."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        message = f"{response.request.method} {response.request.url.path} -> {response.status_code}"
        if response.status_code == 409:
            raise TargetConflictError(message, status_code=409, body=body)
        raise TargetPlatformError(message, status_code=response.status_code, body=body)

    @_target_retry
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Any = None,
        allow_404: bool = False,
    ) -> Any:
        async with self._client() as client:
            response = await client.request(method, path, json=json, params=params)
            if allow_404 and response.status_code == 404:
                return None
            self._raise_for_status(response)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

    # ── Contacts ────────────────────────────────────────────────────────────

    async def bulk_create_contacts(self, contacts: list[dict[str, Any]]) -> dict[str, Any]:
        data = await self._request("POST", "/contacts/bulk", json={"contacts": contacts})
        logger.info("target.contacts_bulk_submitted", count=len(contacts))
        return data

    async def create_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/contacts", json=contact)
        created = data.get("data", data)
        logger.info(
            "target.contact_created",
            contact_id=created.get("id"),
            external_id=contact.get("externalId"),
        )
        return created

    async def update_contact(self, contact_id: str, contact: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PATCH", f"/contacts/{contact_id}", json=contact)
        return data.get("data", data)

    async def delete_contact(self, contact_id: str) -> None:
        await self._request("DELETE", f"/contacts/{contact_id}")
        logger.info("target.contact_deleted", contact_id=contact_id)

    async def list_contacts(
        self, external_ids: list[str], max_results: int = 50
    ) -> list[dict[str, Any]]:
        params = [("externalIds", eid) for eid in external_ids]
        params.append(("maxResults", str(max_results)))
        data = await self._request("GET", "/contacts", params=params)
        return list(data.get("data", []))

    # ── Calls / Numbers / Users ─────────────────────────────────────────────

    async def get_call(self, call_id: str) -> dict[str, Any] | None:
        data = await self._request("GET", f"/calls/{call_id}", allow_404=True)
        return data.get("data", data) if data is not None else None

    async def get_call_voicemails(self, call_id: str) -> dict[str, Any] | None:
        data = await self._request("GET", f"/call-voicemails/{call_id}", allow_404=True)
        return data.get("data", data) if data is not None else None

    async def get_phone_number(self, phone_number_id: str) -> dict[str, Any] | None:
        data = await self._request("GET", f"/phone-numbers/{phone_number_id}", allow_404=True)
        return data.get("data", data) if data is not None else None

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        data = await self._request("GET", f"/users/{user_id}", allow_404=True)
        return data.get("data", data) if data is not None else None

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def create_webhook(self, webhook: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/webhooks", json=webhook)
        created = data.get("data", data)
        logger.info("target.webhook_created", webhook_id=created.get("id"))
        return created
