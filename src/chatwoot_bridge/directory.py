"""Typed operations against the Chatwoot contact and conversation resources.

Every call goes through :meth:`ChatwootDirectory._request`, which applies the
configured timeout and maps failures onto the directory error kinds:
``DirectoryTimeout`` when the call did not complete, ``DirectoryRejected``
(or its ``DirectoryConflict`` subtype) for non-2xx statuses, and
``UnrecognizedResponse`` when a 2xx payload matches none of the known shapes.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from .config import ChatwootSettings
from .errors import (
    DirectoryConflict,
    DirectoryInconsistent,
    DirectoryRejected,
    DirectoryTimeout,
    UnrecognizedResponse,
)
from .shapes import (
    CONTACT_LIST_RULES,
    CONTACT_RULES,
    CONVERSATION_LIST_RULES,
    CONVERSATION_RULES,
    INBOX_LIST_RULES,
    MESSAGE_RULES,
    extract,
)

__all__ = ["ChatwootDirectory"]

_PAYLOAD_EXCERPT_CHARS = 500


def _excerpt(payload: Any) -> str:
    text = json.dumps(payload, default=str, ensure_ascii=False) if not isinstance(payload, str) else payload
    return text[:_PAYLOAD_EXCERPT_CHARS]


def _mentions(payload: Any, needle: str) -> bool:
    if payload is None:
        return False
    return needle in _excerpt(payload).lower()


class ChatwootDirectory:
    """Account-scoped Chatwoot REST client sharing one connection pool."""

    def __init__(
        self,
        settings: ChatwootSettings,
        *,
        client: httpx.AsyncClient | None = None,
        logger: Any = None,
    ) -> None:
        self._settings = settings
        self._log = logger or structlog.get_logger("chatwoot.directory")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.timeout_seconds))
        self._headers = {
            "Content-Type": "application/json",
            "api_access_token": settings.api_key,
        }
        self._account_path = f"/api/v1/accounts/{settings.account_id}"

    async def __aenter__(self) -> ChatwootDirectory:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._settings.base_url}{self._account_path}{endpoint}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=body,
                headers=self._headers,
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise DirectoryTimeout(f"Chatwoot {operation} timed out", operation=operation) from exc
        except httpx.TransportError as exc:
            raise DirectoryTimeout(f"Chatwoot {operation} transport failure: {exc}", operation=operation) from exc

        payload: Any = {}
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text

        if response.is_success:
            return payload

        self._log.warning(
            "chatwoot_request_failed",
            operation=operation,
            status=response.status_code,
            payload=_excerpt(payload),
        )
        raise DirectoryRejected(
            f"Chatwoot API error: {response.status_code} {response.reason_phrase}",
            operation=operation,
            status_code=response.status_code,
            payload=payload,
        )

    async def list_inboxes(self) -> list[dict[str, Any]]:
        """Return the account's inboxes; doubles as a credential check."""
        raw = await self._request("GET", "/inboxes", operation="list_inboxes")
        return extract(INBOX_LIST_RULES, raw, operation="list_inboxes")

    async def create_contact(
        self,
        *,
        identifier: str,
        name: str | None = None,
        phone_number: str | None = None,
    ) -> dict[str, Any]:
        """Create a contact, reusing the existing one when the identifier is taken."""
        body: dict[str, Any] = {"name": name or identifier, "identifier": identifier}
        if phone_number:
            body["phone_number"] = phone_number
        try:
            raw = await self._request("POST", "/contacts", operation="create_contact", body=body)
        except DirectoryRejected as exc:
            # Chatwoot answers 422 for duplicates on most versions and 409 on some.
            if exc.status_code not in (409, 422):
                raise
            conflict = DirectoryConflict(
                str(exc),
                operation="create_contact",
                status_code=exc.status_code,
                payload=exc.payload,
            )
            existing = await self.find_contact_by_identifier(identifier)
            if existing is not None:
                self._log.info("contact_conflict_resolved", identifier=identifier, contact_id=existing.get("id"))
                return existing
            raise DirectoryInconsistent(
                f"Contact {identifier!r} conflicted on create but could not be found",
                operation="create_contact",
            ) from conflict
        return extract(CONTACT_RULES, raw, operation="create_contact")

    async def update_contact(
        self,
        contact_id: int | str,
        *,
        name: str | None = None,
        phone_number: str | None = None,
    ) -> dict[str, Any] | None:
        """Send only the non-empty fields; return None when there is nothing to send."""
        body: dict[str, Any] = {}
        if name and name.strip():
            body["name"] = name.strip()
        if phone_number and phone_number.strip():
            body["phone_number"] = phone_number.strip()
        if not body:
            return None
        raw = await self._request("PUT", f"/contacts/{int(contact_id)}", operation="update_contact", body=body)
        return extract(CONTACT_RULES, raw, operation="update_contact")

    async def find_contact_by_identifier(self, identifier: str) -> dict[str, Any] | None:
        """Look a contact up by exact identifier, trying search then the filtered listing."""
        lookups = (
            ("/contacts/search", {"q": identifier}),
            ("/contacts", {"identifier": identifier}),
        )
        for endpoint, params in lookups:
            try:
                raw = await self._request("GET", endpoint, operation="find_contact_by_identifier", params=params)
                candidates = extract(CONTACT_LIST_RULES, raw, operation="find_contact_by_identifier")
            except (DirectoryRejected, UnrecognizedResponse) as exc:
                # Not every deployment serves both lookups.
                self._log.debug("contact_lookup_unavailable", endpoint=endpoint, error=str(exc))
                continue
            for candidate in candidates:
                if isinstance(candidate, dict) and candidate.get("identifier") == identifier:
                    return candidate
        return None

    async def create_conversation(
        self,
        *,
        contact_id: int | str,
        inbox_id: int | str,
        source_id: str,
        include_source_id: bool = True,
    ) -> dict[str, Any]:
        """Create a conversation tagged with ``source_id``.

        With ``include_source_id=False`` the top-level unique ``source_id`` field
        is omitted and the key is only kept in ``additional_attributes`` so the
        conversation can still be traced back to its sender.
        """
        body: dict[str, Any] = {
            "contact_id": int(contact_id),
            "inbox_id": int(inbox_id),
            "additional_attributes": {"source_id": source_id},
        }
        if include_source_id:
            body["source_id"] = source_id
        try:
            raw = await self._request("POST", "/conversations", operation="create_conversation", body=body)
        except DirectoryRejected as exc:
            if exc.status_code == 409 or (exc.status_code == 422 and _mentions(exc.payload, "source")):
                raise DirectoryConflict(
                    str(exc),
                    operation="create_conversation",
                    status_code=exc.status_code,
                    payload=exc.payload,
                ) from exc
            raise
        return extract(CONVERSATION_RULES, raw, operation="create_conversation")

    async def list_conversations(
        self,
        *,
        inbox_id: int | str | None = None,
        contact_id: int | str | None = None,
        status: str = "all",
        page: int = 1,
    ) -> list[dict[str, Any]]:
        """Return one page of conversations; an empty list marks the end."""
        params: dict[str, Any] = {"status": status, "page": page}
        if inbox_id is not None:
            params["inbox_id"] = int(inbox_id)
        if contact_id is not None:
            params["contact_id"] = int(contact_id)
        raw = await self._request("GET", "/conversations", operation="list_conversations", params=params)
        items = extract(CONVERSATION_LIST_RULES, raw, operation="list_conversations")
        return [item for item in items if isinstance(item, dict)]

    async def get_conversation_detail(self, conversation_id: int | str) -> dict[str, Any]:
        raw = await self._request(
            "GET", f"/conversations/{int(conversation_id)}", operation="get_conversation_detail"
        )
        return extract(CONVERSATION_RULES, raw, operation="get_conversation_detail")

    async def post_message(
        self,
        conversation_id: int | str,
        content: str,
        *,
        direction: str = "incoming",
        private: bool = False,
    ) -> dict[str, Any]:
        body = {"content": content, "message_type": direction, "private": private}
        raw = await self._request(
            "POST",
            f"/conversations/{int(conversation_id)}/messages",
            operation="post_message",
            body=body,
        )
        return extract(MESSAGE_RULES, raw, operation="post_message")
