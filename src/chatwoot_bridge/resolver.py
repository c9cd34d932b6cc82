"""Get-or-create for support-desk contacts and conversations.

Chatwoot has no atomic get-or-create, so both resolvers follow the same
reconciliation protocol: search, attempt to create, and on a uniqueness
conflict search again for whoever won the race. An in-process lock per
identity key serialises resolution for one sender so that concurrent
messages from the same new sender rarely reach the remote side together.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from .directory import ChatwootDirectory
from .errors import DirectoryConflict, DirectoryRejected, UnrecognizedResponse
from .shapes import contact_id_of, source_tag_of

__all__ = ["ContactResolver", "ConversationResolver", "KeyedLock", "display_name", "normalize_phone"]


class KeyedLock:
    """One asyncio.Lock per key, dropped once no task holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def display_name(first_name: str | None, last_name: str | None, username: str | None) -> str:
    """Prefer "first last", then the username, then a generic label."""
    full = " ".join(part.strip() for part in (first_name, last_name) if part and part.strip())
    return full or (username or "").strip() or "Telegram User"


def normalize_phone(phone: str | None) -> str | None:
    """Return an E.164 phone number or None; Telegram omits the leading '+'."""
    raw = (phone or "").strip().replace(" ", "")
    if not raw:
        return None
    if raw.startswith("+") and raw[1:].isdigit():
        return raw
    if raw.isdigit():
        return f"+{raw}"
    return None


class ContactResolver:
    """Upsert the contact whose identifier is the sender's identity key."""

    def __init__(self, directory: ChatwootDirectory, *, locks: KeyedLock | None = None, logger: Any = None) -> None:
        self._directory = directory
        self._locks = locks or KeyedLock()
        self._log = logger or structlog.get_logger("resolver.contact")

    async def resolve(self, identity_key: str, *, name: str, phone: str | None) -> dict[str, Any]:
        phone_number = normalize_phone(phone)
        async with self._locks.hold(f"contact:{identity_key}"):
            contact = await self._directory.find_contact_by_identifier(identity_key)
            if contact is None:
                contact = await self._directory.create_contact(
                    identifier=identity_key,
                    name=name,
                    phone_number=phone_number,
                )
                self._log.info("contact_resolved", identity_key=identity_key, contact_id=contact.get("id"), created=True)
                return contact
            self._log.info("contact_resolved", identity_key=identity_key, contact_id=contact.get("id"), created=False)
            return await self._refresh(contact, name=name, phone_number=phone_number)

    async def _refresh(self, contact: dict[str, Any], *, name: str, phone_number: str | None) -> dict[str, Any]:
        current_name = str(contact.get("name") or "").strip()
        current_phone = str(contact.get("phone_number") or "").strip()
        new_name = name.strip() if name and name.strip() != current_name else None
        new_phone = phone_number if phone_number and phone_number != current_phone else None
        if new_name is None and new_phone is None:
            return contact
        try:
            updated = await self._directory.update_contact(contact["id"], name=new_name, phone_number=new_phone)
        except (DirectoryRejected, UnrecognizedResponse) as exc:
            # Stale profile fields must not block delivery.
            self._log.warning("contact_update_failed", contact_id=contact.get("id"), error=str(exc))
            return contact
        self._log.info(
            "contact_updated",
            contact_id=contact.get("id"),
            name_changed=new_name is not None,
            phone_changed=new_phone is not None,
        )
        return updated or contact


class ConversationResolver:
    """Return the single conversation tagged with an identity key in an inbox.

    Search order, first match wins:

    1. conversations of the target inbox (every status, paginated) belonging
       to the contact;
    2. after a creation conflict: all conversations, matched on the source tag
       exposed by the listing;
    3. conversation detail for listed entries whose tag was not exposed;
    4. conversations filtered by contact, listing first, detail second.

    When nothing matches after a conflict the conversation is created again
    without the top-level source tag.
    """

    def __init__(
        self,
        directory: ChatwootDirectory,
        *,
        page_cap: int = 5,
        locks: KeyedLock | None = None,
        logger: Any = None,
    ) -> None:
        self._directory = directory
        self._page_cap = max(1, page_cap)
        self._locks = locks or KeyedLock()
        self._log = logger or structlog.get_logger("resolver.conversation")

    async def resolve(self, identity_key: str, inbox_id: int | str, contact_id: int | str) -> dict[str, Any]:
        if not identity_key:
            raise ValueError("identity_key must be non-empty")
        contact = int(contact_id)
        async with self._locks.hold(f"conversation:{identity_key}:{inbox_id}"):
            existing = await self._find_in_inbox(inbox_id, contact)
            if existing is not None:
                self._log.info(
                    "conversation_found_locally",
                    identity_key=identity_key,
                    conversation_id=existing.get("id"),
                )
                return existing
            try:
                created = await self._directory.create_conversation(
                    contact_id=contact,
                    inbox_id=inbox_id,
                    source_id=identity_key,
                )
            except DirectoryConflict:
                return await self._reconcile(identity_key, inbox_id, contact)
            self._log.info("conversation_created", identity_key=identity_key, conversation_id=created.get("id"))
            return created

    async def _pages(self, **filters: Any) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield non-empty pages until an empty or repeated page, up to the cap."""
        seen: set[Any] = set()
        for page in range(1, self._page_cap + 1):
            items = await self._directory.list_conversations(status="all", page=page, **filters)
            if not items:
                return
            ids = {item.get("id") for item in items}
            if ids <= seen:
                # Deployments that ignore ``page`` keep returning the first page.
                return
            seen |= ids
            yield items

    async def _find_in_inbox(self, inbox_id: int | str, contact_id: int) -> dict[str, Any] | None:
        try:
            async for items in self._pages(inbox_id=inbox_id):
                for conversation in items:
                    if contact_id_of(conversation) == contact_id:
                        return conversation
        except UnrecognizedResponse as exc:
            # Creation plus conflict reconciliation still guarantees uniqueness.
            self._log.warning("conversation_listing_unrecognized", inbox_id=inbox_id, error=str(exc))
        return None

    async def _reconcile(self, identity_key: str, inbox_id: int | str, contact_id: int) -> dict[str, Any]:
        try:
            found, how = await self._find_by_source_tag(identity_key, contact_id)
        except UnrecognizedResponse as exc:
            self._log.warning("conversation_search_unrecognized", identity_key=identity_key, error=str(exc))
            found, how = None, "none"
        if found is not None:
            self._log.info(
                "conversation_conflict_resolved",
                identity_key=identity_key,
                conversation_id=found.get("id"),
                via=how,
            )
            return found
        self._log.warning("conversation_created_without_source_tag", identity_key=identity_key, inbox_id=inbox_id)
        return await self._directory.create_conversation(
            contact_id=contact_id,
            inbox_id=inbox_id,
            source_id=identity_key,
            include_source_id=False,
        )

    async def _find_by_source_tag(self, identity_key: str, contact_id: int) -> tuple[dict[str, Any] | None, str]:
        untagged: list[dict[str, Any]] = []
        async for items in self._pages():
            for conversation in items:
                tag = source_tag_of(conversation)
                if tag == identity_key:
                    return conversation, "listing"
                if tag is None:
                    untagged.append(conversation)

        found = await self._scan_details(untagged, identity_key)
        if found is not None:
            return found, "detail"

        by_contact: list[dict[str, Any]] = []
        async for items in self._pages(contact_id=contact_id):
            for conversation in items:
                if source_tag_of(conversation) == identity_key:
                    return conversation, "contact_listing"
                by_contact.append(conversation)
        found = await self._scan_details(by_contact, identity_key)
        if found is not None:
            return found, "contact_detail"
        return None, "none"

    async def _scan_details(self, conversations: list[dict[str, Any]], identity_key: str) -> dict[str, Any] | None:
        for conversation in conversations:
            conversation_id = conversation.get("id")
            if conversation_id is None:
                continue
            try:
                detail = await self._directory.get_conversation_detail(conversation_id)
            except (DirectoryRejected, UnrecognizedResponse) as exc:
                self._log.debug("conversation_detail_failed", conversation_id=conversation_id, error=str(exc))
                continue
            if source_tag_of(detail) == identity_key:
                self._log.info("conversation_found_in_detail_scan", conversation_id=conversation_id)
                return detail
        return None
