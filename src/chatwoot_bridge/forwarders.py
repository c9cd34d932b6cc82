"""Move messages between the chat transport and the support desk."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol

import structlog

from .directory import ChatwootDirectory
from .errors import DirectoryError
from .identity import identity_key, sender_from_identity_key
from .ledger import FailureLedger
from .models import FailedMessage, InboundMessage, WebhookPayload
from .resolver import ContactResolver, ConversationResolver, display_name
from .shapes import source_tag_of

__all__ = ["ChatTransport", "InboundForwarder", "OutboundForwarder", "OutboundResult"]


class ChatTransport(Protocol):
    async def send_text(self, target: Any, text: str) -> None: ...

    async def resolve_peer(self, channel: str) -> Any: ...


class InboundForwarder:
    """Chat message -> contact -> conversation -> incoming message."""

    def __init__(
        self,
        directory: ChatwootDirectory,
        *,
        inbox_id: int | str,
        contacts: ContactResolver | None = None,
        conversations: ConversationResolver | None = None,
        ledger: FailureLedger | None = None,
        logger: Any = None,
    ) -> None:
        self._directory = directory
        self._inbox_id = inbox_id
        self._contacts = contacts or ContactResolver(directory)
        self._conversations = conversations or ConversationResolver(directory)
        self._ledger = ledger
        self._log = logger or structlog.get_logger("forward.inbound")

    async def forward(self, message: InboundMessage) -> bool:
        """Forward ``message``; on failure record it in the ledger and return False."""
        progress: dict[str, Any] = {}
        try:
            await self._forward(message, progress)
        except Exception as exc:
            self._log.error(
                "inbound_forward_failed",
                sender_id=message.sender_id,
                username=message.username,
                error=str(exc),
                error_type=type(exc).__name__,
                **progress,
            )
            if self._ledger is not None:
                await self._ledger.record(
                    FailedMessage(
                        sender_id=message.sender_id,
                        username=message.username or None,
                        first_name=message.first_name or None,
                        last_name=message.last_name or None,
                        phone=message.phone or None,
                        message=message.text,
                        error=f"{type(exc).__name__}: {exc}",
                        source_id=progress.get("source_id"),
                        contact_id=_str_or_none(progress.get("contact_id")),
                        inbox_id=_str_or_none(progress.get("inbox_id")),
                    )
                )
            return False
        return True

    async def replay(self, message: InboundMessage) -> None:
        """Forward ``message`` and let failures propagate to the caller."""
        await self._forward(message, {})

    async def _forward(self, message: InboundMessage, progress: dict[str, Any]) -> None:
        key = identity_key(message.sender_id)
        progress["source_id"] = key
        progress["inbox_id"] = self._inbox_id

        contact = await self._contacts.resolve(
            key,
            name=display_name(message.first_name, message.last_name, message.username),
            phone=message.phone,
        )
        contact_id = contact.get("id")
        if contact_id is None:
            raise DirectoryError("Contact resolution returned no id", operation="create_contact")
        progress["contact_id"] = contact_id

        conversation = await self._conversations.resolve(key, self._inbox_id, contact_id)
        conversation_id = conversation.get("id")
        if conversation_id is None:
            raise DirectoryError("Conversation resolution returned no id", operation="create_conversation")
        progress["conversation_id"] = conversation_id

        await self._directory.post_message(conversation_id, message.text, direction="incoming")
        self._log.info("inbound_forwarded", sender_id=message.sender_id, **progress)


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


class OutboundResult(str, Enum):
    INELIGIBLE = "ineligible"
    SKIPPED = "skipped"
    DELIVERED = "delivered"
    FAILED = "failed"


class OutboundForwarder:
    """Deliver agent replies from the support desk back to the chat sender."""

    def __init__(
        self,
        transport: ChatTransport,
        *,
        directory: ChatwootDirectory | None = None,
        logger: Any = None,
    ) -> None:
        self._transport = transport
        self._directory = directory
        self._log = logger or structlog.get_logger("forward.outbound")

    async def forward(self, event: WebhookPayload) -> OutboundResult:
        if event.message_type != "outgoing" or not event.content:
            return OutboundResult.INELIGIBLE
        # Private notes are agent-only.
        if event.private:
            self._log.info("outbound_private_note_ignored", webhook_event=event.event)
            return OutboundResult.INELIGIBLE

        conversation = event.conversation_fields()
        conversation_id = conversation.get("id")
        key = source_tag_of(conversation)
        if key is None and conversation_id is not None and self._directory is not None:
            try:
                detail = await self._directory.get_conversation_detail(conversation_id)
            except DirectoryError as exc:
                self._log.error(
                    "outbound_lookup_failed", webhook_event=event.event, conversation_id=conversation_id, error=str(exc)
                )
                return OutboundResult.FAILED
            key = source_tag_of(detail)
            self._log.info("outbound_source_tag_fetched", conversation_id=conversation_id, source_id=key)

        sender_id = sender_from_identity_key(key)
        if sender_id is None:
            self._log.info("outbound_skipped", webhook_event=event.event, conversation_id=conversation_id, source_id=key)
            return OutboundResult.SKIPPED

        try:
            await self._transport.send_text(sender_id, event.content)
        except Exception as exc:
            self._log.error(
                "outbound_delivery_failed",
                webhook_event=event.event,
                conversation_id=conversation_id,
                sender_id=sender_id,
                error=str(exc),
            )
            return OutboundResult.FAILED
        self._log.info("outbound_forwarded", webhook_event=event.event, conversation_id=conversation_id, sender_id=sender_id)
        return OutboundResult.DELIVERED
