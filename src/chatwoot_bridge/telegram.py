"""Telethon user-client adapter: inbound private messages and text delivery."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from telethon import TelegramClient, events
from telethon.errors import RPCError
from telethon.sessions import StringSession

from .config import TelegramSettings
from .errors import BridgeError
from .models import InboundMessage

__all__ = ["TelegramTransport", "TransportNotReady", "login_session", "message_from_event"]

MessageHandler = Callable[[InboundMessage], Awaitable[Any]]


class TransportNotReady(BridgeError):
    """The user client is not connected or its session is not authorised."""


async def message_from_event(event: Any) -> InboundMessage | None:
    """Build an ``InboundMessage`` from a NewMessage event, or None for non-text."""
    text = getattr(event, "raw_text", None) or ""
    if not text.strip():
        return None
    sender = await event.get_sender()
    sender_id = getattr(sender, "id", None) or getattr(event, "sender_id", None)
    if sender_id is None:
        return None
    return InboundMessage(
        sender_id=str(sender_id),
        text=text,
        username=getattr(sender, "username", None) or "",
        first_name=getattr(sender, "first_name", None) or "",
        last_name=getattr(sender, "last_name", None) or "",
        phone=getattr(sender, "phone", None) or "",
        is_group=not bool(getattr(event, "is_private", True)),
    )


class TelegramTransport:
    def __init__(
        self,
        settings: TelegramSettings,
        *,
        ignore_groups: bool = False,
        client: TelegramClient | None = None,
        logger: Any = None,
    ) -> None:
        self._settings = settings
        self._ignore_groups = ignore_groups
        self._client = client
        self._log = logger or structlog.get_logger("telegram")
        self._handlers: list[MessageHandler] = []

    @property
    def client(self) -> TelegramClient:
        if self._client is None:
            self._client = TelegramClient(
                StringSession(self._settings.session or None),
                self._settings.api_id,
                self._settings.api_hash,
                connection_retries=self._settings.connection_retries,
            )
        return self._client

    async def start(self) -> None:
        client = self.client
        await client.connect()
        if not await client.is_user_authorized():
            await client.disconnect()
            raise TransportNotReady("Telegram session not authorized; run `chatwoot-bridge login`")
        client.add_event_handler(self._dispatch, events.NewMessage(incoming=True))
        me = await client.get_me()
        self._log.info("telegram_connected", user_id=getattr(me, "id", None), username=getattr(me, "username", None))

    async def stop(self) -> None:
        if self._client is None:
            return
        self._client.remove_event_handler(self._dispatch)
        await self._client.disconnect()
        self._log.info("telegram_disconnected")

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def _dispatch(self, event: Any) -> None:
        try:
            message = await message_from_event(event)
        except Exception as exc:
            self._log.error("telegram_event_unreadable", error=str(exc))
            return
        if message is None:
            return
        if message.is_group and self._ignore_groups:
            self._log.debug("telegram_group_message_ignored", sender_id=message.sender_id)
            return
        for handler in self._handlers:
            try:
                await handler(message)
            except Exception as exc:
                # A failing handler must not stop Telethon's update loop.
                self._log.error("telegram_handler_failed", sender_id=message.sender_id, error=str(exc))

    async def send_text(self, target: Any, text: str) -> None:
        if isinstance(target, str) and target.lstrip("-").isdigit():
            target = int(target)
        await self.client.send_message(target, text)

    async def resolve_peer(self, channel: str) -> Any:
        """Resolve a handle to an entity, falling back to the raw identifier."""
        handle = channel.strip()
        try:
            return await self.client.get_entity(handle.lstrip("@"))
        except (ValueError, TypeError, RPCError) as exc:
            self._log.info("telegram_peer_fallback", channel=handle, error=str(exc))
        if handle.lstrip("-").isdigit():
            return int(handle)
        return handle


async def login_session(
    api_id: int,
    api_hash: str,
    *,
    phone: Callable[[], str],
    code: Callable[[], str],
    password: Callable[[], str],
) -> str:
    """Sign in interactively and return the string session to store in ``TG_SESSION``."""
    client = TelegramClient(StringSession(), api_id, api_hash)
    try:
        await client.start(phone=phone, code_callback=code, password=password)
        return client.session.save()
    finally:
        await client.disconnect()
