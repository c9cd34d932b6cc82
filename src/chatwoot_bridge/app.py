"""Composition root wiring settings, clients, forwarders and the replay worker."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from .config import Settings
from .db import ensure_schema
from .directory import ChatwootDirectory
from .forwarders import ChatTransport, InboundForwarder, OutboundForwarder
from .ledger import FailureLedger
from .replay import FailureReplayer
from .resolver import ContactResolver, ConversationResolver, KeyedLock

__all__ = ["Bridge", "build_bridge"]


@dataclass
class Bridge:
    settings: Settings
    directory: ChatwootDirectory
    ledger: FailureLedger
    inbound: InboundForwarder
    replayer: FailureReplayer
    transport: Any = None
    outbound: OutboundForwarder | None = None
    _tasks: list[asyncio.Task] = field(default_factory=list)

    async def start(self) -> None:
        log = structlog.get_logger("bridge")
        await ensure_schema(self.settings)
        if self.transport is None:
            log.warning("telegram_transport_disabled")
        elif hasattr(self.transport, "start"):
            self.transport.on_message(self.inbound.forward)
            await self.transport.start()
        if self.settings.replay.enabled:
            self._tasks.append(asyncio.create_task(self.replayer.run_forever()))
        log.info(
            "bridge_started",
            inbox_id=self.settings.chatwoot.inbox_id,
            replay_enabled=self.settings.replay.enabled,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        if self.transport is not None and hasattr(self.transport, "stop"):
            await self.transport.stop()
        await self.directory.aclose()
        structlog.get_logger("bridge").info("bridge_stopped")


def _default_transport(settings: Settings) -> Any:
    if not settings.telegram.configured:
        return None
    from .telegram import TelegramTransport

    return TelegramTransport(settings.telegram, ignore_groups=settings.chatwoot.ignore_groups)


def build_bridge(
    settings: Settings,
    *,
    transport: ChatTransport | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Bridge:
    """Assemble the bridge; ``transport`` defaults to the Telethon client when credentials exist."""
    directory = ChatwootDirectory(settings.chatwoot, client=http_client)
    locks = KeyedLock()
    ledger = FailureLedger()
    inbound = InboundForwarder(
        directory,
        inbox_id=settings.chatwoot.inbox_id,
        contacts=ContactResolver(directory, locks=locks),
        conversations=ConversationResolver(directory, page_cap=settings.chatwoot.page_cap, locks=locks),
        ledger=ledger,
    )
    resolved_transport = transport if transport is not None else _default_transport(settings)
    outbound = OutboundForwarder(resolved_transport, directory=directory) if resolved_transport is not None else None
    return Bridge(
        settings=settings,
        directory=directory,
        ledger=ledger,
        inbound=inbound,
        replayer=FailureReplayer(ledger, inbound, settings.replay),
        transport=resolved_transport,
        outbound=outbound,
    )
