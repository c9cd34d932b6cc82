"""Durable record of inbound forwards that could not complete."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select, text, update

from .db import ensure_schema, get_session
from .models import FailedMessage

__all__ = ["FailureLedger"]


class FailureLedger:
    """Append-only inserts plus a FIFO read/delete cycle.

    Inserts may interleave freely. Consumers hold :attr:`lock` around
    ``oldest_eligible`` and the subsequent ``delete``/``mark_failed`` within one
    process, and must win :meth:`claim` before replaying a record so another
    process sharing the database cannot replay it at the same time.
    """

    def __init__(self, *, logger: Any = None) -> None:
        self._log = logger or structlog.get_logger("ledger")
        self.lock = asyncio.Lock()

    async def record(self, entry: FailedMessage) -> int | None:
        """Insert ``entry``; a storage failure is logged, never raised."""
        try:
            await ensure_schema()
            async with get_session() as session:
                session.add(entry)
                await session.commit()
                await session.refresh(entry)
        except Exception as exc:
            self._log.error("failure_record_write_failed", sender_id=entry.sender_id, error=str(exc))
            return None
        self._log.info("failure_recorded", record_id=entry.id, sender_id=entry.sender_id)
        return entry.id

    async def oldest_eligible(self, *, max_attempts: int, now: datetime | None = None) -> FailedMessage | None:
        """Return the oldest record whose backoff has elapsed and that is not parked."""
        await ensure_schema()
        moment = now or datetime.now(timezone.utc)
        async with get_session() as session:
            result = await session.execute(
                select(FailedMessage)
                .where(
                    FailedMessage.attempts < max_attempts,
                    or_(FailedMessage.next_attempt_at.is_(None), FailedMessage.next_attempt_at <= moment),
                )
                .order_by(FailedMessage.created_at.asc(), FailedMessage.id.asc())
                .limit(1)
            )
            return result.scalars().first()

    async def claim(
        self,
        record_id: int,
        *,
        max_attempts: int,
        now: datetime,
        lease_until: datetime,
    ) -> bool:
        """Lease ``record_id`` until ``lease_until`` if it is still eligible at ``now``.

        The check and the write are one UPDATE, so when several processes share
        the database exactly one of them gets ``True`` for a given record.
        """
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(
                update(FailedMessage)
                .where(
                    FailedMessage.id == record_id,
                    FailedMessage.attempts < max_attempts,
                    or_(FailedMessage.next_attempt_at.is_(None), FailedMessage.next_attempt_at <= now),
                )
                .values(next_attempt_at=lease_until)
            )
            await session.commit()
            return result.rowcount == 1

    async def delete(self, record_id: int) -> None:
        await ensure_schema()
        async with get_session() as session:
            await session.execute(delete(FailedMessage).where(FailedMessage.id == record_id))
            await session.commit()

    async def mark_failed(self, record_id: int, *, error: str, next_attempt_at: datetime | None) -> None:
        await ensure_schema()
        async with get_session() as session:
            record = await session.get(FailedMessage, record_id)
            if record is None:
                return
            record.attempts += 1
            record.error = error
            record.next_attempt_at = next_attempt_at
            session.add(record)
            await session.commit()

    async def list_records(self, *, limit: int = 50) -> list[FailedMessage]:
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(
                select(FailedMessage).order_by(FailedMessage.created_at.asc(), FailedMessage.id.asc()).limit(limit)
            )
            return list(result.scalars().all())

    async def count(self) -> int:
        await ensure_schema()
        async with get_session() as session:
            result = await session.execute(select(func.count()).select_from(FailedMessage))
            return int(result.scalar_one())

    async def purge(self) -> int:
        await ensure_schema()
        async with self.lock:
            async with get_session() as session:
                result = await session.execute(delete(FailedMessage))
                await session.commit()
                return int(result.rowcount or 0)

    async def ping(self) -> None:
        await ensure_schema()
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
