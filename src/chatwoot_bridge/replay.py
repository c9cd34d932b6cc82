"""Replay failed inbound forwards from the ledger with exponential backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from .config import ReplaySettings
from .forwarders import InboundForwarder
from .ledger import FailureLedger
from .models import FailedMessage, InboundMessage

__all__ = ["FailureReplayer", "ReplaySummary", "backoff_delay"]


@dataclass(slots=True)
class ReplaySummary:
    replayed: int = 0
    failed: int = 0
    parked: int = 0

    @property
    def attempted(self) -> int:
        return self.replayed + self.failed


def backoff_delay(base_seconds: int, attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failed replays."""
    return timedelta(seconds=max(0, base_seconds) * 2 ** max(0, attempts - 1))


def _message_from_record(record: FailedMessage) -> InboundMessage:
    return InboundMessage(
        sender_id=record.sender_id or "",
        text=record.message or "",
        username=record.username or "",
        first_name=record.first_name or "",
        last_name=record.last_name or "",
        phone=record.phone or "",
    )


class FailureReplayer:
    def __init__(
        self,
        ledger: FailureLedger,
        forwarder: InboundForwarder,
        settings: ReplaySettings,
        *,
        logger: Any = None,
    ) -> None:
        self._ledger = ledger
        self._forwarder = forwarder
        self._settings = settings
        self._log = logger or structlog.get_logger("replay")

    async def run_once(self, *, limit: int | None = None, now: datetime | None = None) -> ReplaySummary:
        """Replay eligible records oldest first until none remain or ``limit`` is reached."""
        summary = ReplaySummary()
        tried: set[int] = set()
        while limit is None or summary.attempted < limit:
            moment = now or datetime.now(timezone.utc)
            async with self._ledger.lock:
                record = await self._ledger.oldest_eligible(max_attempts=self._settings.max_attempts, now=moment)
                if record is None or record.id is None or record.id in tried:
                    break
                tried.add(record.id)
                lease_until = moment + timedelta(seconds=max(1, self._settings.lease_seconds))
                claimed = await self._ledger.claim(
                    record.id,
                    max_attempts=self._settings.max_attempts,
                    now=moment,
                    lease_until=lease_until,
                )
                if not claimed:
                    self._log.info("replay_claim_lost", record_id=record.id)
                    continue
                await self._replay_one(record, moment, summary)
        if summary.attempted:
            self._log.info(
                "replay_pass_finished",
                replayed=summary.replayed,
                failed=summary.failed,
                parked=summary.parked,
            )
        return summary

    async def _replay_one(self, record: FailedMessage, moment: datetime, summary: ReplaySummary) -> None:
        assert record.id is not None
        try:
            await self._forwarder.replay(_message_from_record(record))
        except Exception as exc:
            attempts = record.attempts + 1
            parked = attempts >= self._settings.max_attempts
            next_attempt_at = None if parked else moment + backoff_delay(self._settings.backoff_seconds, attempts)
            await self._ledger.mark_failed(
                record.id,
                error=f"{type(exc).__name__}: {exc}",
                next_attempt_at=next_attempt_at,
            )
            summary.failed += 1
            if parked:
                summary.parked += 1
                self._log.warning("replay_parked", record_id=record.id, attempts=attempts, error=str(exc))
            else:
                self._log.warning(
                    "replay_failed",
                    record_id=record.id,
                    attempts=attempts,
                    next_attempt_at=next_attempt_at.isoformat() if next_attempt_at else None,
                    error=str(exc),
                )
            return
        await self._ledger.delete(record.id)
        summary.replayed += 1
        self._log.info("replay_succeeded", record_id=record.id, sender_id=record.sender_id)

    async def run_forever(self) -> None:
        interval = max(1, self._settings.interval_seconds)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log.error("replay_pass_crashed", error=str(exc))
            await asyncio.sleep(interval)
