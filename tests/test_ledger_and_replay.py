import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeChatwoot, chatwoot_settings

from chatwoot_bridge.config import ReplaySettings
from chatwoot_bridge.directory import ChatwootDirectory
from chatwoot_bridge.forwarders import InboundForwarder
from chatwoot_bridge.ledger import FailureLedger
from chatwoot_bridge.models import FailedMessage
from chatwoot_bridge.replay import FailureReplayer, backoff_delay

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _entry(sender_id: str, minutes: int = 0, **extra) -> FailedMessage:
    return FailedMessage(
        sender_id=sender_id,
        first_name="User",
        last_name=sender_id,
        message=f"hello from {sender_id}",
        error="DirectoryTimeout: slow",
        created_at=T0 + timedelta(minutes=minutes),
        **extra,
    )


def _replay_settings(**overrides) -> ReplaySettings:
    values = {"enabled": True, "interval_seconds": 60, "max_attempts": 3, "backoff_seconds": 30}
    values.update(overrides)
    return ReplaySettings(**values)


@pytest.mark.asyncio
async def test_ledger_record_list_count_and_purge(isolated_env):
    ledger = FailureLedger()
    first = await ledger.record(_entry("1", minutes=5))
    second = await ledger.record(_entry("2", minutes=1))
    assert first is not None and second is not None
    assert await ledger.count() == 2
    assert [r.sender_id for r in await ledger.list_records()] == ["2", "1"]
    assert await ledger.purge() == 2
    assert await ledger.count() == 0


@pytest.mark.asyncio
async def test_ledger_oldest_eligible_respects_backoff_and_parking(isolated_env):
    ledger = FailureLedger()
    await ledger.record(_entry("parked", minutes=0, attempts=3))
    await ledger.record(_entry("waiting", minutes=1, attempts=1, next_attempt_at=T0 + timedelta(hours=1)))
    await ledger.record(_entry("ready", minutes=2))

    record = await ledger.oldest_eligible(max_attempts=3, now=T0 + timedelta(minutes=10))
    assert record is not None and record.sender_id == "ready"

    later = await ledger.oldest_eligible(max_attempts=3, now=T0 + timedelta(hours=2))
    assert later is not None and later.sender_id == "waiting"


@pytest.mark.asyncio
async def test_ledger_mark_failed_increments_attempts(isolated_env):
    ledger = FailureLedger()
    record_id = await ledger.record(_entry("1"))
    assert record_id is not None
    await ledger.mark_failed(record_id, error="boom", next_attempt_at=T0)
    (record,) = await ledger.list_records()
    assert record.attempts == 1
    assert record.error == "boom"
    await ledger.delete(record_id)
    assert await ledger.count() == 0


@pytest.mark.asyncio
async def test_ledger_record_never_raises(isolated_env, monkeypatch):
    async def broken_schema(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr("chatwoot_bridge.ledger.ensure_schema", broken_schema)
    assert await FailureLedger().record(_entry("1")) is None


def test_backoff_doubles():
    assert backoff_delay(30, 1) == timedelta(seconds=30)
    assert backoff_delay(30, 2) == timedelta(seconds=60)
    assert backoff_delay(30, 4) == timedelta(seconds=240)


@pytest.mark.asyncio
async def test_replay_success_deletes_record_fifo(isolated_env):
    fake = FakeChatwoot()
    ledger = FailureLedger()
    await ledger.record(_entry("2", minutes=1))
    await ledger.record(_entry("1", minutes=0))
    directory = ChatwootDirectory(chatwoot_settings(), client=fake.client())
    replayer = FailureReplayer(ledger, InboundForwarder(directory, inbox_id="1"), _replay_settings())

    summary = await replayer.run_once(now=T0 + timedelta(minutes=5))
    assert summary.replayed == 2
    assert await ledger.count() == 0
    assert [m["content"] for m in fake.messages] == ["hello from 1", "hello from 2"]
    assert fake.contacts[next(iter(fake.contacts))]["name"] == "User 1"


@pytest.mark.asyncio
async def test_replay_failure_backs_off_then_parks(isolated_env):
    fake = FakeChatwoot()
    fake.fail("POST", "/contacts", 500)
    ledger = FailureLedger()
    record_id = await ledger.record(_entry("1"))
    assert record_id is not None
    directory = ChatwootDirectory(chatwoot_settings(), client=fake.client())
    settings = _replay_settings(max_attempts=2, backoff_seconds=30)
    replayer = FailureReplayer(ledger, InboundForwarder(directory, inbox_id="1"), settings)

    first = await replayer.run_once(now=T0)
    assert (first.failed, first.parked) == (1, 0)
    (record,) = await ledger.list_records()
    assert record.attempts == 1
    assert record.next_attempt_at is not None
    assert record.next_attempt_at.replace(tzinfo=timezone.utc) == T0 + timedelta(seconds=30)

    # Not yet due: the pass stops without touching it.
    assert (await replayer.run_once(now=T0 + timedelta(seconds=10))).attempted == 0

    second = await replayer.run_once(now=T0 + timedelta(seconds=31))
    assert (second.failed, second.parked) == (1, 1)
    assert await ledger.oldest_eligible(max_attempts=2, now=T0 + timedelta(days=1)) is None
    assert await ledger.count() == 1


@pytest.mark.asyncio
async def test_replay_limit(isolated_env):
    fake = FakeChatwoot()
    ledger = FailureLedger()
    for index in range(3):
        await ledger.record(_entry(str(index), minutes=index))
    directory = ChatwootDirectory(chatwoot_settings(), client=fake.client())
    replayer = FailureReplayer(ledger, InboundForwarder(directory, inbox_id="1"), _replay_settings())
    summary = await replayer.run_once(limit=2, now=T0 + timedelta(hours=1))
    assert summary.replayed == 2
    assert await ledger.count() == 1


@pytest.mark.asyncio
async def test_ledger_claim_is_exclusive_across_instances(isolated_env):
    record_id = await FailureLedger().record(_entry("1"))
    assert record_id is not None
    now = T0 + timedelta(minutes=1)
    lease = now + timedelta(minutes=5)
    first, second = FailureLedger(), FailureLedger()

    assert await first.claim(record_id, max_attempts=3, now=now, lease_until=lease) is True
    assert await second.claim(record_id, max_attempts=3, now=now, lease_until=lease) is False
    assert await second.oldest_eligible(max_attempts=3, now=now) is None
    # An expired lease makes the record claimable again.
    assert await second.claim(record_id, max_attempts=3, now=lease, lease_until=lease + timedelta(minutes=5)) is True


class SlowForwarder:
    def __init__(self) -> None:
        self.replayed: list[str] = []

    async def replay(self, message) -> None:
        self.replayed.append(message.sender_id)
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_concurrent_replayers_on_separate_ledgers_replay_once(isolated_env):
    await FailureLedger().record(_entry("1"))
    forwarder = SlowForwarder()
    replayers = [FailureReplayer(FailureLedger(), forwarder, _replay_settings()) for _ in range(2)]

    summaries = await asyncio.gather(*(r.run_once(now=T0 + timedelta(minutes=1)) for r in replayers))
    assert forwarder.replayed == ["1"]
    assert sorted(s.replayed for s in summaries) == [0, 1]
    assert await FailureLedger().count() == 0
