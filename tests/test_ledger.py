from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure project root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from qrcheckin.ledger import CheckinLedger, KeyedLocks, LedgerUnavailableError
from qrcheckin.schemas import CheckinRecord
from qrcheckin.stores import JsonlCheckinStore, SheetsCheckinStore, SqliteCheckinStore
from qrcheckin.tokens import TokenService
from tests.fakes import BrokenStore, FakeWorksheet


def _record(ts: str, email: str = "wang@x.com", nonce: str = "n1") -> CheckinRecord:
    return CheckinRecord(timestamp=ts, event_id="meet-2024", email=email, name="王小明", nonce=nonce)


def _sqlite(tmp_path: Path) -> SqliteCheckinStore:
    return SqliteCheckinStore.from_url(f"sqlite:///{tmp_path / 'ledger.sqlite'}")


def test_wang_scenario_through_primary(tmp_path: Path) -> None:
    tokens = TokenService("test-secret", current_event_id="meet-2024")
    payload = tokens.verify(tokens.issue("meet-2024", "wang@x.com", "王小明"))
    assert payload is not None
    assert (payload.event_id, payload.email, payload.name) == ("meet-2024", "wang@x.com", "王小明")

    ws = FakeWorksheet()
    ledger = CheckinLedger(primary=SheetsCheckinStore(lambda: ws), fallback=_sqlite(tmp_path))

    first = asyncio.run(ledger.record_checkin(_record("2024-01-01T10:00:00", nonce=payload.nonce)))
    second = asyncio.run(ledger.record_checkin(_record("2024-01-01T10:05:00", nonce="again")))

    assert first.is_first_time is True
    assert second.is_first_time is False
    assert second.first_checkin_at == "2024-01-01T10:00:00"
    assert len(asyncio.run(ledger.list_checkins("meet-2024"))) == 1
    assert ledger.stats.first_checkins == 1
    assert ledger.stats.repeat_checkins == 1
    assert ledger.stats.fallback_writes == 0


@pytest.mark.parametrize("local", ["sqlite", "jsonl"])
def test_fallback_when_primary_always_fails(tmp_path: Path, local: str) -> None:
    broken = BrokenStore()
    fallback = _sqlite(tmp_path) if local == "sqlite" else JsonlCheckinStore(tmp_path / "c.jsonl")
    ledger = CheckinLedger(primary=broken, fallback=fallback)

    first = asyncio.run(ledger.record_checkin(_record("2024-01-01T10:00:00")))
    second = asyncio.run(ledger.record_checkin(_record("2024-01-01T10:05:00", nonce="n2")))

    assert first.is_first_time is True
    assert second.is_first_time is False
    assert second.first_checkin_at == "2024-01-01T10:00:00"
    assert broken.attempts == 2
    assert ledger.stats.fallback_writes == 2

    records = asyncio.run(ledger.list_checkins("meet-2024"))
    assert [(r.email, r.timestamp, r.nonce) for r in records] == [("wang@x.com", "2024-01-01T10:05:00", "n2")]
    assert asyncio.run(ledger.count_for_event("meet-2024")) == 1
    assert asyncio.run(ledger.count_for_event_today("meet-2024", "2024-01-01")) == 1


def test_local_only_ledger(tmp_path: Path) -> None:
    ledger = CheckinLedger(primary=None, fallback=_sqlite(tmp_path))
    assert asyncio.run(ledger.record_checkin(_record("2024-01-01T10:00:00"))).is_first_time
    assert ledger.stats.fallback_writes == 0


def test_both_backends_failing_raises() -> None:
    ledger = CheckinLedger(primary=BrokenStore(), fallback=BrokenStore())
    with pytest.raises(LedgerUnavailableError):
        asyncio.run(ledger.record_checkin(_record("2024-01-01T10:00:00")))
    with pytest.raises(LedgerUnavailableError):
        asyncio.run(ledger.list_checkins())


def test_concurrent_scans_insert_once_on_sheets(tmp_path: Path) -> None:
    ws = FakeWorksheet()
    ledger = CheckinLedger(primary=SheetsCheckinStore(lambda: ws), fallback=_sqlite(tmp_path))

    async def scan_twice():
        return await asyncio.gather(
            ledger.record_checkin(_record("2024-01-01T10:00:00", nonce="a")),
            ledger.record_checkin(_record("2024-01-01T10:00:01", nonce="b")),
            ledger.record_checkin(_record("2024-01-01T10:00:02", nonce="c")),
        )

    results = asyncio.run(scan_twice())
    assert sum(1 for r in results if r.is_first_time) == 1
    # header + exactly one data row
    assert len(ws.rows) == 2
    assert len(ledger._locks) == 0


def test_keyed_locks_serialise_same_key_only() -> None:
    locks = KeyedLocks()
    order = []

    async def worker(key, tag, pause):
        async with locks.hold(key):
            order.append(f"{tag}-in")
            await asyncio.sleep(pause)
            order.append(f"{tag}-out")

    async def run():
        await asyncio.gather(
            worker(("e", "a@x.com"), "a1", 0.02),
            worker(("e", "a@x.com"), "a2", 0),
            worker(("e", "b@x.com"), "b1", 0),
        )

    asyncio.run(run())
    assert order.index("a1-out") < order.index("a2-in")
    assert order.index("b1-in") < order.index("a1-out")
    assert len(locks) == 0
