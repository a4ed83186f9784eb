from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from .schemas import CheckinRecord, CheckinResult
from .stores import CheckinStore, StoreError


logger = logging.getLogger("ledger")

T = TypeVar("T")


class LedgerUnavailableError(StoreError):
    """Neither the primary nor the fallback store accepted the operation."""


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class LedgerStats:
    first_checkins: int = 0
    repeat_checkins: int = 0
    fallback_writes: int = 0


class CheckinLedger:
    """Records each (event, email) check-in once; repeat scans refresh it.

    Every operation goes to the primary store first and, on any error, to the
    fallback store. Upserts for the same key are serialised in-process, which
    closes the scan-then-write race of the spreadsheet backend for a single
    worker.
    """

    def __init__(self, primary: Optional[CheckinStore], fallback: CheckinStore) -> None:
        self.primary = primary
        self.fallback = fallback
        self.stats = LedgerStats()
        self._locks = KeyedLocks()

    @property
    def backends(self) -> List[CheckinStore]:
        return [s for s in (self.primary, self.fallback) if s is not None]

    async def _with_fallback(self, operation: str, call: Callable[[CheckinStore], Awaitable[T]], email: str = "") -> Tuple[T, CheckinStore]:
        last_error: Optional[BaseException] = None
        for store in self.backends:
            try:
                return await call(store), store
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "store failed op=%s backend=%s email=%s error=%s",
                    operation,
                    store.backend,
                    email,
                    exc,
                )
        logger.error("all stores failed op=%s email=%s", operation, email)
        raise LedgerUnavailableError("ledger", operation, last_error)

    async def record_checkin(self, record: CheckinRecord) -> CheckinResult:
        async with self._locks.hold(record.key):
            result, store = await self._with_fallback(
                "record_checkin", lambda s: s.record_checkin(record), record.email
            )
        if store is not self.backends[0]:
            self.stats.fallback_writes += 1
        if result.is_first_time:
            self.stats.first_checkins += 1
        else:
            self.stats.repeat_checkins += 1
        logger.info(
            "checkin recorded event_id=%s email=%s backend=%s first_time=%s",
            record.event_id,
            record.email,
            store.backend,
            result.is_first_time,
        )
        return result

    async def list_checkins(self, event_id: Optional[str] = None) -> List[CheckinRecord]:
        # Order differs by backend: local stores are newest first, sheets keep row order
        records, _ = await self._with_fallback("list_checkins", lambda s: s.list_checkins(event_id))
        return records

    async def count_for_event(self, event_id: str) -> int:
        count, _ = await self._with_fallback("count_for_event", lambda s: s.count_for_event(event_id))
        return count

    async def count_for_event_today(self, event_id: str, today: str) -> int:
        count, _ = await self._with_fallback(
            "count_for_event_today", lambda s: s.count_for_event_today(event_id, today)
        )
        return count
