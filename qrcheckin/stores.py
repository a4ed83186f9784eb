from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import gspread
from gspread.exceptions import WorksheetNotFound
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .database import make_engine, make_session_factory
from .models import CheckinRow
from .schemas import CHECKED_IN, CheckinRecord, CheckinResult


logger = logging.getLogger("stores")

SHEET_HEADER = ["timestamp", "eventId", "email", "name", "company", "title", "nonce", "status", "firstCheckinAt"]
SHEET_LAST_COLUMN = "I"


class StoreError(Exception):
    """A backend could not complete an operation."""

    def __init__(self, backend: str, operation: str, cause: Optional[BaseException] = None) -> None:
        self.backend = backend
        self.operation = operation
        detail = f": {cause}" if cause else ""
        super().__init__(f"{backend} {operation} failed{detail}")


def first_checkin(record: CheckinRecord) -> CheckinRecord:
    return record.model_copy(update={"first_checkin_at": record.first_checkin_at or record.timestamp})


def merge_repeat(existing: CheckinRecord, incoming: CheckinRecord) -> CheckinRecord:
    """Apply a repeat scan: refresh timestamp and nonce, keep the registration fields."""
    return existing.model_copy(
        update={
            "timestamp": incoming.timestamp,
            "nonce": incoming.nonce,
            "status": CHECKED_IN,
            "first_checkin_at": existing.first_checkin_at or existing.timestamp,
        }
    )


class CheckinStore:
    """Storage contract shared by the remote and local backends."""

    backend = "abstract"

    async def record_checkin(self, record: CheckinRecord) -> CheckinResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def list_checkins(self, event_id: Optional[str] = None) -> List[CheckinRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def count_for_event(self, event_id: str) -> int:
        return len(await self.list_checkins(event_id))

    async def count_for_event_today(self, event_id: str, today: str) -> int:
        records = await self.list_checkins(event_id)
        return sum(1 for r in records if r.timestamp.startswith(today))


# Remote: Google Sheets


def _cell(row: List[str], index: int) -> str:
    return row[index] if index < len(row) else ""


def _row_to_record(row: List[str]) -> CheckinRecord:
    return CheckinRecord(
        timestamp=_cell(row, 0),
        event_id=_cell(row, 1),
        email=_cell(row, 2),
        name=_cell(row, 3),
        company=_cell(row, 4) or None,
        title=_cell(row, 5) or None,
        nonce=_cell(row, 6),
        status=_cell(row, 7) or CHECKED_IN,
        first_checkin_at=_cell(row, 8) or None,
    )


def _record_to_row(record: CheckinRecord) -> List[str]:
    return [
        record.timestamp,
        record.event_id,
        record.email,
        record.name,
        record.company or "",
        record.title or "",
        record.nonce,
        record.status,
        record.first_checkin_at or "",
    ]


def open_worksheet(settings: Settings) -> "gspread.Worksheet":
    if settings.google_service_account_key:
        info = json.loads(base64.b64decode(settings.google_service_account_key).decode("utf-8"))
        client = gspread.service_account_from_dict(info)
    else:
        client = gspread.service_account(filename=settings.google_service_account_file)
    spreadsheet = client.open_by_key(settings.sheets_id)
    try:
        return spreadsheet.worksheet(settings.sheets_tab)
    except WorksheetNotFound:
        logger.info("creating worksheet tab=%s", settings.sheets_tab)
        return spreadsheet.add_worksheet(title=settings.sheets_tab, rows=1000, cols=len(SHEET_HEADER))


class SheetsCheckinStore(CheckinStore):
    """Check-ins kept as rows of a shared spreadsheet tab.

    The sheet has no transactions: an upsert is a full scan for the
    (eventId, email) row followed by an in-place update or an append. Callers
    serialise upserts per key; two processes writing the same key can still
    race. gspread is blocking, so each call is pushed to the threadpool.
    """

    backend = "sheets"

    def __init__(self, worksheet_factory: Callable[[], Any]) -> None:
        self._worksheet_factory = worksheet_factory
        self._worksheet: Any = None
        self._header_ready = False

    def _ws(self) -> Any:
        if self._worksheet is None:
            self._worksheet = self._worksheet_factory()
        return self._worksheet

    def _ensure_header(self, ws: Any) -> None:
        if self._header_ready:
            return
        first_row = ws.row_values(1)
        if not any(cell.strip() for cell in first_row):
            ws.update(
                values=[SHEET_HEADER],
                range_name=f"A1:{SHEET_LAST_COLUMN}1",
                value_input_option="RAW",
            )
            logger.info("header row written backend=sheets")
        self._header_ready = True

    def _upsert_sync(self, record: CheckinRecord) -> CheckinResult:
        ws = self._ws()
        self._ensure_header(ws)
        rows = ws.get_all_values()
        for row_number, row in enumerate(rows[1:], start=2):
            if _cell(row, 1) == record.event_id and _cell(row, 2).strip().lower() == record.email:
                merged = merge_repeat(_row_to_record(row), record)
                ws.update(
                    values=[_record_to_row(merged)],
                    range_name=f"A{row_number}:{SHEET_LAST_COLUMN}{row_number}",
                    value_input_option="RAW",
                )
                logger.info("checkin updated backend=sheets email=%s row=%s", record.email, row_number)
                return CheckinResult(is_first_time=False, first_checkin_at=merged.first_checkin_at)
        ws.append_row(_record_to_row(first_checkin(record)), value_input_option="RAW")
        logger.info("checkin added backend=sheets email=%s", record.email)
        return CheckinResult(is_first_time=True)

    def _list_sync(self, event_id: Optional[str]) -> List[CheckinRecord]:
        rows = self._ws().get_all_values()
        records: List[CheckinRecord] = []
        for row in rows[1:]:
            if len(row) < 8:
                continue
            record = _row_to_record(row)
            if event_id is None or record.event_id == event_id:
                records.append(record)
        return records

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(fn, *args)
        except Exception as exc:
            raise StoreError(self.backend, operation, exc) from exc

    async def record_checkin(self, record: CheckinRecord) -> CheckinResult:
        return await self._call("record_checkin", self._upsert_sync, record)

    async def list_checkins(self, event_id: Optional[str] = None) -> List[CheckinRecord]:
        return await self._call("list_checkins", self._list_sync, event_id)


# Local: SQLite through SQLAlchemy


def _row_from_model(row: CheckinRow) -> CheckinRecord:
    return CheckinRecord(
        timestamp=row.timestamp,
        event_id=row.event_id,
        email=row.email,
        name=row.name,
        company=row.company or None,
        title=row.title or None,
        nonce=row.nonce,
        status=row.status,
        first_checkin_at=row.first_checkin_at,
    )


class SqliteCheckinStore(CheckinStore):
    """Relational store; the (event_id, email) unique constraint backs the upsert.

    Queries run on the event loop thread, so statements from this process are
    executed one at a time.
    """

    backend = "sqlite"

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "SqliteCheckinStore":
        return cls(make_session_factory(make_engine(database_url)))

    def _find(self, db, event_id: str, email: str) -> Optional[CheckinRow]:
        stmt = select(CheckinRow).where(CheckinRow.event_id == event_id, CheckinRow.email == email)
        return db.execute(stmt).scalar_one_or_none()

    def _upsert(self, record: CheckinRecord) -> CheckinResult:
        with self._session_factory() as db:
            row = self._find(db, record.event_id, record.email)
            if row is None:
                db.add(
                    CheckinRow(
                        timestamp=record.timestamp,
                        event_id=record.event_id,
                        email=record.email,
                        name=record.name,
                        company=record.company,
                        title=record.title,
                        nonce=record.nonce,
                        status=record.status,
                        first_checkin_at=record.first_checkin_at or record.timestamp,
                    )
                )
                try:
                    db.commit()
                    return CheckinResult(is_first_time=True)
                except IntegrityError:
                    # Another writer inserted the same key first; treat as a repeat
                    db.rollback()
                    row = self._find(db, record.event_id, record.email)
                    if row is None:
                        raise
            first_at = row.first_checkin_at or row.timestamp
            row.timestamp = record.timestamp
            row.nonce = record.nonce
            row.status = CHECKED_IN
            row.first_checkin_at = first_at
            db.commit()
            return CheckinResult(is_first_time=False, first_checkin_at=first_at)

    async def record_checkin(self, record: CheckinRecord) -> CheckinResult:
        try:
            return self._upsert(record)
        except SQLAlchemyError as exc:
            raise StoreError(self.backend, "record_checkin", exc) from exc

    async def list_checkins(self, event_id: Optional[str] = None) -> List[CheckinRecord]:
        stmt = select(CheckinRow)
        if event_id is not None:
            stmt = stmt.where(CheckinRow.event_id == event_id)
        stmt = stmt.order_by(CheckinRow.timestamp.desc(), CheckinRow.id.desc())
        try:
            with self._session_factory() as db:
                return [_row_from_model(r) for r in db.execute(stmt).scalars().all()]
        except SQLAlchemyError as exc:
            raise StoreError(self.backend, "list_checkins", exc) from exc

    async def count_for_event(self, event_id: str) -> int:
        stmt = select(func.count()).select_from(CheckinRow).where(CheckinRow.event_id == event_id)
        try:
            with self._session_factory() as db:
                return int(db.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreError(self.backend, "count_for_event", exc) from exc

    async def count_for_event_today(self, event_id: str, today: str) -> int:
        stmt = (
            select(func.count())
            .select_from(CheckinRow)
            .where(CheckinRow.event_id == event_id, CheckinRow.timestamp.like(f"{today}%"))
        )
        try:
            with self._session_factory() as db:
                return int(db.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreError(self.backend, "count_for_event_today", exc) from exc


# Local: JSON lines


def record_to_json(record: CheckinRecord) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "timestamp": record.timestamp,
        "eventId": record.event_id,
        "email": record.email,
        "name": record.name,
        "nonce": record.nonce,
        "status": record.status,
    }
    if record.company:
        data["company"] = record.company
    if record.title:
        data["title"] = record.title
    if record.first_checkin_at:
        data["firstCheckinAt"] = record.first_checkin_at
    return data


def record_from_json(data: Dict[str, Any]) -> CheckinRecord:
    return CheckinRecord(
        timestamp=data["timestamp"],
        event_id=data["eventId"],
        email=data["email"],
        name=data.get("name") or "",
        company=data.get("company") or None,
        title=data.get("title") or None,
        nonce=data.get("nonce") or "",
        status=data.get("status") or CHECKED_IN,
        first_checkin_at=data.get("firstCheckinAt") or None,
    )


def _parse_line(line: str) -> Optional[CheckinRecord]:
    try:
        return record_from_json(json.loads(line))
    except (ValueError, KeyError, TypeError):
        return None


class JsonlCheckinStore(CheckinStore):
    """Append-only log, rewritten in full when a repeat scan updates a line."""

    backend = "jsonl"

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")
        self._lock = asyncio.Lock()

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8")
        return [line for line in text.splitlines() if line.strip()]

    def _rewrite(self, lines: List[str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def _append(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def _upsert(self, record: CheckinRecord) -> CheckinResult:
        lines = self._read_lines()
        for idx, line in enumerate(lines):
            existing = _parse_line(line)
            if existing is not None and existing.key == record.key:
                merged = merge_repeat(existing, record)
                lines[idx] = json.dumps(record_to_json(merged), ensure_ascii=False)
                self._rewrite(lines)
                return CheckinResult(is_first_time=False, first_checkin_at=merged.first_checkin_at)
        self._append(json.dumps(record_to_json(first_checkin(record)), ensure_ascii=False))
        return CheckinResult(is_first_time=True)

    async def record_checkin(self, record: CheckinRecord) -> CheckinResult:
        async with self._lock:
            try:
                return self._upsert(record)
            except OSError as exc:
                raise StoreError(self.backend, "record_checkin", exc) from exc

    async def list_checkins(self, event_id: Optional[str] = None) -> List[CheckinRecord]:
        async with self._lock:
            try:
                lines = self._read_lines()
            except OSError as exc:
                raise StoreError(self.backend, "list_checkins", exc) from exc
        records = [r for r in (_parse_line(line) for line in lines) if r is not None]
        if event_id is not None:
            records = [r for r in records if r.event_id == event_id]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)


def build_local_store(settings: Settings) -> CheckinStore:
    if settings.local_persistence == "jsonl":
        logger.info("local store backend=jsonl path=%s", settings.jsonl_path)
        return JsonlCheckinStore(settings.jsonl_path)
    logger.info("local store backend=sqlite url=%s", settings.sqlite_url)
    return SqliteCheckinStore.from_url(settings.sqlite_url)


def build_remote_store(settings: Settings) -> Optional[CheckinStore]:
    if not settings.sheets_id:
        logger.warning("remote store disabled: APP_SHEETS_ID not set")
        return None
    return SheetsCheckinStore(lambda: open_worksheet(settings))
