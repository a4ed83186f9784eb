from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .schemas import Participant


logger = logging.getLogger("roster")

REQUIRED_COLUMNS = ("name", "email")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class RosterImport:
    participants: List[Participant] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def parse_participants_csv(text: str) -> RosterImport:
    """Parse a participant CSV into a roster import.

    Bad rows are reported as ``Line N: ...`` diagnostics (N counts data rows
    from 1) and skipped; valid rows are kept. Missing required columns abort
    the whole file with a single error.
    """
    result = RosterImport()
    text = text.lstrip("\ufeff")
    if not text.strip():
        result.errors.append("Empty CSV file")
        return result

    reader = csv.DictReader(io.StringIO(text), skipinitialspace=True)
    raw_headers = reader.fieldnames or []
    headers = [(h or "").strip().lower() for h in raw_headers]
    missing = [c for c in REQUIRED_COLUMNS if c not in headers]
    if missing:
        result.errors.append(f"Missing required columns: {', '.join(missing)}")
        return result
    result.columns = headers

    line_number = 0
    for raw in reader:
        if not any((v or "").strip() for v in raw.values() if isinstance(v, str)):
            continue
        line_number += 1
        row: Dict[str, str] = {}
        for key, value in raw.items():
            if key is None:
                continue
            row[key.strip().lower()] = (value or "").strip()
        name = row.get("name", "")
        email = row.get("email", "")
        if not name or not email:
            result.errors.append(f"Line {line_number}: Missing required fields (name, email)")
            continue
        if not is_valid_email(email):
            result.errors.append(f"Line {line_number}: Invalid email format: {email}")
            continue
        try:
            result.participants.append(Participant(**row))
        except ValidationError as exc:
            result.errors.append(f"Line {line_number}: {exc.errors()[0].get('msg', 'invalid row')}")

    result.duplicates = detect_duplicates(result.participants)
    if result.errors:
        logger.warning("csv rows rejected count=%s", len(result.errors))
    return result


def detect_duplicates(participants: Sequence[Participant]) -> List[str]:
    seen: Dict[str, int] = {}
    duplicates: List[str] = []
    for index, p in enumerate(participants):
        if p.email in seen:
            duplicates.append(
                f"Duplicate email at line {index + 1}: {p.email} (first seen at line {seen[p.email] + 1})"
            )
        else:
            seen[p.email] = index
    return duplicates


@dataclass(frozen=True)
class RosterSnapshot:
    version: int
    participants: Tuple[Participant, ...] = ()
    loaded_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self.participants)

    def find(self, email: str) -> Optional[Participant]:
        key = (email or "").strip().lower()
        for p in self.participants:
            if p.email == key:
                return p
        return None


class ParticipantRoster:
    """Holds the currently loaded participant list.

    A reload swaps in a new immutable snapshot; anyone still holding the old
    one keeps reading it unchanged.
    """

    def __init__(self) -> None:
        self._snapshot = RosterSnapshot(version=0)

    def current(self) -> RosterSnapshot:
        return self._snapshot

    def replace(self, participants: Sequence[Participant]) -> RosterSnapshot:
        snapshot = RosterSnapshot(
            version=self._snapshot.version + 1,
            participants=tuple(participants),
            loaded_at=datetime.now(timezone.utc),
        )
        self._snapshot = snapshot
        logger.info("roster replaced version=%s total=%s", snapshot.version, len(snapshot))
        return snapshot
