from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def now_in(timezone: str) -> datetime:
    return datetime.now(ZoneInfo(timezone))


def checkin_timestamp(timezone: str, when: Optional[datetime] = None) -> str:
    """Wall-clock time in the event's zone, second precision, no offset.

    Lexicographic order of these strings matches chronological order, which the
    local stores rely on for newest-first listing.
    """
    moment = when.astimezone(ZoneInfo(timezone)) if when else now_in(timezone)
    return moment.strftime(TIMESTAMP_FORMAT)


def today_in(timezone: str) -> str:
    return now_in(timezone).strftime("%Y-%m-%d")


def email_local_part(email: str) -> str:
    return (email or "").split("@", 1)[0]
