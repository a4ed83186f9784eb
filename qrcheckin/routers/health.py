from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ..config import APP_VERSION, get_settings
from ..deps import get_ledger, get_notifier
from ..ledger import CheckinLedger
from ..notifier import BatchNotifier
from ..utils import today_in


router = APIRouter(tags=["health"])

STARTED_AT = time.monotonic()


def uptime_seconds() -> int:
    return int(time.monotonic() - STARTED_AT)


@router.get("/healthz")
def healthz() -> dict:
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": uptime_seconds(),
        "version": APP_VERSION,
        "environment": settings.environment,
    }


@router.get("/metrics")
async def metrics(
    ledger: CheckinLedger = Depends(get_ledger),
    notifier: BatchNotifier = Depends(get_notifier),
) -> dict:
    settings = get_settings()
    today = await ledger.count_for_event_today(settings.event_id, today_in(settings.timezone))
    return {
        "todayCheckins": today,
        "firstCheckins": ledger.stats.first_checkins,
        "duplicateCheckins": ledger.stats.repeat_checkins,
        "fallbackWrites": ledger.stats.fallback_writes,
        "emailsAttempted": notifier.stats.attempted,
        "emailSuccessRate": notifier.stats.success_rate,
        "uptime": uptime_seconds(),
    }
