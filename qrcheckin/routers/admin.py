from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from ..config import get_settings
from ..deps import get_ledger, get_notifier, get_roster, require_admin
from ..ledger import CheckinLedger
from ..notifier import BatchNotifier
from ..roster import ParticipantRoster, parse_participants_csv
from ..schemas import (
    BatchResponse,
    BatchSummary,
    EmailOptions,
    ResendRequest,
    StatsResponse,
    UploadResponse,
)
from ..utils import today_in


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

logger = logging.getLogger("admin")

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
PREVIEW_ROWS = 20


@router.post("/upload-csv", response_model=UploadResponse)
async def upload_csv(
    csvFile: Optional[UploadFile] = File(default=None),
    roster: ParticipantRoster = Depends(get_roster),
) -> UploadResponse:
    if csvFile is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    raw = await csvFile.read()
    if len(raw) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File too large")
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded")

    parsed = parse_participants_csv(text)
    if not parsed.columns:
        raise HTTPException(status_code=400, detail=parsed.errors[0] if parsed.errors else "Invalid CSV")
    if parsed.duplicates:
        logger.warning("duplicates detected count=%s", len(parsed.duplicates))

    snapshot = roster.replace(parsed.participants)
    return UploadResponse(
        version=snapshot.version,
        total=len(snapshot),
        preview=[p.model_dump() for p in snapshot.participants[:PREVIEW_ROWS]],
        errors=parsed.errors,
        duplicates=parsed.duplicates,
        columns=parsed.columns,
    )


@router.get("/participants")
def list_participants(roster: ParticipantRoster = Depends(get_roster)) -> dict:
    snapshot = roster.current()
    return {
        "version": snapshot.version,
        "loadedAt": snapshot.loaded_at.isoformat() if snapshot.loaded_at else None,
        "total": len(snapshot),
        "items": [p.model_dump() for p in snapshot.participants],
    }


@router.post("/send-batch", response_model=BatchResponse)
async def send_batch(
    options: EmailOptions,
    roster: ParticipantRoster = Depends(get_roster),
    notifier: BatchNotifier = Depends(get_notifier),
) -> BatchResponse:
    # Hold one snapshot for the whole batch; a reload mid-send does not affect it
    snapshot = roster.current()
    if not snapshot.participants:
        raise HTTPException(status_code=400, detail="No participants loaded. Please upload CSV first.")

    results = await notifier.send_batch(snapshot.participants, options)
    successful = sum(1 for r in results if r.success)
    summary = BatchSummary(
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
        results=results,
    )
    return BatchResponse(
        message=f"Batch email send completed: {summary.successful}/{summary.total} successful",
        summary=summary,
    )


@router.post("/resend-one")
async def resend_one(
    payload: ResendRequest,
    roster: ParticipantRoster = Depends(get_roster),
    notifier: BatchNotifier = Depends(get_notifier),
) -> dict:
    participant = roster.current().find(payload.email)
    if participant is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    result = await notifier.send_one(participant, payload)
    if not result.success:
        raise HTTPException(status_code=502, detail=result.error or "Send failed")
    return {"success": True, "message": f"Email sent successfully to {participant.email}"}


@router.get("/stats", response_model=StatsResponse)
async def stats(
    roster: ParticipantRoster = Depends(get_roster),
    ledger: CheckinLedger = Depends(get_ledger),
) -> StatsResponse:
    settings = get_settings()
    event_id = settings.event_id
    total_checkins = await ledger.count_for_event(event_id)
    today_checkins = await ledger.count_for_event_today(event_id, today_in(settings.timezone))
    snapshot = roster.current()
    total = len(snapshot)
    rate = f"{total_checkins / total * 100:.1f}%" if total else "0%"
    return StatsResponse(
        eventId=event_id,
        rosterVersion=snapshot.version,
        totalParticipants=total,
        totalCheckins=total_checkins,
        todayCheckins=today_checkins,
        checkInRate=rate,
    )


@router.post("/verify-smtp")
async def verify_smtp(notifier: BatchNotifier = Depends(get_notifier)) -> dict:
    ok = await notifier.verify_transport()
    return {
        "success": ok,
        "message": "SMTP configuration is valid" if ok else "SMTP configuration failed",
    }
