from __future__ import annotations

import html
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse

from ..config import PACKAGE_DIR, get_settings
from ..deps import get_ledger, get_roster, get_tokens
from ..ledger import CheckinLedger
from ..notifier import render_template
from ..roster import ParticipantRoster
from ..schemas import CheckinRecord, CheckinResult
from ..tokens import TokenService
from ..utils import checkin_timestamp, email_local_part


router = APIRouter(tags=["checkin"])  # public; the signed token is the credential

logger = logging.getLogger("checkin")

FIRST_TIME_MESSAGE = "報到成功！"
REPEAT_MESSAGE = "已完成報到"


@lru_cache(maxsize=None)
def _page(name: str) -> str:
    return (PACKAGE_DIR / "templates" / name).read_text(encoding="utf-8")


def failure_page() -> HTMLResponse:
    return HTMLResponse(_page("checkin-fail.html"))


def success_page(record: CheckinRecord, result: CheckinResult) -> HTMLResponse:
    extras = [v for v in (record.company, record.title) if v]
    company_info = f'<div class="info">{html.escape(" - ".join(extras))}</div>' if extras else ""
    repeat_info = ""
    if not result.is_first_time:
        repeat_info = (
            '<div class="repeat-notice">'
            f"首次報到時間：{html.escape(result.first_checkin_at or '')}<br>"
            f"本次掃碼：{html.escape(record.timestamp)}"
            "</div>"
        )
    body = render_template(
        _page("checkin-success.html"),
        {
            "name": html.escape(record.name),
            "message": FIRST_TIME_MESSAGE if result.is_first_time else REPEAT_MESSAGE,
            "companyInfo": company_info,
            "repeatInfo": repeat_info,
            "timestamp": html.escape(record.timestamp),
        },
    )
    return HTMLResponse(body)


@router.get("/checkin", response_class=HTMLResponse)
async def checkin(
    token: Optional[str] = Query(default=None),
    tokens: TokenService = Depends(get_tokens),
    ledger: CheckinLedger = Depends(get_ledger),
    roster: ParticipantRoster = Depends(get_roster),
) -> HTMLResponse:
    if not token:
        logger.warning("checkin attempt without token")
        return failure_page()
    payload = tokens.verify(token)
    if payload is None:
        logger.warning("checkin attempt with invalid token")
        return failure_page()

    try:
        participant = roster.current().find(payload.email)
        record = CheckinRecord(
            timestamp=checkin_timestamp(get_settings().timezone),
            event_id=payload.event_id,
            email=payload.email,
            name=(participant.name if participant else "") or payload.name or email_local_part(payload.email),
            company=participant.company if participant else None,
            title=participant.title if participant else None,
            nonce=payload.nonce,
        )
        result = await ledger.record_checkin(record)
    except Exception:
        logger.exception("checkin failed email=%s event_id=%s", payload.email, payload.event_id)
        return failure_page()
    return success_page(record, result)
