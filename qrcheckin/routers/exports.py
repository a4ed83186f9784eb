from __future__ import annotations

import csv
import io
from typing import Iterable, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from ..config import get_settings
from ..deps import get_ledger, require_admin
from ..ledger import CheckinLedger
from ..schemas import EXPORT_FIELDS
from ..utils import today_in


router = APIRouter(prefix="/admin", tags=["exports"], dependencies=[Depends(require_admin)])

BOM = "\ufeff"


def render_csv(rows: Iterable[dict], header_fields: List[str]) -> str:
    """CSV text with a leading BOM (for spreadsheet apps) and every value quoted."""
    buffer = io.StringIO()
    buffer.write(BOM)
    writer = csv.DictWriter(buffer, fieldnames=header_fields, quoting=csv.QUOTE_ALL, lineterminator="\n")
    # Header stays unquoted
    buffer.write(",".join(header_fields) + "\n")
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue()


def _stream_csv(content: str, filename: str) -> StreamingResponse:
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(
        iter([content.encode("utf-8")]),
        media_type="text/csv; charset=utf-8",
        headers=headers,
    )


@router.get("/export-checkins")
async def export_checkins(
    eventId: Optional[str] = Query(default=None),
    ledger: CheckinLedger = Depends(get_ledger),
):
    settings = get_settings()
    event_id = eventId or settings.event_id
    records = await ledger.list_checkins(event_id or None)
    content = render_csv((r.export_row() for r in records), EXPORT_FIELDS)
    filename = f"checkins-{event_id or 'all'}-{today_in(settings.timezone)}.csv"
    return _stream_csv(content, filename)
