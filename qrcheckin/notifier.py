from __future__ import annotations

import asyncio
import html
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .mailer import MailTransport, build_message
from .qr import QRCodeBundle, QREncoder
from .schemas import EmailOptions, Participant, SendResult


logger = logging.getLogger("notifier")

PLACEHOLDER = re.compile(r"\{\{([^{}]*)\}\}")
PARTICIPANT_FIELDS = ("name", "email", "company", "title")


def render_template(template: str, values: Dict[str, str]) -> str:
    """Replace every ``{{key}}`` in one pass; unknown placeholders become empty.

    Substituted values are never scanned again, so placeholder-like text in
    participant data comes through as written.
    """
    return PLACEHOLDER.sub(lambda m: values.get(m.group(1)) or "", template)


def html_values(values: Dict[str, str]) -> Dict[str, str]:
    """Escape the CSV-sourced fields before they go into the HTML body."""
    escaped = dict(values)
    for key in PARTICIPANT_FIELDS:
        escaped[key] = html.escape(escaped.get(key) or "")
    return escaped


def load_template(path: Path) -> str:
    return Path(path).read_text(encoding="utf-8")


def template_values(participant: Participant, options: EmailOptions, qr: Optional[QRCodeBundle] = None) -> Dict[str, str]:
    return {
        "eventName": options.event_name,
        "eventDate": options.event_date or "",
        "eventLocation": options.event_location or "",
        "additionalInfo": options.additional_info or "",
        "name": participant.name,
        "email": participant.email,
        "company": participant.company or "",
        "title": participant.title or "",
        "qrDataUri": qr.qr_data_uri if qr else "",
        "checkinUrl": qr.checkin_url if qr else "",
    }


@dataclass
class NotifierStats:
    attempted: int = 0
    succeeded: int = 0

    @property
    def success_rate(self) -> float:
        if not self.attempted:
            return 100.0
        return round(self.succeeded / self.attempted * 100, 1)


class BatchNotifier:
    """Mails each participant their QR code, one at a time, under a rate ceiling.

    The ceiling is a fixed pause of ``1 / rate_limit`` seconds between sends.
    A failure for one participant is recorded and the batch moves on.
    """

    def __init__(
        self,
        encoder: QREncoder,
        transport: MailTransport,
        template: str,
        event_id: str,
        sender: str,
        rate_limit_per_sec: float = 3.0,
        test_mode_limit: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.encoder = encoder
        self.transport = transport
        self.template = template
        self.event_id = event_id
        self.sender = sender
        self.delay = 1.0 / rate_limit_per_sec
        self.test_mode_limit = test_mode_limit
        self.stats = NotifierStats()
        self._sleep = sleep

    async def _send_to(self, participant: Participant, options: EmailOptions) -> None:
        qr = self.encoder.encode(self.event_id, participant.email, participant.name)
        values = template_values(participant, options, qr)
        message = build_message(
            sender=options.from_address or self.sender,
            recipient=participant.email,
            subject=render_template(options.subject, values),
            html=render_template(self.template, html_values(values)),
            png_attachment=qr.qr_png if options.attach_png else None,
        )
        await self.transport.send(message)

    async def send_batch(self, participants: Sequence[Participant], options: EmailOptions) -> List[SendResult]:
        targets = list(participants)
        if options.test_mode:
            targets = targets[: self.test_mode_limit]
        logger.info("batch start total=%s test_mode=%s event_id=%s", len(targets), options.test_mode, self.event_id)

        results: List[SendResult] = []
        for index, participant in enumerate(targets):
            self.stats.attempted += 1
            try:
                await self._send_to(participant, options)
            except Exception as exc:
                logger.error("send failed email=%s error=%s", participant.email, exc)
                results.append(SendResult(email=participant.email, success=False, error=str(exc) or type(exc).__name__))
            else:
                self.stats.succeeded += 1
                logger.info("send ok email=%s", participant.email)
                results.append(SendResult(email=participant.email, success=True))
            if index < len(targets) - 1:
                await self._sleep(self.delay)

        failed = sum(1 for r in results if not r.success)
        logger.info("batch done total=%s successful=%s failed=%s", len(results), len(results) - failed, failed)
        return results

    async def send_one(self, participant: Participant, options: EmailOptions) -> SendResult:
        single = options.model_copy(update={"test_mode": False})
        results = await self.send_batch([participant], single)
        return results[0]

    async def verify_transport(self) -> bool:
        return await self.transport.verify()
