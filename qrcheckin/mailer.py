from __future__ import annotations

import asyncio
import logging
from email.message import EmailMessage
from typing import List, Optional

import aiosmtplib

from .config import Settings, get_settings


logger = logging.getLogger("mailer")


def build_message(
    sender: str,
    recipient: str,
    subject: str,
    html: str,
    png_attachment: Optional[bytes] = None,
    attachment_name: str = "qr-code.png",
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = recipient
    msg.set_content("This message requires an HTML-capable mail client.")
    msg.add_alternative(html, subtype="html")
    if png_attachment is not None:
        msg.add_attachment(png_attachment, maintype="image", subtype="png", filename=attachment_name)
    return msg


class MailTransport:
    async def send(self, message: EmailMessage) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def verify(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class SmtpTransport(MailTransport):
    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.timeout = timeout

    def _client(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            username=self.username or None,
            password=self.password or None,
            timeout=self.timeout,
        )

    async def send(self, message: EmailMessage) -> None:
        async with self._client() as client:
            await client.send_message(message)

    async def verify(self) -> bool:
        try:
            async with self._client() as client:
                await client.noop()
            return True
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            logger.error("smtp verification failed host=%s port=%s error=%s", self.host, self.port, exc)
            return False


class MemoryTransport(MailTransport):
    """Keeps messages in a list instead of sending them; for dry runs and tests."""

    def __init__(self) -> None:
        self.outbox: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)

    async def verify(self) -> bool:
        return True


def get_transport(settings: Optional[Settings] = None) -> MailTransport:
    settings = settings or get_settings()
    return SmtpTransport(
        host=settings.smtp_host,
        port=settings.smtp_port,
        use_tls=settings.smtp_secure,
        username=settings.smtp_user,
        password=settings.smtp_pass,
        timeout=settings.smtp_timeout,
    )
