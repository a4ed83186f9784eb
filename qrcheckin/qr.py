from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from typing import Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from PIL import Image

from .tokens import TokenService
from .utils import email_local_part


logger = logging.getLogger("qr")

QR_SIZE_PX = 256
QR_BORDER = 1


@dataclass(frozen=True)
class QRCodeBundle:
    token: str
    checkin_url: str
    qr_data_uri: str
    qr_png: bytes


def render_png(data: str, size: int = QR_SIZE_PX) -> bytes:
    """Render ``data`` as a black-on-white PNG of ``size`` x ``size`` pixels."""
    code = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_M, box_size=10, border=QR_BORDER)
    code.add_data(data)
    code.make(fit=True)
    image = code.make_image(fill_color="black", back_color="white").get_image().convert("RGB")
    image = image.resize((size, size), Image.Resampling.NEAREST)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_uri(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


class QREncoder:
    def __init__(self, tokens: TokenService, base_url: str, size: int = QR_SIZE_PX) -> None:
        self.tokens = tokens
        self.base_url = base_url.rstrip("/")
        self.size = size

    def checkin_url(self, token: str) -> str:
        return f"{self.base_url}/checkin?token={token}"

    def encode(self, event_id: str, email: str, name: Optional[str] = None) -> QRCodeBundle:
        token = self.tokens.issue(event_id, email, name or email_local_part(email))
        url = self.checkin_url(token)
        png = render_png(url, self.size)
        logger.debug("qr encoded event_id=%s email=%s bytes=%s", event_id, email, len(png))
        return QRCodeBundle(token=token, checkin_url=url, qr_data_uri=png_data_uri(png), qr_png=png)
