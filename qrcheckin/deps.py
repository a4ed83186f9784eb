from __future__ import annotations

import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fastapi import Header, HTTPException, status

from .config import DEFAULT_EMAIL_TEMPLATE, get_settings
from .ledger import CheckinLedger
from .mailer import get_transport
from .notifier import BatchNotifier, load_template
from .qr import QREncoder
from .roster import ParticipantRoster
from .stores import build_local_store, build_remote_store
from .tokens import TokenService, get_token_service


@lru_cache(maxsize=1)
def get_tokens() -> TokenService:
    return get_token_service()


@lru_cache(maxsize=1)
def get_encoder() -> QREncoder:
    return QREncoder(get_tokens(), get_settings().base_url)


@lru_cache(maxsize=1)
def get_ledger() -> CheckinLedger:
    settings = get_settings()
    return CheckinLedger(primary=build_remote_store(settings), fallback=build_local_store(settings))


@lru_cache(maxsize=1)
def get_roster() -> ParticipantRoster:
    return ParticipantRoster()


@lru_cache(maxsize=1)
def get_notifier() -> BatchNotifier:
    settings = get_settings()
    template_path = Path(settings.email_template_path) if settings.email_template_path else DEFAULT_EMAIL_TEMPLATE
    return BatchNotifier(
        encoder=get_encoder(),
        transport=get_transport(settings),
        template=load_template(template_path),
        event_id=settings.event_id,
        sender=settings.from_address,
        rate_limit_per_sec=settings.smtp_rate_limit_per_sec,
        test_mode_limit=settings.test_mode_limit,
    )


def require_admin(authorization: Optional[str] = Header(default=None)) -> str:
    settings = get_settings()
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not secrets.compare_digest(token.encode("utf-8"), settings.admin_pass.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return token
