from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from jose import JWTError, jwt

from .config import get_settings


ALGORITHM = "HS256"

logger = logging.getLogger("tokens")


@dataclass(frozen=True)
class TokenPayload:
    event_id: str
    email: str
    name: str
    nonce: str
    issued_at: int
    expires_at: int


class TokenService:
    """Issues and verifies signed, expiring check-in tokens.

    Verification is stateless: only the shared secret and the current time are
    consulted, so tokens survive a restart. The nonce is carried for
    traceability; it is not checked against a used-nonce set, so a token can be
    scanned any number of times before it expires.
    """

    def __init__(
        self,
        secret: str,
        ttl_hours: float = 240,
        current_event_id: str = "",
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self.secret = secret
        self.ttl_seconds = int(ttl_hours * 3600)
        self.current_event_id = current_event_id
        self._clock = clock or time.time

    def issue(self, event_id: str, email: str, name: str = "") -> str:
        issued_at = int(self._clock())
        claims = {
            "eventId": event_id,
            "email": email.strip().lower(),
            "name": name or "",
            "nonce": secrets.token_hex(16),
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        return jwt.encode(claims, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str, expected_event_id: Optional[str] = None) -> Optional[TokenPayload]:
        # Falls back to the configured current event when no event is given.
        # In multi-event deployments callers should always pass expected_event_id.
        expected = expected_event_id or self.current_event_id
        if not token or not expected:
            return None
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_iat": False},
            )
            payload = TokenPayload(
                event_id=str(claims["eventId"]),
                email=str(claims["email"]),
                name=str(claims.get("name") or ""),
                nonce=str(claims["nonce"]),
                issued_at=int(claims.get("iat", 0)),
                expires_at=int(claims["exp"]),
            )
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            logger.debug("token rejected reason=%s", type(exc).__name__)
            return None
        if self._clock() >= payload.expires_at:
            logger.debug("token rejected reason=expired email=%s", payload.email)
            return None
        if payload.event_id != expected:
            logger.debug("token rejected reason=event_mismatch email=%s", payload.email)
            return None
        return payload


def get_token_service() -> TokenService:
    settings = get_settings()
    return TokenService(
        secret=settings.jwt_secret,
        ttl_hours=settings.jwt_ttl_hours,
        current_event_id=settings.event_id,
    )
