from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_EMAIL_TEMPLATE = PACKAGE_DIR / "templates" / "email.html"
APP_VERSION = "1.0.0"
DEFAULT_JWT_SECRET = "default-secret"
DEFAULT_ADMIN_PASS = "change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="APP_", case_sensitive=False)

    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    port: int = Field(default=8080)

    # Event / check-in
    base_url: str = Field(default="http://localhost:8080", description="Prefix for check-in URLs embedded in QR codes")
    event_id: str = Field(default="", description="Current event, used when no event is given explicitly")
    timezone: str = Field(default="Asia/Taipei")

    # Tokens
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    jwt_ttl_hours: int = Field(default=240)

    # Admin
    admin_pass: str = Field(default=DEFAULT_ADMIN_PASS, description="Bearer token required for /admin calls")

    # Remote store (Google Sheets)
    sheets_id: str = Field(default="", description="Spreadsheet key; empty disables the remote store")
    sheets_tab: str = Field(default="checkins")
    google_service_account_key: Optional[str] = Field(default=None, description="base64-encoded service account JSON")
    google_service_account_file: str = Field(default=str(BASE_DIR / "creds" / "service-account.json"))

    # Local store
    local_persistence: str = Field(default="sqlite", description="sqlite|jsonl")
    data_dir: str = Field(default=str(BASE_DIR / "data"))

    # SMTP
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=465)
    smtp_secure: bool = Field(default=True)
    smtp_user: str = Field(default="")
    smtp_pass: str = Field(default="")
    smtp_timeout: float = Field(default=30.0)
    from_display: str = Field(default="Event System")
    from_email: str = Field(default="")
    smtp_rate_limit_per_sec: float = Field(default=3.0)
    test_mode_limit: int = Field(default=3)
    email_template_path: Optional[str] = Field(default=None)

    @field_validator("local_persistence")
    @classmethod
    def _check_persistence(cls, value: str) -> str:
        v = (value or "").strip().lower()
        if v not in ("sqlite", "jsonl"):
            raise ValueError("local_persistence must be 'sqlite' or 'jsonl'")
        return v

    @field_validator("smtp_rate_limit_per_sec")
    @classmethod
    def _check_rate(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("smtp_rate_limit_per_sec must be positive")
        return value

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def sqlite_url(self) -> str:
        return f"sqlite:///{Path(self.data_dir) / 'checkins.sqlite'}"

    @property
    def jsonl_path(self) -> Path:
        return Path(self.data_dir) / "checkins.jsonl"

    @property
    def from_address(self) -> str:
        if not self.from_email:
            return self.from_display
        return f"{self.from_display} <{self.from_email}>"

    def insecure_defaults(self) -> List[str]:
        """Names of credentials still set to their shipped defaults."""
        found = []
        if self.jwt_secret == DEFAULT_JWT_SECRET:
            found.append("APP_JWT_SECRET")
        if self.admin_pass == DEFAULT_ADMIN_PASS:
            found.append("APP_ADMIN_PASS")
        return found


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
