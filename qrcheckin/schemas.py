from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class APIResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


# Participants
class Participant(BaseModel):
    """One roster row. Unknown CSV columns are kept as extra fields."""

    model_config = ConfigDict(extra="allow")

    name: str
    email: str
    company: Optional[str] = None
    title: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("company", "title")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


# Check-ins
CHECKED_IN = "checked_in"

EXPORT_FIELDS = ["timestamp", "eventId", "email", "name", "company", "title", "status"]


class CheckinRecord(BaseModel):
    timestamp: str
    event_id: str
    email: str
    name: str
    company: Optional[str] = None
    title: Optional[str] = None
    nonce: str
    status: str = CHECKED_IN
    first_checkin_at: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def key(self) -> tuple:
        return (self.event_id, self.email)

    def export_row(self) -> Dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "eventId": self.event_id,
            "email": self.email,
            "name": self.name,
            "company": self.company or "",
            "title": self.title or "",
            "status": self.status,
        }


class CheckinResult(BaseModel):
    is_first_time: bool
    first_checkin_at: Optional[str] = None


# Mail
class SendResult(BaseModel):
    email: str
    success: bool
    error: Optional[str] = None


class EmailOptions(BaseModel):
    event_name: str = Field(alias="eventName")
    subject: str
    event_date: Optional[str] = Field(default=None, alias="eventDate")
    event_location: Optional[str] = Field(default=None, alias="eventLocation")
    additional_info: Optional[str] = Field(default=None, alias="additionalInfo")
    from_address: Optional[str] = Field(default=None, alias="from")
    test_mode: bool = Field(default=False, alias="testMode")
    attach_png: bool = Field(default=False, alias="attachPng")

    model_config = ConfigDict(populate_by_name=True)


class ResendRequest(EmailOptions):
    email: str


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[SendResult]


class BatchResponse(BaseModel):
    success: bool = True
    message: str
    summary: BatchSummary


class UploadResponse(BaseModel):
    success: bool = True
    version: int
    total: int
    preview: List[Dict[str, Any]]
    errors: List[str]
    duplicates: List[str]
    columns: List[str]


class StatsResponse(BaseModel):
    eventId: str
    rosterVersion: int
    totalParticipants: int
    totalCheckins: int
    todayCheckins: int
    checkInRate: str
