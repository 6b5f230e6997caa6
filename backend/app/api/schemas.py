"""
Pydantic schemas for the alert engine API.

Separated from the route handlers so they are reusable across the
codebase (routers, background workers, tests). Field names are
snake_case in Python and accepted / emitted as camelCase on the wire,
matching the stored document layout.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from backend.app.alerts.models import (
    Alert,
    Frequency,
    RecurrencePattern,
    ScheduledAlert,
    Severity,
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class AlertContent(CamelModel):
    """Fields shared by immediate and scheduled alerts."""
    title: str = Field(..., min_length=1, max_length=255, examples=["Road closure"])
    description: str = Field("", max_length=4000, examples=["Main St closed until 5pm."])
    organization_name: str = Field("", examples=["Springfield Fire Dept"])
    group_id: Optional[str] = Field(None, description="Target group; omit for all members")
    group_name: Optional[str] = Field(None, examples=["Volunteers"])
    type: str = Field("general", examples=["weather"])
    severity: Severity = Field(Severity.MEDIUM, description="low / medium / high / critical")
    posted_by: str = Field("", examples=["Chief Wiggum"])

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("group_id", "group_name")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class AlertCreateRequest(AlertContent):
    """The author is always the calling user, never a body field."""

    def to_alert(self, org_id: str, author_id: str, org_name: str = "") -> Alert:
        return Alert(
            organization_id=org_id,
            organization_name=self.organization_name or org_name,
            title=self.title,
            description=self.description,
            group_id=self.group_id,
            group_name=self.group_name,
            type=self.type,
            severity=self.severity.value,
            posted_by=self.posted_by,
            posted_by_user_id=author_id,
        )


class RecurrenceInput(CamelModel):
    frequency: Frequency = Field(..., examples=["weekly"])
    interval: int = Field(1, ge=1, le=365)
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = Field(None, ge=1)

    @field_validator("frequency", mode="before")
    @classmethod
    def _lower_frequency(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("end_date")
    @classmethod
    def _utc_end(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def to_pattern(self) -> RecurrencePattern:
        return RecurrencePattern(
            frequency=self.frequency,
            interval=self.interval,
            end_date=self.end_date,
            max_occurrences=self.max_occurrences,
        )


class ScheduledAlertCreateRequest(AlertContent):
    scheduled_date: datetime = Field(..., description="First firing time (UTC if naive)")
    is_recurring: bool = False
    recurrence_pattern: Optional[RecurrenceInput] = None
    expires_at: Optional[datetime] = None

    @field_validator("scheduled_date", "expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @model_validator(mode="after")
    def _recurrence_consistent(self) -> "ScheduledAlertCreateRequest":
        if self.is_recurring and self.recurrence_pattern is None:
            raise ValueError("recurrencePattern is required when isRecurring is true")
        return self

    def to_scheduled(self, org_id: str, author_id: str, org_name: str = "") -> ScheduledAlert:
        return ScheduledAlert(
            organization_id=org_id,
            organization_name=self.organization_name or org_name,
            title=self.title,
            description=self.description,
            scheduled_date=self.scheduled_date,
            group_id=self.group_id,
            group_name=self.group_name,
            type=self.type,
            severity=self.severity.value,
            posted_by=self.posted_by,
            posted_by_user_id=author_id,
            is_recurring=self.is_recurring,
            recurrence_pattern=(
                self.recurrence_pattern.to_pattern()
                if self.is_recurring and self.recurrence_pattern else None
            ),
            expires_at=self.expires_at,
        )


# ---------------------------------------------------------------------------
# Followers & preferences
# ---------------------------------------------------------------------------

class PreferenceUpdateRequest(CamelModel):
    enabled: bool = Field(..., description="Receive alerts for this group")


# ---------------------------------------------------------------------------
# Organization requests
# ---------------------------------------------------------------------------

class OrganizationRequestCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=255, examples=["Springfield CERT"])
    contact_person_email: str = Field("", examples=["contact@example.org"])


# ---------------------------------------------------------------------------
# Admin callables
# ---------------------------------------------------------------------------

class NotificationTestRequest(CamelModel):
    user_id: str = ""
    title: str = ""
    body: str = ""


class DeliveryTokenRequest(CamelModel):
    action: str = Field("", examples=["register"], description="register / unregister / validate")
    token: str = ""
    platform: Optional[str] = Field(None, examples=["ios"])
