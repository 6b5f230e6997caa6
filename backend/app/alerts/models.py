"""
models.py — Shared data structures for the alert fan-out engine.

Defines:
    • Severity          — alert severity levels + notification title prefix
    • Frequency         — recurrence units for scheduled alerts
    • Follower          — (organization, user) follow record + group preferences
    • UserRecord        — delivery-token holder
    • Alert             — a posted alert and its delivery status fields
    • RecurrencePattern — frequency / interval / bounds
    • ScheduledAlert    — an alert definition that fires at a future time
    • PushMessage       — one push notification addressed to one token
    • DispatchResult    — aggregated success / failure counts

═══════════════════════════════════════════════════════════════════════════
PREFERENCE SEMANTICS
═══════════════════════════════════════════════════════════════════════════

    Follower.group_preferences      Meaning
    ──────────────────────────      ─────────────────────────────────────
    None                            preference document missing entirely
    {}                              document exists, nothing set yet
    {"g1": True}                    explicitly enabled for g1
    {"g1": False}                   explicitly disabled for g1
    key absent                      unset (≠ False) → opt-out-by-default

Records serialise to camelCase dicts (``to_dict``) matching the document
layout clients read: organizations/{orgId}/alerts/{alertId} etc.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    """Alert severity as posted by the organization."""
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Severity"]:
        """Case-insensitive lookup; unknown values map to None."""
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# Notification title prefixes; unknown severities use the low prefix
SEVERITY_PREFIXES: Dict[Severity, str] = {
    Severity.CRITICAL: "🚨 CRITICAL: ",
    Severity.HIGH:     "⚠️ HIGH PRIORITY: ",
    Severity.MEDIUM:   "📢 ",
    Severity.LOW:      "ℹ️ ",
}
DEFAULT_SEVERITY_PREFIX = "ℹ️ "


class Frequency(str, Enum):
    """Recurrence unit for scheduled alerts."""
    DAILY   = "daily"
    WEEKLY  = "weekly"
    MONTHLY = "monthly"
    YEARLY  = "yearly"


class TokenStatus(str, Enum):
    ACTIVE       = "active"
    UNREGISTERED = "unregistered"
    INVALID      = "invalid"


class ScheduledAlertState(str, Enum):
    """Derived lifecycle state of a ScheduledAlert."""
    PENDING            = "pending"
    DUE                = "due"
    FIRED_ONCE         = "fired-once"
    RECURRING_ADVANCED = "recurring-advanced"
    RECURRENCE_ENDED   = "recurrence-ended"
    INACTIVE           = "inactive"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_id() -> str:
    return uuid.uuid4().hex[:20]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def is_valid_token(token: Any, min_length: int = 100) -> bool:
    """A usable delivery token is a non-blank string longer than ``min_length``."""
    return (
        isinstance(token, str)
        and len(token.strip()) > 0
        and len(token) > min_length
    )


# ═══════════════════════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Organization:
    id: str
    name: str = ""
    follower_count: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "followerCount": self.follower_count,
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Follower:
    """A user following an organization."""
    organization_id: str
    user_id: str
    alerts_enabled: bool = True
    group_preferences: Optional[Dict[str, bool]] = field(default_factory=dict)
    followed_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def preference_for(self, group_id: str) -> Optional[bool]:
        """Explicit preference for a group, or None when unset."""
        if not self.group_preferences:
            return None
        return self.group_preferences.get(group_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "alertsEnabled": self.alerts_enabled,
            "groupPreferences": (
                dict(self.group_preferences)
                if self.group_preferences is not None else None
            ),
            "followedAt": _iso(self.followed_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class UserRecord:
    """Delivery-token holder."""
    id: str
    fcm_token: Optional[str] = None
    alerts_enabled: bool = True
    is_admin: bool = False
    platform: Optional[str] = None
    token_status: Optional[TokenStatus] = None
    ios_token: Optional[str] = None
    web_token: Optional[str] = None
    last_token_update: Optional[datetime] = None
    last_token_cleanup: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hasToken": bool(self.fcm_token),
            "alertsEnabled": self.alerts_enabled,
            "isAdmin": self.is_admin,
            "platform": self.platform,
            "tokenStatus": self.token_status.value if self.token_status else None,
            "lastTokenUpdate": _iso(self.last_token_update),
        }


@dataclass
class Alert:
    """
    A posted alert.

    Created once; updated exactly once by the status writer after
    dispatch completes (or fails).
    """
    organization_id: str
    title: str
    description: str = ""
    id: str = field(default_factory=generate_id)
    organization_name: str = ""
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    type: str = "general"
    severity: str = Severity.MEDIUM.value
    posted_by: str = ""
    posted_by_user_id: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    scheduled_alert_id: Optional[str] = None

    # ── delivery status (written by the status writer) ──
    notifications_sent: Optional[bool] = None
    notification_count: int = 0
    notification_failures: int = 0
    notification_sent_at: Optional[datetime] = None
    notification_error: Optional[str] = None
    notification_error_at: Optional[datetime] = None
    notification_progress: Optional[Dict[str, int]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "organizationName": self.organization_name,
            "groupId": self.group_id,
            "groupName": self.group_name,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "postedBy": self.posted_by,
            "postedByUserId": self.posted_by_user_id,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
            "scheduledAlertId": self.scheduled_alert_id,
            "notificationsSent": self.notifications_sent,
            "notificationCount": self.notification_count,
            "notificationFailures": self.notification_failures,
            "notificationSentAt": _iso(self.notification_sent_at),
            "notificationError": self.notification_error,
            "notificationErrorAt": _iso(self.notification_error_at),
            "notificationProgress": self.notification_progress,
        }


@dataclass
class RecurrencePattern:
    frequency: Frequency = Frequency.DAILY
    interval: int = 1
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.frequency, str):
            self.frequency = Frequency(self.frequency.lower())
        if self.interval < 1:
            raise ValueError(f"Recurrence interval must be >= 1, got {self.interval}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "endDate": _iso(self.end_date),
            "maxOccurrences": self.max_occurrences,
        }


@dataclass
class ScheduledAlert:
    """Alert definition that materializes into a live alert at a future time."""
    organization_id: str
    title: str
    scheduled_date: datetime
    description: str = ""
    id: str = field(default_factory=generate_id)
    organization_name: str = ""
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    type: str = "general"
    severity: str = Severity.MEDIUM.value
    posted_by: str = ""
    posted_by_user_id: str = ""
    is_active: bool = True
    is_recurring: bool = False
    recurrence_pattern: Optional[RecurrencePattern] = None
    execution_count: int = 0
    executed: bool = False
    recurrence_ended: bool = False
    expires_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def state(self, now: Optional[datetime] = None) -> ScheduledAlertState:
        now = now or utcnow()
        if not self.is_active:
            if self.recurrence_ended:
                return ScheduledAlertState.RECURRENCE_ENDED
            if self.executed:
                return ScheduledAlertState.FIRED_ONCE
            return ScheduledAlertState.INACTIVE
        if self.scheduled_date <= now:
            return ScheduledAlertState.DUE
        if self.execution_count > 0:
            return ScheduledAlertState.RECURRING_ADVANCED
        return ScheduledAlertState.PENDING

    def materialize(self) -> Alert:
        """Build the live Alert this definition fires as."""
        return Alert(
            organization_id=self.organization_id,
            organization_name=self.organization_name,
            title=self.title,
            description=self.description,
            group_id=self.group_id or None,
            group_name=self.group_name or None,
            type=self.type,
            severity=self.severity,
            posted_by=self.posted_by,
            posted_by_user_id=self.posted_by_user_id,
            scheduled_alert_id=self.id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organizationId": self.organization_id,
            "organizationName": self.organization_name,
            "groupId": self.group_id,
            "groupName": self.group_name,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "description": self.description,
            "postedBy": self.posted_by,
            "postedByUserId": self.posted_by_user_id,
            "scheduledDate": _iso(self.scheduled_date),
            "isActive": self.is_active,
            "isRecurring": self.is_recurring,
            "recurrencePattern": (
                self.recurrence_pattern.to_dict() if self.recurrence_pattern else None
            ),
            "executionCount": self.execution_count,
            "executed": self.executed,
            "recurrenceEnded": self.recurrence_ended,
            "expiresAt": _iso(self.expires_at),
            "lastExecutedAt": _iso(self.last_executed_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "state": self.state().value,
        }


@dataclass
class LegacyFollowerList:
    """
    Flat follower list kept under organizationFollowers/{orgId}.

    ``group_preferences`` holds each follower's old per-user preferences
    (users/{userId}/followedOrganizations/{orgId}), keyed by user id.
    """
    organization_id: str
    followers: List[str] = field(default_factory=list)
    group_preferences: Dict[str, Dict[str, bool]] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class OrganizationRequest:
    """A prospective organization asking to join the platform."""
    name: str
    contact_person_email: str = ""
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utcnow)
    admin_notifications_sent: Optional[bool] = None
    admin_notification_count: int = 0
    admin_notification_failures: int = 0
    admin_notification_sent_at: Optional[datetime] = None
    admin_notification_error: Optional[str] = None
    admin_notification_error_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "contactPersonEmail": self.contact_person_email,
            "createdAt": _iso(self.created_at),
            "adminNotificationsSent": self.admin_notifications_sent,
            "adminNotificationCount": self.admin_notification_count,
            "adminNotificationFailures": self.admin_notification_failures,
            "adminNotificationSentAt": _iso(self.admin_notification_sent_at),
            "adminNotificationError": self.admin_notification_error,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PushMessage:
    """One push notification addressed to one delivery token."""
    token: str
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification": {"title": self.title, "body": self.body},
            "data": dict(self.data),
            "token": self.token,
        }


@dataclass
class DispatchResult:
    """Aggregated outcome of a fan-out; counts refer to tokens, not users."""
    success_count: int = 0
    failure_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "successCount": self.success_count,
            "failureCount": self.failure_count,
        }


@dataclass
class PipelineReport:
    """What one trigger invocation did; returned for logging and the API."""
    alert_id: str
    organization_id: str
    status: str = "pending"  # skipped | no_recipients | sent | failed
    follower_count: int = 0
    eligible_count: int = 0
    token_count: int = 0
    duplicate_tokens: int = 0
    dispatch: DispatchResult = field(default_factory=DispatchResult)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "organizationId": self.organization_id,
            "status": self.status,
            "followerCount": self.follower_count,
            "eligibleCount": self.eligible_count,
            "tokenCount": self.token_count,
            "duplicateTokens": self.duplicate_tokens,
            "successCount": self.dispatch.success_count,
            "failureCount": self.dispatch.failure_count,
            "error": self.error,
        }
