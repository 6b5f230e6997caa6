"""
store.py — Document store contract shared by every pipeline stage.

The store is the one shared resource across concurrent trigger
invocations. All mutations are single-record writes scoped to one
(user, organization[, group]) tuple; the only consistency mechanism is
set-if-absent initialization.

Two implementations:
    InMemoryAlertStore  — process-local dicts (dev / tests)
    SqlAlertStore       — SQLAlchemy async (see sql_store.py)

Components never construct a store themselves; one is passed in.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from backend.app.alerts.models import (
    Alert,
    Follower,
    LegacyFollowerList,
    Organization,
    OrganizationRequest,
    ScheduledAlert,
    UserRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


class AlertStore(abc.ABC):
    """Async document-store contract."""

    # ── organizations ──
    @abc.abstractmethod
    async def get_organization(self, org_id: str) -> Optional[Organization]: ...

    @abc.abstractmethod
    async def put_organization(self, org: Organization) -> None: ...

    @abc.abstractmethod
    async def list_organization_ids(self) -> List[str]: ...

    @abc.abstractmethod
    async def update_organization(self, org_id: str, **fields: Any) -> None: ...

    # ── followers & preferences ──
    @abc.abstractmethod
    async def list_followers(self, org_id: str) -> List[Follower]: ...

    @abc.abstractmethod
    async def get_follower(self, org_id: str, user_id: str) -> Optional[Follower]: ...

    @abc.abstractmethod
    async def put_follower(self, follower: Follower) -> None: ...

    @abc.abstractmethod
    async def delete_follower(self, org_id: str, user_id: str) -> bool: ...

    @abc.abstractmethod
    async def get_group_preferences(
        self, org_id: str, user_id: str,
    ) -> Optional[Dict[str, bool]]:
        """Preference map, or None when the preference document is missing."""

    @abc.abstractmethod
    async def set_group_preference(
        self, org_id: str, user_id: str, group_id: str, enabled: bool,
    ) -> None: ...

    @abc.abstractmethod
    async def set_group_preference_if_absent(
        self, org_id: str, user_id: str, group_id: str, enabled: bool,
    ) -> bool:
        """Write one key only if unset. Returns True if this call wrote it."""

    @abc.abstractmethod
    async def create_preferences_if_absent(
        self, org_id: str, user_id: str, preferences: Dict[str, bool],
    ) -> bool:
        """Create the whole preference document only if it is missing."""

    # ── users ──
    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    @abc.abstractmethod
    async def put_user(self, user: UserRecord) -> None: ...

    @abc.abstractmethod
    async def update_user(self, user_id: str, **fields: Any) -> None: ...

    @abc.abstractmethod
    async def list_users(self) -> List[UserRecord]: ...

    # ── alerts ──
    @abc.abstractmethod
    async def create_alert(self, alert: Alert) -> Alert: ...

    @abc.abstractmethod
    async def get_alert(self, org_id: str, alert_id: str) -> Optional[Alert]: ...

    @abc.abstractmethod
    async def update_alert(self, org_id: str, alert_id: str, **fields: Any) -> None: ...

    # ── scheduled alerts ──
    @abc.abstractmethod
    async def create_scheduled_alert(self, alert: ScheduledAlert) -> ScheduledAlert: ...

    @abc.abstractmethod
    async def get_scheduled_alert(
        self, org_id: str, scheduled_id: str,
    ) -> Optional[ScheduledAlert]: ...

    @abc.abstractmethod
    async def list_scheduled_alerts(self, org_id: str) -> List[ScheduledAlert]: ...

    @abc.abstractmethod
    async def list_due_scheduled_alerts(self, now: datetime) -> List[ScheduledAlert]:
        """Active scheduled alerts with scheduled_date <= now, oldest first."""

    @abc.abstractmethod
    async def list_expired_scheduled_alerts(self, now: datetime) -> List[ScheduledAlert]: ...

    @abc.abstractmethod
    async def update_scheduled_alert(
        self, org_id: str, scheduled_id: str, **fields: Any,
    ) -> None: ...

    # ── legacy follower lists ──
    @abc.abstractmethod
    async def get_legacy_followers(self, org_id: str) -> Optional[LegacyFollowerList]: ...

    @abc.abstractmethod
    async def put_legacy_followers(self, legacy: LegacyFollowerList) -> None: ...

    @abc.abstractmethod
    async def list_legacy_follower_org_ids(self) -> List[str]: ...

    @abc.abstractmethod
    async def delete_legacy_followers(self, org_id: str) -> None: ...

    # ── organization requests ──
    @abc.abstractmethod
    async def create_organization_request(
        self, request: OrganizationRequest,
    ) -> OrganizationRequest: ...

    @abc.abstractmethod
    async def get_organization_request(
        self, request_id: str,
    ) -> Optional[OrganizationRequest]: ...

    @abc.abstractmethod
    async def update_organization_request(self, request_id: str, **fields: Any) -> None: ...

    async def close(self) -> None:
        """Release connections (no-op by default)."""


class RecordNotFound(LookupError):
    """Raised by update_* when the target record does not exist."""


def _apply(record: Any, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if not hasattr(record, key):
            raise AttributeError(f"{type(record).__name__} has no field '{key}'")
        setattr(record, key, value)


class InMemoryAlertStore(AlertStore):
    """
    Process-local store.

    Every read returns a copy so callers can never mutate stored state
    without going through a write method. A single asyncio lock makes the
    set-if-absent writes atomic within the event loop.
    """

    def __init__(self) -> None:
        self.organizations: Dict[str, Organization] = {}
        self.followers: Dict[str, Dict[str, Follower]] = {}
        self.users: Dict[str, UserRecord] = {}
        self.alerts: Dict[str, Dict[str, Alert]] = {}
        self.scheduled: Dict[str, Dict[str, ScheduledAlert]] = {}
        self.legacy: Dict[str, LegacyFollowerList] = {}
        self.requests: Dict[str, OrganizationRequest] = {}
        self._lock = asyncio.Lock()

    # ── organizations ──

    async def get_organization(self, org_id):
        return copy.deepcopy(self.organizations.get(org_id))

    async def put_organization(self, org):
        self.organizations[org.id] = copy.deepcopy(org)

    async def list_organization_ids(self):
        return sorted(self.organizations)

    async def update_organization(self, org_id, **fields):
        org = self.organizations.get(org_id)
        if org is None:
            raise RecordNotFound(f"organization {org_id}")
        _apply(org, fields)

    # ── followers & preferences ──

    async def list_followers(self, org_id):
        return [copy.deepcopy(f) for f in self.followers.get(org_id, {}).values()]

    async def get_follower(self, org_id, user_id):
        return copy.deepcopy(self.followers.get(org_id, {}).get(user_id))

    async def put_follower(self, follower):
        self.followers.setdefault(follower.organization_id, {})[follower.user_id] = (
            copy.deepcopy(follower)
        )

    async def delete_follower(self, org_id, user_id):
        return self.followers.get(org_id, {}).pop(user_id, None) is not None

    async def get_group_preferences(self, org_id, user_id):
        follower = self.followers.get(org_id, {}).get(user_id)
        if follower is None or follower.group_preferences is None:
            return None
        return dict(follower.group_preferences)

    async def set_group_preference(self, org_id, user_id, group_id, enabled):
        async with self._lock:
            follower = self._follower_or_stub(org_id, user_id)
            if follower.group_preferences is None:
                follower.group_preferences = {}
            follower.group_preferences[group_id] = bool(enabled)
            follower.updated_at = utcnow()

    async def set_group_preference_if_absent(self, org_id, user_id, group_id, enabled):
        async with self._lock:
            follower = self.followers.get(org_id, {}).get(user_id)
            if follower is None:
                raise RecordNotFound(f"follower {org_id}/{user_id}")
            if follower.group_preferences is None:
                follower.group_preferences = {}
            if group_id in follower.group_preferences:
                return False
            follower.group_preferences[group_id] = bool(enabled)
            follower.updated_at = utcnow()
            return True

    async def create_preferences_if_absent(self, org_id, user_id, preferences):
        async with self._lock:
            follower = self._follower_or_stub(org_id, user_id)
            if follower.group_preferences is not None:
                return False
            follower.group_preferences = dict(preferences)
            follower.updated_at = utcnow()
            return True

    def _follower_or_stub(self, org_id: str, user_id: str) -> Follower:
        org_followers = self.followers.setdefault(org_id, {})
        if user_id not in org_followers:
            org_followers[user_id] = Follower(
                organization_id=org_id, user_id=user_id, group_preferences=None,
            )
        return org_followers[user_id]

    # ── users ──

    async def get_user(self, user_id):
        return copy.deepcopy(self.users.get(user_id))

    async def put_user(self, user):
        self.users[user.id] = copy.deepcopy(user)

    async def update_user(self, user_id, **fields):
        user = self.users.get(user_id)
        if user is None:
            raise RecordNotFound(f"user {user_id}")
        _apply(user, fields)

    async def list_users(self):
        return [copy.deepcopy(u) for u in self.users.values()]

    # ── alerts ──

    async def create_alert(self, alert):
        self.alerts.setdefault(alert.organization_id, {})[alert.id] = copy.deepcopy(alert)
        return copy.deepcopy(alert)

    async def get_alert(self, org_id, alert_id):
        return copy.deepcopy(self.alerts.get(org_id, {}).get(alert_id))

    async def update_alert(self, org_id, alert_id, **fields):
        alert = self.alerts.get(org_id, {}).get(alert_id)
        if alert is None:
            raise RecordNotFound(f"alert {org_id}/{alert_id}")
        _apply(alert, fields)

    # ── scheduled alerts ──

    async def create_scheduled_alert(self, alert):
        self.scheduled.setdefault(alert.organization_id, {})[alert.id] = copy.deepcopy(alert)
        return copy.deepcopy(alert)

    async def get_scheduled_alert(self, org_id, scheduled_id):
        return copy.deepcopy(self.scheduled.get(org_id, {}).get(scheduled_id))

    async def list_scheduled_alerts(self, org_id):
        items = self.scheduled.get(org_id, {}).values()
        return [copy.deepcopy(a) for a in sorted(items, key=lambda a: a.scheduled_date)]

    async def list_due_scheduled_alerts(self, now):
        due = [
            a for org in self.scheduled.values() for a in org.values()
            if a.is_active and a.scheduled_date <= now
        ]
        return [copy.deepcopy(a) for a in sorted(due, key=lambda a: a.scheduled_date)]

    async def list_expired_scheduled_alerts(self, now):
        return [
            copy.deepcopy(a) for org in self.scheduled.values() for a in org.values()
            if a.is_active and a.expires_at is not None and a.expires_at < now
        ]

    async def update_scheduled_alert(self, org_id, scheduled_id, **fields):
        alert = self.scheduled.get(org_id, {}).get(scheduled_id)
        if alert is None:
            raise RecordNotFound(f"scheduled alert {org_id}/{scheduled_id}")
        _apply(alert, fields)

    # ── legacy follower lists ──

    async def get_legacy_followers(self, org_id):
        return copy.deepcopy(self.legacy.get(org_id))

    async def put_legacy_followers(self, legacy):
        self.legacy[legacy.organization_id] = copy.deepcopy(legacy)

    async def list_legacy_follower_org_ids(self):
        return sorted(self.legacy)

    async def delete_legacy_followers(self, org_id):
        self.legacy.pop(org_id, None)

    # ── organization requests ──

    async def create_organization_request(self, request):
        self.requests[request.id] = copy.deepcopy(request)
        return copy.deepcopy(request)

    async def get_organization_request(self, request_id):
        return copy.deepcopy(self.requests.get(request_id))

    async def update_organization_request(self, request_id, **fields):
        request = self.requests.get(request_id)
        if request is None:
            raise RecordNotFound(f"organization request {request_id}")
        _apply(request, fields)
