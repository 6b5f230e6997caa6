"""
sql_store.py — SQLAlchemy implementation of the AlertStore contract.

Table layout mirrors the document paths clients use:

    organizations                      organizations/{orgId}
    organization_followers             organizations/{orgId}/followers/{userId}
    users                              users/{userId}
    organization_alerts                organizations/{orgId}/alerts/{alertId}
    scheduled_alerts                   organizations/{orgId}/scheduledAlerts/{id}
    legacy_organization_followers      organizationFollowers/{orgId}
    organization_requests              organizationRequests/{requestId}

Set-if-absent writes read and write inside one transaction, locking the
row where the backend supports SELECT … FOR UPDATE.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from backend.app.alerts.models import (
    Alert,
    Follower,
    LegacyFollowerList,
    Organization,
    OrganizationRequest,
    RecurrencePattern,
    ScheduledAlert,
    TokenStatus,
    UserRecord,
    utcnow,
)
from backend.app.alerts.store import AlertStore, RecordNotFound
from backend.app.core.database import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# ORM Tables
# ═══════════════════════════════════════════════════════════════════════════

class OrganizationRow(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    follower_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class FollowerRow(Base):
    __tablename__ = "organization_followers"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    group_preferences: Mapped[Optional[Dict[str, bool]]] = mapped_column(JSON, nullable=True)
    followed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    alerts_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    platform: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    token_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    ios_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    web_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_token_update: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_token_cleanup: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class AlertRow(Base):
    __tablename__ = "organization_alerts"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_name: Mapped[str] = mapped_column(String(255), default="")
    group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    group_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(64), default="general")
    severity: Mapped[str] = mapped_column(String(32), default="medium")
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    posted_by: Mapped[str] = mapped_column(String(255), default="")
    posted_by_user_id: Mapped[str] = mapped_column(String(128), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    scheduled_alert_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notifications_sent: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    notification_count: Mapped[int] = mapped_column(Integer, default=0)
    notification_failures: Mapped[int] = mapped_column(Integer, default=0)
    notification_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notification_error_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notification_progress: Mapped[Optional[Dict[str, int]]] = mapped_column(JSON, nullable=True)


class ScheduledAlertRow(Base):
    __tablename__ = "scheduled_alerts"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_name: Mapped[str] = mapped_column(String(255), default="")
    group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    group_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(64), default="general")
    severity: Mapped[str] = mapped_column(String(32), default="medium")
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    posted_by: Mapped[str] = mapped_column(String(255), default="")
    posted_by_user_id: Mapped[str] = mapped_column(String(128), default="")
    scheduled_date: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_pattern: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0)
    executed: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_ended: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class LegacyFollowerRow(Base):
    __tablename__ = "legacy_organization_followers"

    organization_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    followers: Mapped[List[str]] = mapped_column(JSON, default=list)
    group_preferences: Mapped[Dict[str, Dict[str, bool]]] = mapped_column(JSON, default=dict)
    created_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class OrganizationRequestRow(Base):
    __tablename__ = "organization_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    contact_person_email: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    admin_notifications_sent: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    admin_notification_count: Mapped[int] = mapped_column(Integer, default=0)
    admin_notification_failures: Mapped[int] = mapped_column(Integer, default=0)
    admin_notification_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    admin_notification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notification_error_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ record conversion
# ═══════════════════════════════════════════════════════════════════════════

def _pattern_to_json(pattern: Optional[RecurrencePattern]) -> Optional[Dict[str, Any]]:
    if pattern is None:
        return None
    return {
        "frequency": pattern.frequency.value,
        "interval": pattern.interval,
        "end_date": pattern.end_date.isoformat() if pattern.end_date else None,
        "max_occurrences": pattern.max_occurrences,
    }


def _pattern_from_json(data: Optional[Dict[str, Any]]) -> Optional[RecurrencePattern]:
    if not data:
        return None
    end_date = data.get("end_date")
    return RecurrencePattern(
        frequency=data["frequency"],
        interval=int(data.get("interval", 1)),
        end_date=datetime.fromisoformat(end_date) if end_date else None,
        max_occurrences=data.get("max_occurrences"),
    )


def _to_columns(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert record-level values into column values."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, RecurrencePattern) or (key == "recurrence_pattern" and value is None):
            out[key] = _pattern_to_json(value)
        elif isinstance(value, Enum):
            out[key] = value.value
        elif isinstance(value, dict):
            out[key] = dict(value)
        else:
            out[key] = value
    return out


def _from_row(cls: Type[T], row: Any) -> T:
    kwargs = {f.name: getattr(row, f.name) for f in dataclasses.fields(cls)}
    if "token_status" in kwargs and kwargs["token_status"] is not None:
        kwargs["token_status"] = TokenStatus(kwargs["token_status"])
    if "recurrence_pattern" in kwargs:
        kwargs["recurrence_pattern"] = _pattern_from_json(kwargs["recurrence_pattern"])
    if kwargs.get("group_preferences") is not None:
        kwargs["group_preferences"] = dict(kwargs["group_preferences"])
    return cls(**kwargs)


def _to_row(row_cls: Type[Base], record: Any) -> Base:
    return row_cls(**_to_columns(dataclasses.asdict(record) | _nested(record)))


def _nested(record: Any) -> Dict[str, Any]:
    # asdict() flattens RecurrencePattern into a plain dict; keep the object
    if isinstance(record, ScheduledAlert):
        return {"recurrence_pattern": record.recurrence_pattern}
    return {}


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlertStore(AlertStore):
    """AlertStore backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def _update(self, row_cls, where, fields: Dict[str, Any], what: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(row_cls).where(*where).values(**_to_columns(fields))
                )
                if result.rowcount == 0:
                    raise RecordNotFound(what)

    async def _merge(self, row: Base) -> None:
        async with self._sessions() as session:
            async with session.begin():
                await session.merge(row)

    # ── organizations ──

    async def get_organization(self, org_id):
        async with self._sessions() as session:
            row = await session.get(OrganizationRow, org_id)
            return _from_row(Organization, row) if row else None

    async def put_organization(self, org):
        await self._merge(_to_row(OrganizationRow, org))

    async def list_organization_ids(self):
        async with self._sessions() as session:
            result = await session.execute(select(OrganizationRow.id).order_by(OrganizationRow.id))
            return list(result.scalars())

    async def update_organization(self, org_id, **fields):
        await self._update(
            OrganizationRow, [OrganizationRow.id == org_id], fields, f"organization {org_id}",
        )

    # ── followers & preferences ──

    async def list_followers(self, org_id):
        async with self._sessions() as session:
            result = await session.execute(
                select(FollowerRow).where(FollowerRow.organization_id == org_id)
            )
            return [_from_row(Follower, row) for row in result.scalars()]

    async def get_follower(self, org_id, user_id):
        async with self._sessions() as session:
            row = await session.get(FollowerRow, (org_id, user_id))
            return _from_row(Follower, row) if row else None

    async def put_follower(self, follower):
        await self._merge(_to_row(FollowerRow, follower))

    async def delete_follower(self, org_id, user_id):
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    delete(FollowerRow).where(
                        FollowerRow.organization_id == org_id,
                        FollowerRow.user_id == user_id,
                    )
                )
                return result.rowcount > 0

    async def get_group_preferences(self, org_id, user_id):
        async with self._sessions() as session:
            row = await session.get(FollowerRow, (org_id, user_id))
            if row is None or row.group_preferences is None:
                return None
            return dict(row.group_preferences)

    async def _locked_follower(self, session: AsyncSession, org_id: str, user_id: str):
        result = await session.execute(
            select(FollowerRow)
            .where(FollowerRow.organization_id == org_id, FollowerRow.user_id == user_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def set_group_preference(self, org_id, user_id, group_id, enabled):
        async with self._sessions() as session:
            async with session.begin():
                row = await self._locked_follower(session, org_id, user_id)
                if row is None:
                    row = FollowerRow(
                        organization_id=org_id, user_id=user_id, alerts_enabled=True,
                        group_preferences=None, followed_at=utcnow(),
                    )
                    session.add(row)
                prefs = dict(row.group_preferences or {})
                prefs[group_id] = bool(enabled)
                row.group_preferences = prefs
                row.updated_at = utcnow()

    async def set_group_preference_if_absent(self, org_id, user_id, group_id, enabled):
        async with self._sessions() as session:
            async with session.begin():
                row = await self._locked_follower(session, org_id, user_id)
                if row is None:
                    raise RecordNotFound(f"follower {org_id}/{user_id}")
                prefs = dict(row.group_preferences or {})
                if group_id in prefs:
                    return False
                prefs[group_id] = bool(enabled)
                row.group_preferences = prefs
                row.updated_at = utcnow()
                return True

    async def create_preferences_if_absent(self, org_id, user_id, preferences):
        async with self._sessions() as session:
            async with session.begin():
                row = await self._locked_follower(session, org_id, user_id)
                if row is None:
                    session.add(FollowerRow(
                        organization_id=org_id, user_id=user_id, alerts_enabled=True,
                        group_preferences=dict(preferences), followed_at=utcnow(),
                        updated_at=utcnow(),
                    ))
                    return True
                if row.group_preferences is not None:
                    return False
                row.group_preferences = dict(preferences)
                row.updated_at = utcnow()
                return True

    # ── users ──

    async def get_user(self, user_id):
        async with self._sessions() as session:
            row = await session.get(UserRow, user_id)
            return _from_row(UserRecord, row) if row else None

    async def put_user(self, user):
        await self._merge(_to_row(UserRow, user))

    async def update_user(self, user_id, **fields):
        await self._update(UserRow, [UserRow.id == user_id], fields, f"user {user_id}")

    async def list_users(self):
        async with self._sessions() as session:
            result = await session.execute(select(UserRow).order_by(UserRow.id))
            return [_from_row(UserRecord, row) for row in result.scalars()]

    # ── alerts ──

    async def create_alert(self, alert):
        async with self._sessions() as session:
            async with session.begin():
                session.add(_to_row(AlertRow, alert))
        return alert

    async def get_alert(self, org_id, alert_id):
        async with self._sessions() as session:
            row = await session.get(AlertRow, (org_id, alert_id))
            return _from_row(Alert, row) if row else None

    async def update_alert(self, org_id, alert_id, **fields):
        await self._update(
            AlertRow,
            [AlertRow.organization_id == org_id, AlertRow.id == alert_id],
            fields, f"alert {org_id}/{alert_id}",
        )

    # ── scheduled alerts ──

    async def create_scheduled_alert(self, alert):
        async with self._sessions() as session:
            async with session.begin():
                session.add(_to_row(ScheduledAlertRow, alert))
        return alert

    async def get_scheduled_alert(self, org_id, scheduled_id):
        async with self._sessions() as session:
            row = await session.get(ScheduledAlertRow, (org_id, scheduled_id))
            return _from_row(ScheduledAlert, row) if row else None

    async def list_scheduled_alerts(self, org_id):
        async with self._sessions() as session:
            result = await session.execute(
                select(ScheduledAlertRow)
                .where(ScheduledAlertRow.organization_id == org_id)
                .order_by(ScheduledAlertRow.scheduled_date)
            )
            return [_from_row(ScheduledAlert, row) for row in result.scalars()]

    async def list_due_scheduled_alerts(self, now):
        async with self._sessions() as session:
            result = await session.execute(
                select(ScheduledAlertRow)
                .where(
                    ScheduledAlertRow.is_active.is_(True),
                    ScheduledAlertRow.scheduled_date <= now,
                )
                .order_by(ScheduledAlertRow.scheduled_date.asc())
            )
            return [_from_row(ScheduledAlert, row) for row in result.scalars()]

    async def list_expired_scheduled_alerts(self, now):
        async with self._sessions() as session:
            result = await session.execute(
                select(ScheduledAlertRow).where(
                    ScheduledAlertRow.is_active.is_(True),
                    ScheduledAlertRow.expires_at.is_not(None),
                    ScheduledAlertRow.expires_at < now,
                )
            )
            return [_from_row(ScheduledAlert, row) for row in result.scalars()]

    async def update_scheduled_alert(self, org_id, scheduled_id, **fields):
        await self._update(
            ScheduledAlertRow,
            [
                ScheduledAlertRow.organization_id == org_id,
                ScheduledAlertRow.id == scheduled_id,
            ],
            fields, f"scheduled alert {org_id}/{scheduled_id}",
        )

    # ── legacy follower lists ──

    async def get_legacy_followers(self, org_id):
        async with self._sessions() as session:
            row = await session.get(LegacyFollowerRow, org_id)
            if row is None:
                return None
            return LegacyFollowerList(
                organization_id=row.organization_id,
                followers=list(row.followers or []),
                group_preferences=dict(row.group_preferences or {}),
                created_at=row.created_at,
            )

    async def put_legacy_followers(self, legacy):
        await self._merge(LegacyFollowerRow(
            organization_id=legacy.organization_id,
            followers=list(legacy.followers),
            group_preferences=dict(legacy.group_preferences),
            created_at=legacy.created_at,
        ))

    async def list_legacy_follower_org_ids(self):
        async with self._sessions() as session:
            result = await session.execute(
                select(LegacyFollowerRow.organization_id).order_by(LegacyFollowerRow.organization_id)
            )
            return list(result.scalars())

    async def delete_legacy_followers(self, org_id):
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    delete(LegacyFollowerRow).where(LegacyFollowerRow.organization_id == org_id)
                )

    # ── organization requests ──

    async def create_organization_request(self, request):
        async with self._sessions() as session:
            async with session.begin():
                session.add(_to_row(OrganizationRequestRow, request))
        return request

    async def get_organization_request(self, request_id):
        async with self._sessions() as session:
            row = await session.get(OrganizationRequestRow, request_id)
            return _from_row(OrganizationRequest, row) if row else None

    async def update_organization_request(self, request_id, **fields):
        await self._update(
            OrganizationRequestRow, [OrganizationRequestRow.id == request_id],
            fields, f"organization request {request_id}",
        )
