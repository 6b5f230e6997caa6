"""
Request-scoped dependencies.

Collaborators are built once in the application lifespan and hung on
``app.state``; routes pull them out through these helpers so tests can
hand the app their own store, sender and ledger.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from backend.app.alerts.admin import AdminService
from backend.app.alerts.alert_service import AlertNotificationService
from backend.app.alerts.scheduler import ScheduledAlertExecutor
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import UnauthenticatedError


def get_caller(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Authenticated caller id; a missing header is ``unauthenticated``."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError()
    return x_user_id.strip()


def get_store(request: Request) -> AlertStore:
    return request.app.state.store


def get_alert_service(request: Request) -> AlertNotificationService:
    return request.app.state.alert_service


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.admin_service


def get_executor(request: Request) -> ScheduledAlertExecutor:
    return request.app.state.executor
