"""
FastAPI routes: organization alerts, scheduled alerts, followers.

Provides endpoints to:
    POST /api/v1/organizations/{org}/alerts                   — post + notify
    GET  /api/v1/organizations/{org}/alerts/{id}              — alert + status
    POST /api/v1/organizations/{org}/alerts/{id}/trigger      — re-deliver event
    POST /api/v1/organizations/{org}/scheduled-alerts         — schedule
    GET  /api/v1/organizations/{org}/scheduled-alerts         — list
    POST /api/v1/scheduled-alerts/run                         — scan now
    POST /api/v1/organizations/{org}/followers/{user}         — follow
    DELETE /api/v1/organizations/{org}/followers/{user}       — unfollow
    GET  /api/v1/organizations/{org}/followers/{user}/preferences
    PUT  /api/v1/organizations/{org}/followers/{user}/preferences/{group}
    POST /api/v1/organization-requests                        — notify admins
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from backend.app.alerts.alert_service import AlertNotificationService
from backend.app.alerts.followers import follow_organization, unfollow_organization
from backend.app.alerts.models import Organization, OrganizationRequest
from backend.app.alerts.preferences import PreferenceStore
from backend.app.alerts.scheduler import ScheduledAlertExecutor
from backend.app.alerts.store import AlertStore
from backend.app.api.dependencies import (
    get_alert_service,
    get_caller,
    get_executor,
    get_store,
)
from backend.app.api.schemas import (
    AlertCreateRequest,
    OrganizationRequestCreate,
    PreferenceUpdateRequest,
    ScheduledAlertCreateRequest,
)
from backend.app.core.errors import NotFoundError, PermissionDeniedError

router = APIRouter(prefix="/api/v1", tags=["alerts"])


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

async def _require_organization(store: AlertStore, org_id: str) -> Organization:
    org = await store.get_organization(org_id)
    if org is None:
        raise NotFoundError("Organization", organization_id=org_id)
    return org


async def _require_self_or_admin(store: AlertStore, caller: str, user_id: str) -> None:
    if caller == user_id:
        return
    record = await store.get_user(caller)
    if record is None or not record.is_admin:
        raise PermissionDeniedError("Cannot act on another user's follow record")


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.post(
    "/organizations/{org_id}/alerts",
    status_code=201,
    summary="Post an alert and notify followers",
    description=(
        "Stores the alert and runs the notification pipeline. By default the "
        "pipeline runs after the response is sent; ``wait=true`` runs it inline "
        "and returns the pipeline report."
    ),
)
async def post_alert(
    org_id: str,
    body: AlertCreateRequest,
    background: BackgroundTasks,
    wait: bool = Query(False, description="Run notifications before responding"),
    caller: str = Depends(get_caller),
    store: AlertStore = Depends(get_store),
    service: AlertNotificationService = Depends(get_alert_service),
) -> Dict[str, Any]:
    org = await _require_organization(store, org_id)
    alert = await service.post_alert(body.to_alert(org_id, caller, org.name))

    if wait:
        report = await service.handle_alert_created(org_id, alert.id)
        refreshed = await store.get_alert(org_id, alert.id)
        return {"alert": refreshed.to_dict(), "report": report.to_dict()}

    background.add_task(service.handle_alert_created, org_id, alert.id)
    return {"alert": alert.to_dict(), "report": None}


@router.get("/organizations/{org_id}/alerts/{alert_id}", summary="Alert with delivery status")
async def get_alert(
    org_id: str,
    alert_id: str,
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    alert = await store.get_alert(org_id, alert_id)
    if alert is None:
        raise NotFoundError("Alert", organization_id=org_id, alert_id=alert_id)
    return alert.to_dict()


@router.post(
    "/organizations/{org_id}/alerts/{alert_id}/trigger",
    summary="Re-deliver the alert-created event",
    description="At-least-once redelivery; already-processed alerts are skipped.",
)
async def trigger_alert(
    org_id: str,
    alert_id: str,
    caller: str = Depends(get_caller),
    service: AlertNotificationService = Depends(get_alert_service),
) -> Dict[str, Any]:
    report = await service.handle_alert_created(org_id, alert_id)
    return report.to_dict()


# ---------------------------------------------------------------------------
# Scheduled alerts
# ---------------------------------------------------------------------------

@router.post(
    "/organizations/{org_id}/scheduled-alerts",
    status_code=201,
    summary="Schedule a one-off or recurring alert",
)
async def create_scheduled_alert(
    org_id: str,
    body: ScheduledAlertCreateRequest,
    caller: str = Depends(get_caller),
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    org = await _require_organization(store, org_id)
    scheduled = await store.create_scheduled_alert(body.to_scheduled(org_id, caller, org.name))
    return scheduled.to_dict()


@router.get("/organizations/{org_id}/scheduled-alerts", summary="List scheduled alerts")
async def list_scheduled_alerts(
    org_id: str,
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    items = await store.list_scheduled_alerts(org_id)
    return {"organizationId": org_id, "count": len(items), "scheduledAlerts": [a.to_dict() for a in items]}


@router.post("/scheduled-alerts/run", summary="Run one scheduled-alert scan now")
async def run_scheduled_alerts(
    caller: str = Depends(get_caller),
    executor: ScheduledAlertExecutor = Depends(get_executor),
) -> Dict[str, Any]:
    summary = await executor.tick()
    return summary.to_dict()


# ---------------------------------------------------------------------------
# Followers & preferences
# ---------------------------------------------------------------------------

@router.post("/organizations/{org_id}/followers/{user_id}", status_code=201, summary="Follow")
async def follow(
    org_id: str,
    user_id: str,
    caller: str = Depends(get_caller),
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    await _require_self_or_admin(store, caller, user_id)
    follower = await follow_organization(store, org_id, user_id)
    return follower.to_dict()


@router.delete("/organizations/{org_id}/followers/{user_id}", summary="Unfollow")
async def unfollow(
    org_id: str,
    user_id: str,
    caller: str = Depends(get_caller),
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    await _require_self_or_admin(store, caller, user_id)
    removed = await unfollow_organization(store, org_id, user_id)
    if not removed:
        raise NotFoundError("Follower", organization_id=org_id, user_id=user_id)
    return {"organizationId": org_id, "userId": user_id, "following": False}


@router.get(
    "/organizations/{org_id}/followers/{user_id}/preferences",
    summary="Group notification preferences",
)
async def get_preferences(
    org_id: str,
    user_id: str,
    caller: str = Depends(get_caller),
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    await _require_self_or_admin(store, caller, user_id)
    if await store.get_follower(org_id, user_id) is None:
        raise NotFoundError("Follower", organization_id=org_id, user_id=user_id)
    prefs = await PreferenceStore(store).get_preferences(org_id, user_id)
    return {
        "organizationId": org_id,
        "userId": user_id,
        "exists": prefs is not None,
        "groupPreferences": prefs or {},
    }


@router.put(
    "/organizations/{org_id}/followers/{user_id}/preferences/{group_id}",
    summary="Toggle alerts for one group",
)
async def set_preference(
    org_id: str,
    user_id: str,
    group_id: str,
    body: PreferenceUpdateRequest,
    caller: str = Depends(get_caller),
    store: AlertStore = Depends(get_store),
) -> Dict[str, Any]:
    await _require_self_or_admin(store, caller, user_id)
    if await store.get_follower(org_id, user_id) is None:
        raise NotFoundError("Follower", organization_id=org_id, user_id=user_id)
    await PreferenceStore(store).set_group_preference(org_id, user_id, group_id, body.enabled)
    return {
        "organizationId": org_id,
        "userId": user_id,
        "groupId": group_id,
        "enabled": body.enabled,
    }


# ---------------------------------------------------------------------------
# Organization requests
# ---------------------------------------------------------------------------

@router.post(
    "/organization-requests",
    status_code=201,
    summary="Submit an organization request (admins are notified)",
)
async def create_organization_request(
    body: OrganizationRequestCreate,
    background: BackgroundTasks,
    caller: str = Depends(get_caller),
    service: AlertNotificationService = Depends(get_alert_service),
) -> Dict[str, Any]:
    request = await service.post_organization_request(OrganizationRequest(
        name=body.name,
        contact_person_email=body.contact_person_email,
    ))
    background.add_task(service.notify_admins_of_organization_request, request.id)
    return request.to_dict()
