"""
FastAPI routes: authenticated administrative callables.

All endpoints require the ``X-User-Id`` header.

    POST /api/v1/admin/test-notification
    POST /api/v1/admin/delivery-token
    POST /api/v1/admin/cleanup-invalid-tokens     (admin only)
    GET  /api/v1/admin/token-stats
    GET  /api/v1/admin/diagnostics
    POST /api/v1/admin/migrate-followers
    POST /api/v1/admin/cleanup-legacy-followers
    POST /api/v1/admin/fix-follower-counts[?organizationId=]
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from backend.app.alerts.admin import AdminService
from backend.app.api.dependencies import get_admin_service, get_caller
from backend.app.api.schemas import DeliveryTokenRequest, NotificationTestRequest
from backend.app.core.health import diagnose_push

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.post("/test-notification", summary="Send a test push to one user")
async def test_notification(
    body: NotificationTestRequest,
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    return await admin.send_test_notification(caller, body.user_id, body.title, body.body)


@router.post("/delivery-token", summary="Register / unregister / validate own token")
async def delivery_token(
    body: DeliveryTokenRequest,
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    return await admin.manage_delivery_token(caller, body.action, body.token, body.platform)


@router.post("/cleanup-invalid-tokens", summary="Clear implausible tokens (admin only)")
async def cleanup_invalid_tokens(
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    return await admin.cleanup_invalid_tokens(caller)


@router.get("/token-stats", summary="Delivery-token statistics for all users")
async def token_stats(
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    return await admin.token_stats(caller)


@router.get("/diagnostics", summary="Environment and push API reachability")
async def diagnostics(
    request: Request,
    caller: str = Depends(get_caller),
) -> Dict[str, Any]:
    return await diagnose_push(request.app.state.sender, request.app.state.settings)


@router.post("/migrate-followers", summary="Migrate legacy follower lists")
async def migrate_followers(
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    return await admin.migrate_followers(caller)


@router.post("/cleanup-legacy-followers", summary="Delete legacy follower lists")
async def cleanup_legacy_followers(
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    return await admin.cleanup_legacy_followers(caller)


@router.post("/fix-follower-counts", summary="Recount followerCount")
async def fix_follower_counts(
    organization_id: Optional[str] = Query(None, alias="organizationId"),
    caller: str = Depends(get_caller),
    admin: AdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    if organization_id is not None:
        return await admin.fix_organization_follower_count(caller, organization_id)
    return await admin.fix_follower_counts(caller)
