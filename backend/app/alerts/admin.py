"""
admin.py — Authenticated administrative operations.

    Operation                   Caller        Errors
    ─────────────────────────   ───────────   ──────────────────────────────
    send_test_notification      any user      invalid-argument, not-found, internal
    manage_delivery_token       own record    invalid-argument, not-found
    cleanup_invalid_tokens      admin only    permission-denied
    token_stats                 any user
    migrate_followers           any user
    cleanup_legacy_followers    any user
    fix_follower_counts         any user
    fix_organization_followers  any user      invalid-argument, not-found

Inputs are validated before the store is touched. Per-record failures in
the bulk utilities are logged and counted; they never abort the batch.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from backend.app.alerts.channels.fcm_push import PushSender
from backend.app.alerts.models import (
    Follower,
    PushMessage,
    TokenStatus,
    UserRecord,
    is_valid_token,
    utcnow,
)
from backend.app.alerts.store import AlertStore
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import (
    AlertEngineError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
)

logger = logging.getLogger(__name__)

TEST_TITLE_PREFIX = "🧪 TEST: "
TOKEN_ACTIONS = ("register", "unregister", "validate")


def require_caller(caller_id: Optional[str]) -> str:
    if not caller_id or not caller_id.strip():
        raise UnauthenticatedError()
    return caller_id.strip()


class AdminService:

    def __init__(self, store: AlertStore, sender: PushSender, cfg: Optional[Settings] = None):
        self.store = store
        self.sender = sender
        self.cfg = cfg or default_settings

    # ── delivery tokens ──

    async def send_test_notification(
        self, caller_id: Optional[str], user_id: str, title: str, body: str,
    ) -> Dict[str, Any]:
        require_caller(caller_id)
        if not user_id or not title or not body:
            raise InvalidArgumentError("Missing required parameters")

        logger.info("Testing push notification for user %s", user_id)
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id=user_id)
        if not user.fcm_token:
            raise NotFoundError("Delivery token", user_id=user_id)

        message = PushMessage(
            token=user.fcm_token,
            title=f"{TEST_TITLE_PREFIX}{title}",
            body=body,
            data={"test": "true", "timestamp": str(int(time.time() * 1000))},
        )
        try:
            message_id = await self.sender.send(message)
        except Exception as exc:
            logger.error("Error sending test notification to %s: %s", user_id, exc)
            raise AlertEngineError("Failed to send test notification") from exc

        logger.info("Test notification sent: %s", message_id)
        return {"success": True, "messageId": message_id}

    async def manage_delivery_token(
        self,
        caller_id: Optional[str],
        action: str,
        token: str,
        platform: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Register, unregister or validate the caller's own delivery token."""
        user_id = require_caller(caller_id)
        if not action or not token:
            raise InvalidArgumentError("Missing required parameters")
        if action not in TOKEN_ACTIONS:
            raise InvalidArgumentError("Invalid action specified", field="action")

        platform = platform or "ios"
        logger.info("Delivery token %s for user %s (platform %s)", action, user_id, platform)

        if action == "register":
            return await self._register_token(user_id, token, platform)

        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id=user_id)

        if action == "unregister":
            await self.store.update_user(
                user_id,
                fcm_token=None,
                ios_token=None,
                token_status=TokenStatus.UNREGISTERED,
                last_token_update=utcnow(),
            )
            return {"success": True, "message": "Delivery token unregistered successfully"}

        current = user.fcm_token
        valid = current == token and is_valid_token(current, self.cfg.MIN_TOKEN_LENGTH)
        logger.info("Token validation for user %s: %s", user_id, "VALID" if valid else "INVALID")
        return {
            "success": True,
            "isValid": valid,
            "hasToken": bool(current),
            "tokenLength": len(current) if current else 0,
        }

    async def _register_token(self, user_id: str, token: str, platform: str) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "fcm_token": token,
            "platform": platform,
            "token_status": TokenStatus.ACTIVE,
            "last_token_update": utcnow(),
        }
        if platform == "ios":
            fields["ios_token"] = token
        elif platform == "web":
            fields["web_token"] = token

        if await self.store.get_user(user_id) is None:
            await self.store.put_user(UserRecord(id=user_id))
        await self.store.update_user(user_id, **fields)
        logger.info("Delivery token registered for user %s (%s)", user_id, platform)
        return {"success": True, "message": "Delivery token registered successfully"}

    async def cleanup_invalid_tokens(self, caller_id: Optional[str]) -> Dict[str, Any]:
        """Null out stored tokens too short to be real (admin only)."""
        user_id = require_caller(caller_id)
        caller = await self.store.get_user(user_id)
        if caller is None or not caller.is_admin:
            raise PermissionDeniedError()

        logger.info("Token cleanup initiated by admin %s", user_id)
        cleaned = 0
        for user in await self.store.list_users():
            if user.fcm_token is None or is_valid_token(user.fcm_token, self.cfg.MIN_TOKEN_LENGTH):
                continue
            try:
                await self.store.update_user(
                    user.id,
                    fcm_token=None,
                    token_status=TokenStatus.INVALID,
                    last_token_cleanup=utcnow(),
                )
                cleaned += 1
            except Exception as exc:
                logger.warning("Could not clean token for user %s: %s", user.id, exc)

        logger.info("Token cleanup completed: %d tokens cleaned", cleaned)
        return {
            "success": True,
            "cleanedCount": cleaned,
            "message": f"Cleaned {cleaned} invalid delivery tokens",
        }

    async def token_stats(self, caller_id: Optional[str]) -> Dict[str, Any]:
        require_caller(caller_id)
        users = await self.store.list_users()
        stats: Dict[str, Any] = {
            "totalUsers": len(users),
            "usersWithTokens": 0,
            "usersWithoutTokens": 0,
            "validTokens": 0,
            "invalidTokens": 0,
            "tokenDetails": [],
        }
        details: List[Dict[str, Any]] = stats["tokenDetails"]

        for user in users:
            token = user.fcm_token
            if not isinstance(token, str) or not token.strip():
                stats["usersWithoutTokens"] += 1
                details.append({"userId": user.id, "hasToken": False})
                continue
            stats["usersWithTokens"] += 1
            entry = {"userId": user.id, "hasToken": True, "tokenLength": len(token)}
            if is_valid_token(token, self.cfg.MIN_TOKEN_LENGTH):
                stats["validTokens"] += 1
                entry["tokenPreview"] = f"{token[:20]}..."
            else:
                stats["invalidTokens"] += 1
                entry["tokenPreview"] = token
                entry["issue"] = "Token too short"
            details.append(entry)

        logger.info(
            "Token stats: %d users, %d valid, %d invalid, %d without",
            stats["totalUsers"], stats["validTokens"],
            stats["invalidTokens"], stats["usersWithoutTokens"],
        )
        return {"success": True, "stats": stats}

    # ── follower migration & repair ──

    async def migrate_followers(self, caller_id: Optional[str]) -> Dict[str, Any]:
        """
        Copy legacy flat follower lists into per-follower records.

        Organizations that already have follower records are skipped.
        Migrated followers get alertsEnabled=True and keep their legacy
        group preferences (empty when none were stored).
        """
        require_caller(caller_id)
        org_ids = await self.store.list_organization_ids()
        logger.info("Starting follower migration for %d organizations", len(org_ids))
        migrated = 0

        for org_id in org_ids:
            if await self.store.list_followers(org_id):
                logger.info("Organization %s already migrated — skipping", org_id)
                continue
            legacy = await self.store.get_legacy_followers(org_id)
            if legacy is None or not legacy.followers:
                continue

            followed_at = legacy.created_at or utcnow()
            for user_id in legacy.followers:
                try:
                    await self.store.put_follower(Follower(
                        organization_id=org_id,
                        user_id=user_id,
                        alerts_enabled=True,
                        group_preferences=dict(legacy.group_preferences.get(user_id) or {}),
                        followed_at=followed_at,
                        updated_at=utcnow(),
                    ))
                except Exception as exc:
                    logger.error("Error migrating follower %s of %s: %s", user_id, org_id, exc)

            await self.store.update_organization(
                org_id, follower_count=len(legacy.followers), updated_at=utcnow(),
            )
            migrated += len(legacy.followers)
            logger.info("Migrated %d followers for %s", len(legacy.followers), org_id)

        return {
            "success": True,
            "organizationsProcessed": len(org_ids),
            "totalFollowersMigrated": migrated,
            "message": "Follower migration completed successfully",
        }

    async def cleanup_legacy_followers(self, caller_id: Optional[str]) -> Dict[str, Any]:
        require_caller(caller_id)
        org_ids = await self.store.list_legacy_follower_org_ids()
        cleaned = 0
        for org_id in org_ids:
            try:
                await self.store.delete_legacy_followers(org_id)
                cleaned += 1
            except Exception as exc:
                logger.error("Error cleaning up legacy followers of %s: %s", org_id, exc)
        logger.info("Legacy follower cleanup completed: %d documents", cleaned)
        return {
            "success": True,
            "totalCleaned": cleaned,
            "message": "Old follower data cleanup completed",
        }

    async def fix_follower_counts(self, caller_id: Optional[str]) -> Dict[str, Any]:
        """Recount followers for every organization; rewrite only mismatches."""
        require_caller(caller_id)
        org_ids = await self.store.list_organization_ids()
        fixed = 0
        for org_id in org_ids:
            org = await self.store.get_organization(org_id)
            actual = len(await self.store.list_followers(org_id))
            current = org.follower_count if org else 0
            if current == actual:
                continue
            await self.store.update_organization(org_id, follower_count=actual, updated_at=utcnow())
            logger.info("Fixed follower count for %s: %d → %d", org_id, current, actual)
            fixed += 1
        return {
            "success": True,
            "organizationsChecked": len(org_ids),
            "totalFixed": fixed,
            "message": "Follower counts have been corrected",
        }

    async def fix_organization_follower_count(
        self, caller_id: Optional[str], organization_id: Optional[str],
    ) -> Dict[str, Any]:
        require_caller(caller_id)
        if not organization_id:
            raise InvalidArgumentError("Organization ID is required", field="organizationId")
        if await self.store.get_organization(organization_id) is None:
            raise NotFoundError("Organization", organization_id=organization_id)

        actual = len(await self.store.list_followers(organization_id))
        await self.store.update_organization(
            organization_id, follower_count=actual, updated_at=utcnow(),
        )
        logger.info("Fixed follower count for %s: %d", organization_id, actual)
        return {
            "success": True,
            "organizationId": organization_id,
            "newFollowerCount": actual,
            "message": "Organization follower count has been corrected",
        }
