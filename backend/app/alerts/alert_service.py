"""
alert_service.py — Alert trigger and status writer.

This is the central coordinator that, for every newly created alert:
    1. Validates the author and claims the alert id (idempotency)
    2. Resolves the organization's followers, minus the author
    3. Narrows followers to eligible recipients via group preferences
    4. Resolves and deduplicates delivery tokens
    5. Dispatches one push per token with isolated failures
    6. Writes the outcome back onto the alert record

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  alert created      │  (API post, scheduled materialization,
    │  (at-least-once)    │   or a re-delivered trigger)
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  0. Guard           │  invalid postedByUserId → stop, no writes
    │                     │  notificationsSent / ledger claim → skip
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Followers       │  all followers − author − alerts disabled
    └─────────┬───────────┘
              │   none → log, stop (no status write)
              ▼
    ┌─────────────────────┐
    │  2. Eligibility     │  group-scoped or all-members rules
    └─────────┬───────────┘
              │   none → log, stop
              ▼
    ┌─────────────────────┐
    │  3. Tokens          │  valid tokens, deduplicated
    └─────────┬───────────┘
              │   none → log, stop
              ▼
    ┌─────────────────────┐
    │  4. Dispatch        │  one send per token, progress checkpoints
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. Status writer   │  success: notificationsSent=True + counts
    │                     │  failure: notificationsSent=False + error
    └─────────────────────┘

Steps 1–5 run under one deadline (PIPELINE_TIMEOUT_SECONDS). A timeout
or any unexpected exception is a pipeline failure: it is written to the
alert record and the ledger claim is released so the trigger can be
re-delivered by hand. A failed status write is logged and never raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional

from backend.app.alerts.channels.fcm_push import PushSender
from backend.app.alerts.dispatcher import CLICK_ACTION, dispatch_alert, dispatch_messages
from backend.app.alerts.eligibility import filter_eligible
from backend.app.alerts.followers import filter_alerts_enabled, resolve_followers
from backend.app.alerts.models import (
    Alert,
    DispatchResult,
    OrganizationRequest,
    PipelineReport,
    PushMessage,
    utcnow,
)
from backend.app.alerts.preferences import PreferenceStore
from backend.app.alerts.store import AlertStore
from backend.app.alerts.tokens import resolve_tokens
from backend.app.core.cache import AlertLedger
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import NotFoundError, PipelineTimeoutError

logger = logging.getLogger(__name__)

INVALID_AUTHOR_IDS = ("", "unknown")


def is_valid_author(user_id: Optional[str]) -> bool:
    return bool(user_id) and user_id.strip() not in INVALID_AUTHOR_IDS


class AlertNotificationService:
    """
    Runs the notification pipeline for one alert at a time.

    Usage:
        service = AlertNotificationService(store, sender, ledger)
        alert = await service.post_alert(alert)
        report = await service.handle_alert_created(alert.organization_id, alert.id)
    """

    def __init__(
        self,
        store: AlertStore,
        sender: PushSender,
        ledger: AlertLedger,
        cfg: Optional[Settings] = None,
    ):
        self.store = store
        self.sender = sender
        self.ledger = ledger
        self.cfg = cfg or default_settings
        self.preferences = PreferenceStore(store)

    # ─────────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────────

    async def post_alert(self, alert: Alert) -> Alert:
        """Persist a new alert record (the create event follows)."""
        created = await self.store.create_alert(alert)
        logger.info(
            "Alert created: %s '%s' for %s",
            created.id, created.title, created.organization_id,
            extra={"alert_id": created.id, "organization_id": created.organization_id},
        )
        return created

    async def handle_alert_created(self, org_id: str, alert_id: str) -> PipelineReport:
        """React to one alert-create event."""
        report = PipelineReport(alert_id=alert_id, organization_id=org_id)

        alert = await self.store.get_alert(org_id, alert_id)
        if alert is None:
            raise NotFoundError("Alert", organization_id=org_id, alert_id=alert_id)

        logger.info(
            "New alert posted: %s '%s' (group=%s)",
            alert_id, alert.title, alert.group_id or "all members",
            extra={"alert_id": alert_id, "organization_id": org_id},
        )

        if not is_valid_author(alert.posted_by_user_id):
            logger.error(
                "Invalid postedByUserId %r on alert %s — skipping notifications",
                alert.posted_by_user_id, alert_id,
                extra={"alert_id": alert_id, "organization_id": org_id},
            )
            report.status = "skipped"
            report.error = "invalid-author"
            return report

        if alert.notifications_sent is True:
            logger.info("Alert %s already notified — skipping duplicate trigger", alert_id)
            report.status = "skipped"
            report.error = "already-sent"
            return report

        if not await self.ledger.claim(alert_id):
            logger.info("Alert %s already claimed — skipping duplicate trigger", alert_id)
            report.status = "skipped"
            report.error = "duplicate-trigger"
            return report

        start = time.perf_counter()
        timeout = self.cfg.PIPELINE_TIMEOUT_SECONDS
        try:
            await asyncio.wait_for(self._run_pipeline(alert, report), timeout=timeout)
        except asyncio.TimeoutError:
            err = PipelineTimeoutError(alert_id, timeout)
            logger.error(err.message, extra={"alert_id": alert_id, "organization_id": org_id})
            await self._fail(alert, report, err.message)
        except Exception as exc:
            logger.exception(
                "Notification pipeline failed for alert %s", alert_id,
                extra={"alert_id": alert_id, "organization_id": org_id},
            )
            await self._fail(alert, report, str(exc) or type(exc).__name__)

        logger.info(
            "Alert %s pipeline finished: %s",
            alert_id, report.status,
            extra={
                "alert_id": alert_id,
                "organization_id": org_id,
                "duration_ms": (time.perf_counter() - start) * 1000,
            },
        )
        return report

    # ─────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────

    async def _run_pipeline(self, alert: Alert, report: PipelineReport) -> None:
        org_id = alert.organization_id
        concurrency = self.cfg.FANOUT_CONCURRENCY

        followers = await resolve_followers(self.store, org_id, alert.posted_by_user_id)
        followers = await filter_alerts_enabled(self.store, followers, concurrency=concurrency)
        report.follower_count = len(followers)
        if not followers:
            logger.info("No followers to notify for organization %s", org_id)
            report.status = "no_recipients"
            return

        eligibility = await filter_eligible(
            self.preferences, org_id, followers, alert.group_id,
            concurrency=concurrency,
        )
        report.eligible_count = len(eligibility.eligible)
        if not eligibility.eligible:
            logger.info(
                "No eligible recipients for alert %s (group %s)",
                alert.id, alert.group_id or "all members",
            )
            report.status = "no_recipients"
            return

        tokens = await resolve_tokens(
            self.store, eligibility.eligible,
            min_length=self.cfg.MIN_TOKEN_LENGTH,
            concurrency=concurrency,
        )
        report.token_count = len(tokens.tokens)
        report.duplicate_tokens = tokens.duplicates
        if not tokens.tokens:
            logger.info("No valid delivery tokens for alert %s", alert.id)
            report.status = "no_recipients"
            return

        async def checkpoint(success: int, failure: int) -> None:
            await self.store.update_alert(
                org_id, alert.id,
                notification_progress={"successCount": success, "failureCount": failure},
            )

        report.dispatch = await dispatch_alert(
            self.sender, alert, tokens.tokens,
            concurrency=self.cfg.DISPATCH_CONCURRENCY,
            checkpoint_every=self.cfg.DISPATCH_CHECKPOINT_EVERY,
            on_progress=checkpoint,
        )
        report.status = "sent"
        await self.write_success(alert, report.dispatch)

    async def _fail(self, alert: Alert, report: PipelineReport, message: str) -> None:
        report.status = "failed"
        report.error = message
        await self.write_failure(alert, message)
        await self.ledger.release(alert.id)

    # ─────────────────────────────────────────────────────────────────────
    # Status writer
    # ─────────────────────────────────────────────────────────────────────

    async def write_success(self, alert: Alert, result: DispatchResult) -> bool:
        try:
            await self.store.update_alert(
                alert.organization_id, alert.id,
                notifications_sent=True,
                notification_count=result.success_count,
                notification_failures=result.failure_count,
                notification_sent_at=utcnow(),
            )
        except Exception as exc:
            logger.error("Could not record delivery status for alert %s: %s", alert.id, exc)
            return False
        return True

    async def write_failure(self, alert: Alert, message: str) -> bool:
        try:
            await self.store.update_alert(
                alert.organization_id, alert.id,
                notifications_sent=False,
                notification_error=message,
                notification_error_at=utcnow(),
            )
        except Exception as exc:
            logger.error("Could not record delivery error for alert %s: %s", alert.id, exc)
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────
    # Organization requests → admins
    # ─────────────────────────────────────────────────────────────────────

    async def post_organization_request(self, request: OrganizationRequest) -> OrganizationRequest:
        created = await self.store.create_organization_request(request)
        logger.info(
            "New organization request submitted: %s (%s, %s)",
            created.id, created.name, created.contact_person_email,
        )
        return created

    async def notify_admins_of_organization_request(self, request_id: str) -> DispatchResult:
        """Push 'New Organization Request' to every admin with a valid token."""
        request = await self.store.get_organization_request(request_id)
        if request is None:
            raise NotFoundError("OrganizationRequest", request_id=request_id)

        result = DispatchResult()
        try:
            admins = [u.id for u in await self.store.list_users() if u.is_admin]
            if not admins:
                logger.info("No admin users found to notify")
                return result

            tokens = await resolve_tokens(
                self.store, admins,
                min_length=self.cfg.MIN_TOKEN_LENGTH,
                concurrency=self.cfg.FANOUT_CONCURRENCY,
            )
            if not tokens.tokens:
                logger.info("No valid delivery tokens found for admins")
                return result

            data: Dict[str, str] = {
                "type": "organization_request",
                "requestId": request.id,
                "organizationName": request.name or "",
                "contactEmail": request.contact_person_email or "",
                "click_action": CLICK_ACTION,
            }
            messages = [
                PushMessage(
                    token=token,
                    title="New Organization Request",
                    body=f"{request.name} has requested to join the platform",
                    data=dict(data),
                )
                for token in tokens.tokens
            ]
            result = await dispatch_messages(
                self.sender, messages, concurrency=self.cfg.DISPATCH_CONCURRENCY,
            )
            logger.info(
                "Admin notifications completed: %d success, %d failures",
                result.success_count, result.failure_count,
            )
            await self.store.update_organization_request(
                request.id,
                admin_notifications_sent=True,
                admin_notification_count=result.success_count,
                admin_notification_failures=result.failure_count,
                admin_notification_sent_at=utcnow(),
            )
        except Exception as exc:
            logger.error("Error sending admin notifications for %s: %s", request_id, exc)
            try:
                await self.store.update_organization_request(
                    request.id,
                    admin_notifications_sent=False,
                    admin_notification_error=str(exc) or type(exc).__name__,
                    admin_notification_error_at=utcnow(),
                )
            except Exception as write_exc:
                logger.error("Could not record admin notification error: %s", write_exc)
        return result
