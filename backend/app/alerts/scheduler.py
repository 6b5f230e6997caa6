"""
scheduler.py — Scheduled alert execution.

═══════════════════════════════════════════════════════════════════════════
EXECUTION CYCLE
═══════════════════════════════════════════════════════════════════════════

Every SCHEDULER_INTERVAL_SECONDS the runner performs one scan:

    1. Load active scheduled alerts with scheduledDate <= now,
       oldest first
    2. For each one, independently:
         a. materialize a live Alert (carries scheduledAlertId)
         b. run it through the alert trigger
         c. non-recurring → isActive=False, executed=True
            recurring     → advance scheduledDate from its own value;
                            past endDate / maxOccurrences reached →
                            isActive=False, recurrenceEnded=True
    3. Deactivate active scheduled alerts whose expiresAt has passed

A failure on one scheduled alert is logged and the scan moves on; the
failed record stays due and is retried on the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from backend.app.alerts.alert_service import AlertNotificationService
from backend.app.alerts.models import ScheduledAlert, utcnow
from backend.app.alerts.recurrence import plan_next
from backend.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionSummary:
    """Outcome of one scan."""
    due: int = 0
    executed: int = 0
    advanced: int = 0
    ended: int = 0
    failed: int = 0
    expired: int = 0
    alert_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "due": self.due,
            "executed": self.executed,
            "advanced": self.advanced,
            "ended": self.ended,
            "failed": self.failed,
            "expired": self.expired,
            "alertIds": list(self.alert_ids),
        }


class ScheduledAlertExecutor:

    def __init__(self, store: AlertStore, trigger: AlertNotificationService):
        self.store = store
        self.trigger = trigger

    async def run_once(self, now: Optional[datetime] = None) -> ExecutionSummary:
        """Execute every due scheduled alert once."""
        now = now or utcnow()
        summary = ExecutionSummary()

        due = await self.store.list_due_scheduled_alerts(now)
        summary.due = len(due)
        if due:
            logger.info("Found %d scheduled alerts ready for execution", len(due))

        for scheduled in due:
            try:
                alert_id, outcome = await self.execute(scheduled, now)
            except Exception as exc:
                summary.failed += 1
                logger.error(
                    "Error executing scheduled alert %s: %s", scheduled.id, exc,
                    extra={
                        "scheduled_alert_id": scheduled.id,
                        "organization_id": scheduled.organization_id,
                    },
                )
                continue
            summary.executed += 1
            summary.alert_ids.append(alert_id)
            if outcome == "advanced":
                summary.advanced += 1
            elif outcome == "ended":
                summary.ended += 1

        return summary

    async def execute(self, scheduled: ScheduledAlert, now: datetime) -> Tuple[str, str]:
        """Fire one scheduled alert and update its schedule.

        Returns (new alert id, "fired" | "advanced" | "ended").
        """
        logger.info(
            "Executing scheduled alert: %s '%s'", scheduled.id, scheduled.title,
            extra={
                "scheduled_alert_id": scheduled.id,
                "organization_id": scheduled.organization_id,
            },
        )
        alert = await self.trigger.post_alert(scheduled.materialize())
        await self.trigger.handle_alert_created(alert.organization_id, alert.id)
        outcome = await self._reschedule(scheduled, now)
        return alert.id, outcome

    async def _reschedule(self, scheduled: ScheduledAlert, now: datetime) -> str:
        executions = scheduled.execution_count + 1
        common = dict(execution_count=executions, last_executed_at=now, updated_at=now)

        if not scheduled.is_recurring or scheduled.recurrence_pattern is None:
            await self.store.update_scheduled_alert(
                scheduled.organization_id, scheduled.id,
                is_active=False, executed=True, **common,
            )
            logger.info("Deactivated non-recurring scheduled alert %s", scheduled.id)
            return "fired"

        next_date = plan_next(scheduled.scheduled_date, scheduled.recurrence_pattern, executions)
        if next_date is None:
            await self.store.update_scheduled_alert(
                scheduled.organization_id, scheduled.id,
                is_active=False, recurrence_ended=True, **common,
            )
            logger.info("Recurrence ended for scheduled alert %s", scheduled.id)
            return "ended"

        await self.store.update_scheduled_alert(
            scheduled.organization_id, scheduled.id,
            scheduled_date=next_date, **common,
        )
        logger.info(
            "Scheduled alert %s advanced to %s", scheduled.id, next_date.isoformat(),
        )
        return "advanced"

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Deactivate active scheduled alerts past their expiresAt."""
        now = now or utcnow()
        expired = await self.store.list_expired_scheduled_alerts(now)
        cleaned = 0
        for scheduled in expired:
            try:
                await self.store.update_scheduled_alert(
                    scheduled.organization_id, scheduled.id,
                    is_active=False, updated_at=now,
                )
                cleaned += 1
            except Exception as exc:
                logger.error("Could not deactivate expired alert %s: %s", scheduled.id, exc)
        if cleaned:
            logger.info("Cleaned up %d expired scheduled alerts", cleaned)
        return cleaned

    async def tick(self, now: Optional[datetime] = None) -> ExecutionSummary:
        now = now or utcnow()
        summary = await self.run_once(now)
        summary.expired = await self.cleanup_expired(now)
        return summary


class ScheduledAlertRunner:
    """
    Periodic in-process loop around ScheduledAlertExecutor.tick().

    Usage:
        runner = ScheduledAlertRunner(executor, interval_seconds=60)
        runner.start()
        ...
        await runner.stop()
    """

    def __init__(self, executor: ScheduledAlertExecutor, interval_seconds: float = 60.0):
        self.executor = executor
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="scheduled-alert-runner")
        logger.info("Scheduled alert runner started (every %.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduled alert runner stopped after %d ticks", self.ticks)

    async def _loop(self) -> None:
        while True:
            try:
                summary = await self.executor.tick()
                if summary.due or summary.expired:
                    logger.info("Scheduler tick: %s", summary.to_dict())
            except Exception:
                logger.exception("Scheduled alert scan failed")
            self.ticks += 1
            await asyncio.sleep(self.interval_seconds)
