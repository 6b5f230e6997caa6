"""
dispatcher.py — Build notification payloads and send one per token.

Every token is sent to independently: a failure on token i is counted
and logged and dispatch moves on to token i+1. A malformed or revoked
token never blocks the remaining recipients.

Sends may run concurrently (bounded); each send reports its own outcome
and counts are summed afterwards, so no counter is shared between tasks.
An optional progress callback receives running totals every
``checkpoint_every`` sends so a long fan-out that hits its deadline still
leaves a partial record behind.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from backend.app.alerts.channels.fcm_push import PushSender
from backend.app.alerts.models import (
    DEFAULT_SEVERITY_PREFIX,
    SEVERITY_PREFIXES,
    Alert,
    DispatchResult,
    PushMessage,
    Severity,
)

logger = logging.getLogger(__name__)

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"

ProgressCallback = Callable[[int, int], Awaitable[None]]


def severity_prefix(severity: Optional[str]) -> str:
    parsed = Severity.parse(severity)
    if parsed is None:
        return DEFAULT_SEVERITY_PREFIX
    return SEVERITY_PREFIXES[parsed]


def build_notification_title(alert: Alert) -> str:
    """``{prefix}{groupName}: {title}`` for group alerts, else ``{prefix}{title}``."""
    prefix = severity_prefix(alert.severity)
    if alert.group_name:
        return f"{prefix}{alert.group_name}: {alert.title}"
    return f"{prefix}{alert.title}"


def build_notification_data(alert: Alert) -> Dict[str, str]:
    """Data block delivered with the notification (all string values)."""
    return {
        "alertId": alert.id,
        "organizationId": alert.organization_id,
        "organizationName": alert.organization_name or "",
        "alertType": alert.type or "",
        "severity": alert.severity or "",
        "groupId": alert.group_id or "",
        "groupName": alert.group_name or "",
        "click_action": CLICK_ACTION,
    }


def build_messages(alert: Alert, tokens: Sequence[str]) -> List[PushMessage]:
    title = build_notification_title(alert)
    data = build_notification_data(alert)
    return [
        PushMessage(token=token, title=title, body=alert.description, data=dict(data))
        for token in tokens
    ]


async def _send_one(sender: PushSender, message: PushMessage, index: int, total: int) -> Optional[str]:
    """None on success, error text on failure."""
    try:
        await sender.send(message)
    except Exception as exc:
        logger.error("Failed to send to token %d/%d: %s", index + 1, total, exc)
        return str(exc) or type(exc).__name__
    logger.debug("Sent notification to token %d/%d", index + 1, total)
    return None


async def dispatch_messages(
    sender: PushSender,
    messages: Sequence[PushMessage],
    *,
    concurrency: int = 1,
    checkpoint_every: int = 0,
    on_progress: Optional[ProgressCallback] = None,
) -> DispatchResult:
    """
    Send ``messages`` in chunks of ``concurrency``.

    With ``concurrency == 1`` sends are strictly sequential. Progress is
    reported after each chunk that crosses a ``checkpoint_every`` boundary.
    """
    result = DispatchResult()
    total = len(messages)
    step = max(1, concurrency)
    last_checkpoint = 0

    for start in range(0, total, step):
        chunk = messages[start:start + step]
        outcomes = await asyncio.gather(*(
            _send_one(sender, msg, start + offset, total)
            for offset, msg in enumerate(chunk)
        ))
        for error in outcomes:
            if error is None:
                result.success_count += 1
            else:
                result.failure_count += 1
                result.errors.append(error)

        done = result.total
        if (
            on_progress is not None
            and checkpoint_every > 0
            and done < total
            and done - last_checkpoint >= checkpoint_every
        ):
            last_checkpoint = done
            try:
                await on_progress(result.success_count, result.failure_count)
            except Exception as exc:
                logger.warning("Progress checkpoint failed: %s", exc)

    return result


async def dispatch_alert(
    sender: PushSender,
    alert: Alert,
    tokens: Sequence[str],
    *,
    concurrency: int = 1,
    checkpoint_every: int = 0,
    on_progress: Optional[ProgressCallback] = None,
) -> DispatchResult:
    """Build one notification per token for ``alert`` and send them all."""
    messages = build_messages(alert, tokens)
    result = await dispatch_messages(
        sender, messages,
        concurrency=concurrency,
        checkpoint_every=checkpoint_every,
        on_progress=on_progress,
    )
    logger.info(
        "Push notifications completed for alert %s: %d sent, %d failed",
        alert.id, result.success_count, result.failure_count,
        extra={
            "alert_id": alert.id,
            "success_count": result.success_count,
            "failure_count": result.failure_count,
        },
    )
    return result
