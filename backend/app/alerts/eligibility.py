"""
eligibility.py — Narrow followers to eligible recipients using group preferences.

═══════════════════════════════════════════════════════════════════════════
RULES
═══════════════════════════════════════════════════════════════════════════

Group-scoped alert (alert.group_id set):

    Preference for group        Outcome
    ────────────────────        ─────────────────────────────────────────
    document missing            create {group: True} if absent, include
    key unset                   initialize key to True, include
    True                        include
    False                       exclude (no writes)
    anything else               include

All-members alert (no group_id):

    document missing            create {} if absent, include
    no keys set                 include (first contact)
    any value True              include
    only False values           exclude
    anything else               include

Failure policy: a read error for one follower includes that follower; a
write error during lazy initialization is logged and the follower is
still included. Over-notification is preferred to silent drops.

Policy: opt-out-by-default. An unset group preference counts as enabled
and is written back as an explicit True so later alerts read a value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from backend.app.alerts.fanout import bounded_map
from backend.app.alerts.preferences import PreferenceStore

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    INCLUDED    = "included"
    INITIALIZED = "initialized"  # included, preference written
    EXCLUDED    = "excluded"
    FAIL_OPEN   = "fail_open"    # included after a read error


@dataclass
class EligibilityResult:
    eligible: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    initialized: List[str] = field(default_factory=list)
    fail_open: List[str] = field(default_factory=list)


async def _decide_for_group(
    prefs: PreferenceStore, org_id: str, user_id: str, group_id: str,
) -> Decision:
    current = await prefs.get_preferences(org_id, user_id)

    if current is None:
        try:
            await prefs.ensure_document(org_id, user_id, {group_id: True})
        except Exception as exc:
            logger.warning("Could not create preferences for %s: %s", user_id, exc)
            return Decision.INCLUDED
        logger.debug("Follower %s: created preferences with %s=True", user_id, group_id)
        return Decision.INITIALIZED

    if group_id not in current:
        try:
            await prefs.initialize_group_preference(org_id, user_id, group_id, True)
        except Exception as exc:
            logger.warning(
                "Could not initialize preference %s for %s: %s", group_id, user_id, exc,
            )
            return Decision.INCLUDED
        logger.debug("Follower %s: first alert in group %s, enabled by default", user_id, group_id)
        return Decision.INITIALIZED

    value = current[group_id]
    if value is False:
        return Decision.EXCLUDED
    if value is not True:
        logger.debug("Follower %s: unclear preference %r, defaulting to enabled", user_id, value)
    return Decision.INCLUDED


async def _decide_for_all_members(
    prefs: PreferenceStore, org_id: str, user_id: str,
) -> Decision:
    current = await prefs.get_preferences(org_id, user_id)

    if current is None:
        try:
            await prefs.ensure_document(org_id, user_id, {})
        except Exception as exc:
            logger.warning("Could not create preferences for %s: %s", user_id, exc)
        return Decision.INCLUDED

    if not current:
        return Decision.INCLUDED

    values = list(current.values())
    if any(v is True for v in values):
        return Decision.INCLUDED
    if any(v is False for v in values):
        return Decision.EXCLUDED
    return Decision.INCLUDED


async def filter_eligible(
    prefs: PreferenceStore,
    org_id: str,
    follower_ids: Iterable[str],
    group_id: Optional[str] = None,
    *,
    concurrency: int = 16,
) -> EligibilityResult:
    """
    Apply group-scoped or all-members rules to ``follower_ids``.

    Lookups fan out with at most ``concurrency`` in flight; each
    follower's outcome is isolated from the others.
    """
    ordered = sorted(set(follower_ids))

    async def decide(user_id: str) -> Decision:
        try:
            if group_id:
                return await _decide_for_group(prefs, org_id, user_id, group_id)
            return await _decide_for_all_members(prefs, org_id, user_id)
        except Exception as exc:
            logger.error(
                "Error checking preferences for follower %s, including: %s", user_id, exc,
            )
            return Decision.FAIL_OPEN

    decisions = await bounded_map(ordered, decide, limit=concurrency)

    result = EligibilityResult()
    for user_id, decision in zip(ordered, decisions):
        if decision is Decision.EXCLUDED:
            result.excluded.append(user_id)
            continue
        result.eligible.append(user_id)
        if decision is Decision.INITIALIZED:
            result.initialized.append(user_id)
        elif decision is Decision.FAIL_OPEN:
            result.fail_open.append(user_id)

    logger.info(
        "Eligibility (%s): %d eligible, %d excluded, %d initialized, %d fail-open",
        f"group {group_id}" if group_id else "all members",
        len(result.eligible), len(result.excluded),
        len(result.initialized), len(result.fail_open),
        extra={"organization_id": org_id, "recipient_count": len(result.eligible)},
    )
    return result
