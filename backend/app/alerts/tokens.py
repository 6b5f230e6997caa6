"""
tokens.py — Resolve push delivery tokens for eligible users.

A user without a usable token is skipped silently; a token counts as
usable when it is a non-blank string longer than the configured minimum
(real FCM registration tokens run well past 100 characters). Two users
on one device share one token, so the list is deduplicated before any
send.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from backend.app.alerts.fanout import bounded_map
from backend.app.alerts.models import is_valid_token
from backend.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


@dataclass
class TokenResolution:
    tokens: List[str] = field(default_factory=list)  # unique, first-seen order
    users_with_tokens: int = 0
    duplicates: int = 0
    skipped_users: List[str] = field(default_factory=list)


def deduplicate_tokens(tokens: Iterable[str]) -> List[str]:
    """Unique tokens, preserving first-seen order."""
    return list(dict.fromkeys(tokens))


async def resolve_tokens(
    store: AlertStore,
    user_ids: Iterable[str],
    *,
    min_length: int = 100,
    concurrency: int = 16,
) -> TokenResolution:
    ordered = list(dict.fromkeys(user_ids))

    async def fetch(user_id: str) -> Optional[str]:
        try:
            user = await store.get_user(user_id)
        except Exception as exc:
            logger.error("Error getting delivery token for user %s: %s", user_id, exc)
            return None
        if user is None:
            logger.debug("User record not found: %s", user_id)
            return None
        token = user.fcm_token
        if not is_valid_token(token, min_length):
            logger.debug(
                "No usable token for user %s (length %d)",
                user_id, len(token) if isinstance(token, str) else 0,
            )
            return None
        return token

    fetched = await bounded_map(ordered, fetch, limit=concurrency)

    resolution = TokenResolution()
    raw: List[str] = []
    for user_id, token in zip(ordered, fetched):
        if token is None:
            resolution.skipped_users.append(user_id)
        else:
            raw.append(token)

    resolution.users_with_tokens = len(raw)
    resolution.tokens = deduplicate_tokens(raw)
    resolution.duplicates = len(raw) - len(resolution.tokens)

    if resolution.duplicates:
        logger.warning(
            "Found %d duplicate delivery tokens — collapsing %d → %d",
            resolution.duplicates, len(raw), len(resolution.tokens),
        )
    logger.info(
        "Valid delivery tokens: %d/%d users (%d unique)",
        len(raw), len(ordered), len(resolution.tokens),
    )
    return resolution
