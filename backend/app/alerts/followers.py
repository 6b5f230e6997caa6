"""
followers.py — Resolve who follows an organization.

Returns follower user ids with the alert's author removed (even when the
author follows their own organization) and with alerts-disabled
followers dropped. An organization with no followers yields an empty
set; that is not an error.
"""

from __future__ import annotations

import logging
from typing import Set

from backend.app.alerts.fanout import bounded_map
from backend.app.alerts.models import Follower, utcnow
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import NotFoundError

logger = logging.getLogger(__name__)


async def resolve_followers(
    store: AlertStore,
    org_id: str,
    excluded_user_id: str,
) -> Set[str]:
    """All follower ids of ``org_id`` except ``excluded_user_id``."""
    followers = await store.list_followers(org_id)

    follower_ids: Set[str] = set()
    for follower in followers:
        if follower.user_id == excluded_user_id:
            logger.info(
                "User %s is the alert author — excluded from notifications",
                follower.user_id,
            )
            continue
        if follower.alerts_enabled is False:
            logger.debug("Follower %s has alerts disabled for %s", follower.user_id, org_id)
            continue
        follower_ids.add(follower.user_id)

    logger.info(
        "Organization %s: %d followers (%d after exclusions)",
        org_id, len(followers), len(follower_ids),
        extra={"organization_id": org_id, "recipient_count": len(follower_ids)},
    )
    return follower_ids


async def filter_alerts_enabled(
    store: AlertStore,
    user_ids: Set[str],
    *,
    concurrency: int = 16,
) -> Set[str]:
    """
    Drop users whose account-level ``alerts_enabled`` is False.

    Unset / missing user records default to enabled; lookup errors keep
    the user (fail-open).
    """
    ordered = sorted(user_ids)

    async def check(user_id: str) -> bool:
        try:
            user = await store.get_user(user_id)
        except Exception as exc:
            logger.warning("Could not read user %s, keeping: %s", user_id, exc)
            return True
        return user is None or user.alerts_enabled is not False

    keep = await bounded_map(ordered, check, limit=concurrency)
    active = {uid for uid, ok in zip(ordered, keep) if ok}
    if len(active) != len(ordered):
        logger.info("%d followers have alerts disabled", len(ordered) - len(active))
    return active


async def follow_organization(store: AlertStore, org_id: str, user_id: str) -> Follower:
    """Create the follower record (idempotent) and bump followerCount."""
    org = await store.get_organization(org_id)
    if org is None:
        raise NotFoundError("Organization", organization_id=org_id)

    existing = await store.get_follower(org_id, user_id)
    if existing is not None:
        return existing

    follower = Follower(organization_id=org_id, user_id=user_id, group_preferences={})
    await store.put_follower(follower)
    await store.update_organization(
        org_id, follower_count=org.follower_count + 1, updated_at=utcnow(),
    )
    logger.info("User %s now follows %s", user_id, org_id)
    return follower


async def unfollow_organization(store: AlertStore, org_id: str, user_id: str) -> bool:
    """Remove the follower record; False when the user was not following."""
    org = await store.get_organization(org_id)
    if org is None:
        raise NotFoundError("Organization", organization_id=org_id)

    removed = await store.delete_follower(org_id, user_id)
    if removed:
        await store.update_organization(
            org_id, follower_count=max(0, org.follower_count - 1), updated_at=utcnow(),
        )
        logger.info("User %s unfollowed %s", user_id, org_id)
    return removed
