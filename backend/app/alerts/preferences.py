"""
preferences.py — Per-user, per-organization, per-group notification preferences.

Reads and writes Follower.group_preferences through the store contract.
The client UI reads and toggles through the same accessor; only the
eligibility filter performs lazy initialization of unset keys.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from backend.app.alerts.store import AlertStore

logger = logging.getLogger(__name__)


class PreferenceStore:
    """Accessor over the shared store for group preferences."""

    def __init__(self, store: AlertStore):
        self._store = store

    async def get_preferences(self, org_id: str, user_id: str) -> Optional[Dict[str, bool]]:
        """Full preference map; None when the document does not exist."""
        return await self._store.get_group_preferences(org_id, user_id)

    async def get_group_preference(
        self, org_id: str, user_id: str, group_id: str,
    ) -> Optional[bool]:
        """Explicit value for one group, or None when unset."""
        prefs = await self.get_preferences(org_id, user_id)
        if prefs is None:
            return None
        value = prefs.get(group_id)
        return value if isinstance(value, bool) else None

    async def set_group_preference(
        self, org_id: str, user_id: str, group_id: str, enabled: bool,
    ) -> None:
        """Explicit toggle (user action)."""
        await self._store.set_group_preference(org_id, user_id, group_id, enabled)
        logger.info(
            "Group preference set: org=%s user=%s group=%s enabled=%s",
            org_id, user_id, group_id, enabled,
        )

    async def initialize_group_preference(
        self, org_id: str, user_id: str, group_id: str, enabled: bool = True,
    ) -> bool:
        """
        Write ``group_id`` only if no value exists yet.

        Duplicate triggers may race here; both write the same value, so the
        loser's no-op is harmless. Returns True when this call wrote.
        """
        return await self._store.set_group_preference_if_absent(
            org_id, user_id, group_id, enabled,
        )

    async def ensure_document(
        self, org_id: str, user_id: str, defaults: Optional[Dict[str, bool]] = None,
    ) -> bool:
        """Create the preference document with ``defaults`` if it is missing."""
        return await self._store.create_preferences_if_absent(
            org_id, user_id, dict(defaults or {}),
        )
