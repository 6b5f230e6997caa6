"""
Shared builders for the alert engine tests.

Stores are seeded synchronously through their public dicts so each test
drives the async code with a single ``asyncio.run``.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

from backend.app.alerts.channels.fcm_push import PushSender
from backend.app.alerts.models import (
    Alert,
    Follower,
    Organization,
    PushMessage,
    UserRecord,
)
from backend.app.alerts.store import InMemoryAlertStore
from backend.app.core.config import Settings
from backend.app.core.errors import PushDeliveryError


def run(coro):
    return asyncio.run(coro)


def make_token(label: str) -> str:
    """A delivery token long enough to pass validation (> 100 chars)."""
    return f"{label}:" + "t" * 140


def make_settings(**overrides) -> Settings:
    values = dict(
        ENVIRONMENT="test",
        STORE_BACKEND="memory",
        REDIS_URL=None,
        PUSH_PROVIDER="simulation",
        FCM_PROJECT_ID=None,
        FCM_CREDENTIALS_FILE=None,
        FANOUT_CONCURRENCY=4,
        DISPATCH_CONCURRENCY=2,
        DISPATCH_CHECKPOINT_EVERY=0,
        PIPELINE_TIMEOUT_SECONDS=5.0,
        SCHEDULER_ENABLED=False,
    )
    values.update(overrides)
    return Settings(**values)


def seed_organization(
    store: InMemoryAlertStore,
    org_id: str = "O",
    name: str = "Springfield Fire",
    followers: Optional[Dict[str, Optional[Dict[str, bool]]]] = None,
    tokens: Optional[Dict[str, Optional[str]]] = None,
) -> None:
    """
    Seed an organization with followers and user records.

    ``followers`` maps user id → group preferences (None = no preference
    document). ``tokens`` maps user id → token; users listed only in
    ``followers`` get a valid token derived from their id.
    """
    followers = followers or {}
    tokens = tokens or {}
    store.organizations[org_id] = Organization(
        id=org_id, name=name, follower_count=len(followers),
    )
    org_followers = store.followers.setdefault(org_id, {})
    for user_id, prefs in followers.items():
        org_followers[user_id] = Follower(
            organization_id=org_id,
            user_id=user_id,
            group_preferences=None if prefs is None else dict(prefs),
        )
        if user_id not in store.users:
            token = tokens.get(user_id, make_token(user_id))
            store.users[user_id] = UserRecord(id=user_id, fcm_token=token)
    for user_id, token in tokens.items():
        if user_id not in store.users:
            store.users[user_id] = UserRecord(id=user_id, fcm_token=token)


def make_alert(
    org_id: str = "O",
    author: str = "A",
    group_id: Optional[str] = None,
    severity: str = "medium",
    title: str = "Road closure",
) -> Alert:
    return Alert(
        organization_id=org_id,
        organization_name="Springfield Fire",
        title=title,
        description="Main St closed until 5pm.",
        group_id=group_id,
        group_name=f"Group {group_id}" if group_id else None,
        severity=severity,
        posted_by="Chief",
        posted_by_user_id=author,
    )


class RecordingSender(PushSender):
    """Records every message; rejects tokens listed in ``fail_tokens``."""

    name = "recording"

    def __init__(self, fail_tokens: Iterable[str] = (), delay: float = 0.0):
        self.fail_tokens = set(fail_tokens)
        self.delay = delay
        self.sent: List[PushMessage] = []
        self.attempts: List[str] = []

    async def send(self, message: PushMessage) -> str:
        self.attempts.append(message.token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if message.token in self.fail_tokens:
            raise PushDeliveryError("registration-token-not-registered", status=404)
        self.sent.append(message)
        return f"projects/test/messages/{len(self.sent)}"

    @property
    def tokens(self) -> List[str]:
        return [m.token for m in self.sent]
