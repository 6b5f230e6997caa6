"""
test_preferences_followers.py — Preference accessor, follower resolution,
follow / unfollow.

Run with:
    pytest tests/test_preferences_followers.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.followers import (
    filter_alerts_enabled,
    follow_organization,
    resolve_followers,
    unfollow_organization,
)
from backend.app.alerts.models import Follower, UserRecord
from backend.app.alerts.preferences import PreferenceStore
from backend.app.alerts.store import InMemoryAlertStore, RecordNotFound
from backend.app.core.errors import NotFoundError

from tests.factories import run, seed_organization


# ═══════════════════════════════════════════════════════════════════════════
# Preference Store
# ═══════════════════════════════════════════════════════════════════════════

class TestPreferenceStore:

    def test_missing_document_reads_none(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": None})
        prefs = PreferenceStore(store)
        assert run(prefs.get_preferences("O", "B")) is None
        assert run(prefs.get_group_preference("O", "B", "G1")) is None

    def test_unset_key_is_not_false(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G2": False}})
        prefs = PreferenceStore(store)
        assert run(prefs.get_group_preference("O", "B", "G1")) is None
        assert run(prefs.get_group_preference("O", "B", "G2")) is False

    def test_toggle_overwrites(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G1": True}})
        prefs = PreferenceStore(store)

        async def scenario():
            await prefs.set_group_preference("O", "B", "G1", False)
            return await prefs.get_preferences("O", "B")

        assert run(scenario()) == {"G1": False}

    def test_initialize_does_not_overwrite_explicit_value(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G1": False}})
        prefs = PreferenceStore(store)

        wrote = run(prefs.initialize_group_preference("O", "B", "G1", True))
        assert wrote is False
        assert store.followers["O"]["B"].group_preferences == {"G1": False}

    def test_initialize_writes_unset_key(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        prefs = PreferenceStore(store)

        assert run(prefs.initialize_group_preference("O", "B", "G1")) is True
        assert store.followers["O"]["B"].group_preferences == {"G1": True}

    def test_initialize_without_follower_raises(self):
        store = InMemoryAlertStore()
        prefs = PreferenceStore(store)
        with pytest.raises(RecordNotFound):
            run(prefs.initialize_group_preference("O", "ghost", "G1"))

    def test_ensure_document_only_when_missing(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": None, "C": {"G1": False}})
        prefs = PreferenceStore(store)

        async def scenario():
            created_b = await prefs.ensure_document("O", "B", {"G1": True})
            created_c = await prefs.ensure_document("O", "C", {"G1": True})
            return created_b, created_c

        assert run(scenario()) == (True, False)
        assert store.followers["O"]["B"].group_preferences == {"G1": True}
        assert store.followers["O"]["C"].group_preferences == {"G1": False}


# ═══════════════════════════════════════════════════════════════════════════
# Follower Resolver
# ═══════════════════════════════════════════════════════════════════════════

class TestResolveFollowers:

    def test_author_always_excluded(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"A": {}, "B": {}, "C": {}})
        assert run(resolve_followers(store, "O", "A")) == {"B", "C"}

    def test_no_followers_is_empty_not_error(self):
        store = InMemoryAlertStore()
        seed_organization(store)
        assert run(resolve_followers(store, "O", "A")) == set()

    def test_unknown_org_is_empty(self):
        assert run(resolve_followers(InMemoryAlertStore(), "nope", "A")) == set()

    def test_follower_with_alerts_disabled_dropped(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}, "C": {}})
        store.followers["O"]["C"].alerts_enabled = False
        assert run(resolve_followers(store, "O", "A")) == {"B"}


class TestFilterAlertsEnabled:

    def test_user_level_flag(self):
        store = InMemoryAlertStore()
        store.users["B"] = UserRecord(id="B", alerts_enabled=True)
        store.users["C"] = UserRecord(id="C", alerts_enabled=False)
        kept = run(filter_alerts_enabled(store, {"B", "C", "D"}, concurrency=2))
        # D has no user record → enabled by default
        assert kept == {"B", "D"}

    def test_read_error_keeps_user(self):
        class FailingUsers(InMemoryAlertStore):
            async def get_user(self, user_id):
                raise RuntimeError("read timeout")

        kept = run(filter_alerts_enabled(FailingUsers(), {"B", "C"}))
        assert kept == {"B", "C"}


# ═══════════════════════════════════════════════════════════════════════════
# Follow / Unfollow
# ═══════════════════════════════════════════════════════════════════════════

class TestFollowUnfollow:

    def test_follow_creates_record_and_counts(self):
        store = InMemoryAlertStore()
        seed_organization(store)

        follower = run(follow_organization(store, "O", "U1"))
        assert isinstance(follower, Follower)
        assert follower.group_preferences == {}
        assert store.organizations["O"].follower_count == 1

    def test_follow_is_idempotent(self):
        store = InMemoryAlertStore()
        seed_organization(store)

        async def scenario():
            await follow_organization(store, "O", "U1")
            await follow_organization(store, "O", "U1")

        run(scenario())
        assert store.organizations["O"].follower_count == 1
        assert list(store.followers["O"]) == ["U1"]

    def test_unfollow(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"U1": {}})

        assert run(unfollow_organization(store, "O", "U1")) is True
        assert store.organizations["O"].follower_count == 0
        assert run(unfollow_organization(store, "O", "U1")) is False

    def test_unknown_organization(self):
        with pytest.raises(NotFoundError):
            run(follow_organization(InMemoryAlertStore(), "nope", "U1"))
