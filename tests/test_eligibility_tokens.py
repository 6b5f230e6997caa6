"""
test_eligibility_tokens.py — Group-preference eligibility and token resolution.

Covers:
    • Group-scoped rules (unset → initialize, True, False, odd values,
      missing document)
    • All-members rules
    • Fail-open on read and write errors
    • Token validity, skipping, and deduplication

Run with:
    pytest tests/test_eligibility_tokens.py -v
"""

from __future__ import annotations

from backend.app.alerts.eligibility import filter_eligible
from backend.app.alerts.models import UserRecord, is_valid_token
from backend.app.alerts.preferences import PreferenceStore
from backend.app.alerts.store import InMemoryAlertStore
from backend.app.alerts.tokens import deduplicate_tokens, resolve_tokens

from tests.factories import make_token, run, seed_organization


# ═══════════════════════════════════════════════════════════════════════════
# Group-scoped eligibility
# ═══════════════════════════════════════════════════════════════════════════

class TestGroupScoped:

    def test_scenario_o_abc_g1(self):
        # B opted in explicitly, C never chose → both eligible, C initialized
        store = InMemoryAlertStore()
        seed_organization(store, followers={"A": {}, "B": {"G1": True}, "C": {}})

        result = run(filter_eligible(PreferenceStore(store), "O", {"B", "C"}, "G1"))

        assert result.eligible == ["B", "C"]
        assert result.initialized == ["C"]
        assert store.followers["O"]["C"].group_preferences == {"G1": True}
        assert store.followers["O"]["B"].group_preferences == {"G1": True}

    def test_explicit_opt_out_excluded_without_writes(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G1": False, "G2": True}})
        before = store.followers["O"]["B"].updated_at

        result = run(filter_eligible(PreferenceStore(store), "O", {"B"}, "G1"))

        assert result.eligible == []
        assert result.excluded == ["B"]
        assert store.followers["O"]["B"].group_preferences == {"G1": False, "G2": True}
        assert store.followers["O"]["B"].updated_at == before

    def test_opt_out_of_other_group_does_not_matter(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G2": False}})

        result = run(filter_eligible(PreferenceStore(store), "O", {"B"}, "G1"))

        assert result.eligible == ["B"]
        assert store.followers["O"]["B"].group_preferences == {"G2": False, "G1": True}

    def test_non_boolean_value_included(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        store.followers["O"]["B"].group_preferences = {"G1": "yes"}

        result = run(filter_eligible(PreferenceStore(store), "O", {"B"}, "G1"))
        assert result.eligible == ["B"]
        assert result.initialized == []

    def test_missing_document_created_and_included(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": None})

        result = run(filter_eligible(PreferenceStore(store), "O", {"B"}, "G1"))

        assert result.eligible == ["B"]
        assert store.followers["O"]["B"].group_preferences == {"G1": True}


# ═══════════════════════════════════════════════════════════════════════════
# All-members eligibility
# ═══════════════════════════════════════════════════════════════════════════

class TestAllMembers:

    def test_rules(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={
            "empty": {},
            "some_true": {"G1": False, "G2": True},
            "all_false": {"G1": False, "G2": False},
            "missing": None,
        })

        result = run(filter_eligible(
            PreferenceStore(store), "O",
            {"empty", "some_true", "all_false", "missing"},
        ))

        assert sorted(result.eligible) == ["empty", "missing", "some_true"]
        assert result.excluded == ["all_false"]
        # document created empty, no keys initialized
        assert store.followers["O"]["missing"].group_preferences == {}

    def test_no_writes_for_existing_documents(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        run(filter_eligible(PreferenceStore(store), "O", {"B"}))
        assert store.followers["O"]["B"].group_preferences == {}


# ═══════════════════════════════════════════════════════════════════════════
# Failure policy
# ═══════════════════════════════════════════════════════════════════════════

class FlakyPreferenceStore(InMemoryAlertStore):
    """Fails reads for ``read_fail`` users and all preference writes."""

    def __init__(self, read_fail=()):
        super().__init__()
        self.read_fail = set(read_fail)

    async def get_group_preferences(self, org_id, user_id):
        if user_id in self.read_fail:
            raise RuntimeError("preference read failed")
        return await super().get_group_preferences(org_id, user_id)

    async def set_group_preference_if_absent(self, *args, **kwargs):
        raise RuntimeError("write rejected")


class TestFailOpen:

    def test_read_error_includes_follower(self):
        store = FlakyPreferenceStore(read_fail={"B"})
        seed_organization(store, followers={"B": {"G1": False}, "C": {"G1": False}})

        result = run(filter_eligible(PreferenceStore(store), "O", {"B", "C"}, "G1"))

        assert result.eligible == ["B"]
        assert result.fail_open == ["B"]
        assert result.excluded == ["C"]

    def test_write_error_still_includes(self):
        store = FlakyPreferenceStore()
        seed_organization(store, followers={"B": {}})

        result = run(filter_eligible(PreferenceStore(store), "O", {"B"}, "G1"))

        assert result.eligible == ["B"]
        assert result.initialized == []
        assert store.followers["O"]["B"].group_preferences == {}

    def test_sequential_and_concurrent_agree(self):
        followers = {f"U{i:02d}": ({"G1": False} if i % 3 == 0 else {}) for i in range(12)}
        outcomes = []
        for limit in (1, 5):
            store = InMemoryAlertStore()
            seed_organization(store, followers=followers)
            result = run(filter_eligible(
                PreferenceStore(store), "O", set(followers), "G1", concurrency=limit,
            ))
            outcomes.append((result.eligible, result.excluded))
        assert outcomes[0] == outcomes[1]
        assert len(outcomes[0][1]) == 4


# ═══════════════════════════════════════════════════════════════════════════
# Token resolution
# ═══════════════════════════════════════════════════════════════════════════

class TestTokenValidity:

    def test_is_valid_token(self):
        assert is_valid_token("x" * 101)
        assert not is_valid_token("x" * 100)
        assert not is_valid_token(" " * 150)
        assert not is_valid_token(None)
        assert not is_valid_token(12345)
        assert not is_valid_token("")

    def test_deduplicate_preserves_first_seen_order(self):
        assert deduplicate_tokens(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


class TestResolveTokens:

    def test_skips_missing_and_invalid(self):
        store = InMemoryAlertStore()
        store.users["B"] = UserRecord(id="B", fcm_token=make_token("B"))
        store.users["C"] = UserRecord(id="C", fcm_token="short")
        store.users["D"] = UserRecord(id="D", fcm_token=None)

        result = run(resolve_tokens(store, ["B", "C", "D", "ghost"], concurrency=2))

        assert result.tokens == [make_token("B")]
        assert result.users_with_tokens == 1
        assert sorted(result.skipped_users) == ["C", "D", "ghost"]

    def test_shared_device_deduplicated(self):
        shared = make_token("shared-device")
        store = InMemoryAlertStore()
        store.users["B"] = UserRecord(id="B", fcm_token=shared)
        store.users["C"] = UserRecord(id="C", fcm_token=shared)
        store.users["D"] = UserRecord(id="D", fcm_token=make_token("D"))

        result = run(resolve_tokens(store, ["B", "C", "D"]))

        assert result.tokens == [shared, make_token("D")]
        assert result.users_with_tokens == 3
        assert result.duplicates == 1

    def test_read_error_for_one_user_skipped(self):
        class OneBadUser(InMemoryAlertStore):
            async def get_user(self, user_id):
                if user_id == "C":
                    raise RuntimeError("boom")
                return await super().get_user(user_id)

        store = OneBadUser()
        store.users["B"] = UserRecord(id="B", fcm_token=make_token("B"))
        store.users["C"] = UserRecord(id="C", fcm_token=make_token("C"))

        result = run(resolve_tokens(store, ["B", "C"]))
        assert result.tokens == [make_token("B")]
        assert result.skipped_users == ["C"]
