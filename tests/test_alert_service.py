"""
test_alert_service.py — End-to-end tests for the alert trigger.

Covers:
    • Group-scoped fan-out (author exclusion, opt-in by default, opt-out)
    • Token deduplication and per-token failure isolation
    • Status writer (success / failure fields, progress checkpoints)
    • Pipeline failure and deadline handling, ledger release
    • Duplicate triggers (notificationsSent, ledger claim)
    • Organization request → admin notifications

Run with:
    pytest tests/test_alert_service.py -v
"""

from __future__ import annotations

import asyncio
import copy

import pytest

from backend.app.alerts.alert_service import AlertNotificationService, is_valid_author
from backend.app.alerts.models import OrganizationRequest, UserRecord
from backend.app.alerts.store import InMemoryAlertStore
from backend.app.core.cache import InMemoryAlertLedger
from backend.app.core.errors import NotFoundError

from tests.factories import (
    RecordingSender,
    make_alert,
    make_settings,
    make_token,
    run,
    seed_organization,
)


def _service(store, sender=None, ledger=None, **settings_overrides):
    return AlertNotificationService(
        store,
        sender or RecordingSender(),
        ledger or InMemoryAlertLedger(),
        make_settings(**settings_overrides),
    )


async def _post_and_trigger(service, alert):
    created = await service.post_alert(alert)
    return await service.handle_alert_created(created.organization_id, created.id)


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════

class TestFanOut:

    def test_group_alert_scenario(self):
        # O followed by A (author), B (opted in), C (never chose)
        store = InMemoryAlertStore()
        seed_organization(store, followers={"A": {}, "B": {"G1": True}, "C": {}})
        sender = RecordingSender()
        service = _service(store, sender)
        alert = make_alert(group_id="G1", author="A")

        report = run(_post_and_trigger(service, alert))

        assert report.status == "sent"
        assert sorted(sender.tokens) == [make_token("B"), make_token("C")]
        assert make_token("A") not in sender.attempts
        stored = store.alerts["O"][alert.id]
        assert stored.notifications_sent is True
        assert stored.notification_count == 2
        assert stored.notification_failures == 0
        assert stored.notification_sent_at is not None
        assert store.followers["O"]["C"].group_preferences == {"G1": True}

    def test_explicit_opt_out(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G1": False}, "C": {"G1": True}})
        sender = RecordingSender()

        run(_post_and_trigger(_service(store, sender), make_alert(group_id="G1")))

        assert sender.tokens == [make_token("C")]
        assert store.followers["O"]["B"].group_preferences == {"G1": False}

    def test_opt_out_holds_across_alerts(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {"G1": False}, "C": {"G1": True}})
        before = copy.deepcopy(store.followers["O"]["B"])
        sender = RecordingSender()
        service = _service(store, sender)

        async def scenario():
            return [
                await _post_and_trigger(service, make_alert(group_id="G1", title=f"Update {n}"))
                for n in range(3)
            ]

        reports = run(scenario())

        assert [r.status for r in reports] == ["sent"] * 3
        assert sender.tokens == [make_token("C")] * 3
        assert make_token("B") not in sender.attempts
        assert store.followers["O"]["B"] == before

    def test_all_members_alert(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={
            "B": {},
            "C": {"G1": False, "G2": False},
            "D": {"G1": True},
        })
        sender = RecordingSender()

        report = run(_post_and_trigger(_service(store, sender), make_alert()))

        assert sorted(sender.tokens) == [make_token("B"), make_token("D")]
        assert report.eligible_count == 2

    def test_shared_token_sent_once(self):
        shared = make_token("family-tablet")
        store = InMemoryAlertStore()
        seed_organization(
            store,
            followers={"B": {}, "C": {}, "D": {}},
            tokens={"B": shared, "C": shared, "D": make_token("D")},
        )
        sender = RecordingSender()

        report = run(_post_and_trigger(_service(store, sender), make_alert()))

        assert report.token_count == 2
        assert report.duplicate_tokens == 1
        assert sorted(sender.tokens) == sorted([shared, make_token("D")])

    def test_partial_failure_still_marks_sent(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={u: {} for u in ("B", "C", "D", "E")})
        sender = RecordingSender(fail_tokens={make_token("C")})
        alert = make_alert()

        report = run(_post_and_trigger(_service(store, sender), alert))

        assert report.dispatch.success_count == 3
        assert report.dispatch.failure_count == 1
        stored = store.alerts["O"][alert.id]
        assert stored.notifications_sent is True
        assert stored.notification_count == 3
        assert stored.notification_failures == 1

    def test_no_followers_leaves_status_unset(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"A": {}})
        alert = make_alert(author="A")

        report = run(_post_and_trigger(_service(store), alert))

        assert report.status == "no_recipients"
        assert store.alerts["O"][alert.id].notifications_sent is None

    def test_no_valid_tokens(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}}, tokens={"B": "too-short"})
        sender = RecordingSender()

        report = run(_post_and_trigger(_service(store, sender), make_alert()))

        assert report.status == "no_recipients"
        assert sender.attempts == []

    def test_progress_checkpoints_written(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={f"U{i}": {} for i in range(5)})
        alert = make_alert()
        service = _service(store, DISPATCH_CONCURRENCY=1, DISPATCH_CHECKPOINT_EVERY=2)

        run(_post_and_trigger(service, alert))

        assert store.alerts["O"][alert.id].notification_progress == {
            "successCount": 4, "failureCount": 0,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Guards and idempotency
# ═══════════════════════════════════════════════════════════════════════════

class TestGuards:

    @pytest.mark.parametrize("author", ["", "unknown", "   "])
    def test_invalid_author_makes_no_writes(self, author):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        sender = RecordingSender()
        alert = make_alert(group_id="G1", author=author)

        report = run(_post_and_trigger(_service(store, sender), alert))

        assert report.status == "skipped"
        assert report.error == "invalid-author"
        assert sender.attempts == []
        stored = store.alerts["O"][alert.id]
        assert stored.notifications_sent is None
        assert stored.notification_error is None
        assert store.followers["O"]["B"].group_preferences == {}

    def test_is_valid_author(self):
        assert is_valid_author("user-1")
        assert not is_valid_author(None)
        assert not is_valid_author("unknown")

    def test_unknown_alert_raises(self):
        with pytest.raises(NotFoundError):
            run(_service(InMemoryAlertStore()).handle_alert_created("O", "missing"))

    def test_redelivered_trigger_skipped(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        sender = RecordingSender()
        service = _service(store, sender)
        alert = make_alert()

        async def scenario():
            first = await _post_and_trigger(service, alert)
            second = await service.handle_alert_created("O", alert.id)
            return first, second

        first, second = run(scenario())
        assert first.status == "sent"
        assert second.status == "skipped"
        assert second.error == "already-sent"
        assert len(sender.sent) == 1

    def test_concurrent_duplicate_triggers_send_once(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}, "C": {}})
        sender = RecordingSender()
        service = _service(store, sender)
        alert = make_alert()

        async def scenario():
            await service.post_alert(alert)
            return await asyncio.gather(
                service.handle_alert_created("O", alert.id),
                service.handle_alert_created("O", alert.id),
            )

        reports = run(scenario())
        assert sorted(r.status for r in reports) == ["sent", "skipped"]
        assert len(sender.sent) == 2

    def test_claimed_by_another_worker(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        ledger = InMemoryAlertLedger()
        sender = RecordingSender()
        service = _service(store, sender, ledger)
        alert = make_alert()

        async def scenario():
            await service.post_alert(alert)
            await ledger.claim(alert.id)
            return await service.handle_alert_created("O", alert.id)

        report = run(scenario())
        assert report.error == "duplicate-trigger"
        assert sender.attempts == []


# ═══════════════════════════════════════════════════════════════════════════
# Failure handling
# ═══════════════════════════════════════════════════════════════════════════

class BrokenFollowerStore(InMemoryAlertStore):
    async def list_followers(self, org_id):
        raise RuntimeError("follower query failed")


class TestFailures:

    def test_pipeline_failure_recorded_and_claim_released(self):
        store = BrokenFollowerStore()
        seed_organization(store, followers={"B": {}})
        ledger = InMemoryAlertLedger()
        alert = make_alert()

        async def scenario():
            report = await _post_and_trigger(_service(store, ledger=ledger), alert)
            reclaimed = await ledger.claim(alert.id)
            return report, reclaimed

        report, reclaimed = run(scenario())
        assert report.status == "failed"
        assert "follower query failed" in report.error
        stored = store.alerts["O"][alert.id]
        assert stored.notifications_sent is False
        assert stored.notification_error == "follower query failed"
        assert stored.notification_error_at is not None
        assert reclaimed is True

    def test_deadline_exceeded(self):
        store = InMemoryAlertStore()
        seed_organization(store, followers={"B": {}})
        ledger = InMemoryAlertLedger()
        service = _service(
            store, RecordingSender(delay=1.0), ledger, PIPELINE_TIMEOUT_SECONDS=0.05,
        )
        alert = make_alert()

        async def scenario():
            report = await _post_and_trigger(service, alert)
            return report, await ledger.claim(alert.id)

        report, reclaimed = run(scenario())
        assert report.status == "failed"
        assert "deadline" in report.error
        assert store.alerts["O"][alert.id].notifications_sent is False
        assert reclaimed is True

    def test_status_write_failure_is_not_raised(self):
        class ReadOnlyAlerts(InMemoryAlertStore):
            async def update_alert(self, org_id, alert_id, **fields):
                raise RuntimeError("permission denied")

        store = ReadOnlyAlerts()
        seed_organization(store, followers={"B": {}})
        sender = RecordingSender()
        alert = make_alert()

        report = run(_post_and_trigger(_service(store, sender), alert))

        assert report.status == "sent"
        assert len(sender.sent) == 1
        assert store.alerts["O"][alert.id].notifications_sent is None


# ═══════════════════════════════════════════════════════════════════════════
# Organization requests
# ═══════════════════════════════════════════════════════════════════════════

class TestOrganizationRequests:

    def _store(self):
        store = InMemoryAlertStore()
        store.users["admin1"] = UserRecord(id="admin1", is_admin=True, fcm_token=make_token("admin1"))
        store.users["admin2"] = UserRecord(id="admin2", is_admin=True, fcm_token=None)
        store.users["member"] = UserRecord(id="member", fcm_token=make_token("member"))
        return store

    def test_admins_notified(self):
        store = self._store()
        sender = RecordingSender()
        service = _service(store, sender)
        request = OrganizationRequest(name="Shelbyville PD", contact_person_email="chief@shelbyville.gov")

        async def scenario():
            created = await service.post_organization_request(request)
            return await service.notify_admins_of_organization_request(created.id)

        result = run(scenario())

        assert result.success_count == 1
        assert sender.tokens == [make_token("admin1")]
        message = sender.sent[0]
        assert message.title == "New Organization Request"
        assert message.body == "Shelbyville PD has requested to join the platform"
        assert message.data["type"] == "organization_request"
        assert message.data["requestId"] == request.id
        assert message.data["contactEmail"] == "chief@shelbyville.gov"
        stored = store.requests[request.id]
        assert stored.admin_notifications_sent is True
        assert stored.admin_notification_count == 1

    def test_no_admins(self):
        store = InMemoryAlertStore()
        sender = RecordingSender()
        service = _service(store, sender)
        request = OrganizationRequest(name="Ogdenville")

        async def scenario():
            await service.post_organization_request(request)
            return await service.notify_admins_of_organization_request(request.id)

        result = run(scenario())
        assert result.total == 0
        assert store.requests[request.id].admin_notifications_sent is None

    def test_unknown_request(self):
        with pytest.raises(NotFoundError):
            run(_service(InMemoryAlertStore()).notify_admins_of_organization_request("nope"))
