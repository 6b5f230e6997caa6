"""
test_dispatcher.py — Notification payloads, per-token isolation, push channel.

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest

from backend.app.alerts.channels.fcm_push import (
    FcmPushSender,
    SimulatedPushSender,
    build_sender,
)
from backend.app.alerts.dispatcher import (
    CLICK_ACTION,
    build_messages,
    build_notification_data,
    build_notification_title,
    dispatch_alert,
    severity_prefix,
)
from backend.app.alerts.models import PushMessage
from backend.app.core.errors import PushDeliveryError

from tests.factories import RecordingSender, make_alert, make_settings, make_token, run


# ═══════════════════════════════════════════════════════════════════════════
# Payload
# ═══════════════════════════════════════════════════════════════════════════

class TestPayload:

    @pytest.mark.parametrize("severity,prefix", [
        ("critical", "🚨 CRITICAL: "),
        ("high", "⚠️ HIGH PRIORITY: "),
        ("medium", "📢 "),
        ("low", "ℹ️ "),
        ("HIGH", "⚠️ HIGH PRIORITY: "),
        ("catastrophic", "ℹ️ "),
        ("bogus", "ℹ️ "),
        ("", "ℹ️ "),
        (None, "ℹ️ "),
    ])
    def test_severity_prefix(self, severity, prefix):
        assert severity_prefix(severity) == prefix

    def test_group_title(self):
        alert = make_alert(group_id="G1", severity="critical", title="Flooding")
        assert build_notification_title(alert) == "🚨 CRITICAL: Group G1: Flooding"

    def test_all_members_title(self):
        alert = make_alert(severity="low", title="Meeting moved")
        assert build_notification_title(alert) == "ℹ️ Meeting moved"

    def test_data_block(self):
        alert = make_alert(group_id="G1")
        data = build_notification_data(alert)
        assert data == {
            "alertId": alert.id,
            "organizationId": "O",
            "organizationName": "Springfield Fire",
            "alertType": "general",
            "severity": "medium",
            "groupId": "G1",
            "groupName": "Group G1",
            "click_action": CLICK_ACTION,
        }
        assert all(isinstance(v, str) for v in data.values())

    def test_data_block_without_group(self):
        data = build_notification_data(make_alert())
        assert data["groupId"] == ""
        assert data["groupName"] == ""

    def test_one_message_per_token(self):
        alert = make_alert()
        messages = build_messages(alert, ["t1", "t2"])
        assert [m.token for m in messages] == ["t1", "t2"]
        assert all(m.body == alert.description for m in messages)
        wire = messages[0].to_dict()
        assert set(wire) == {"notification", "data", "token"}


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatch:

    def test_failure_isolated(self):
        tokens = [make_token(str(i)) for i in range(5)]
        sender = RecordingSender(fail_tokens={tokens[1]})

        result = run(dispatch_alert(sender, make_alert(), tokens))

        assert result.success_count == 4
        assert result.failure_count == 1
        # token after the failing one was still attempted
        assert sender.attempts == tokens

    @pytest.mark.parametrize("concurrency", [1, 3, 8])
    def test_counts_independent_of_concurrency(self, concurrency):
        tokens = [make_token(str(i)) for i in range(10)]
        sender = RecordingSender(fail_tokens={tokens[0], tokens[9]})

        result = run(dispatch_alert(sender, make_alert(), tokens, concurrency=concurrency))

        assert (result.success_count, result.failure_count) == (8, 2)
        assert sorted(sender.attempts) == sorted(tokens)

    def test_progress_checkpoints(self):
        tokens = [make_token(str(i)) for i in range(7)]
        sender = RecordingSender()
        progress = []

        async def on_progress(success, failure):
            progress.append((success, failure))

        run(dispatch_alert(
            sender, make_alert(), tokens,
            concurrency=1, checkpoint_every=3, on_progress=on_progress,
        ))
        assert progress == [(3, 0), (6, 0)]

    def test_checkpoint_error_does_not_abort(self):
        tokens = [make_token(str(i)) for i in range(4)]
        sender = RecordingSender()

        async def broken(success, failure):
            raise RuntimeError("write failed")

        result = run(dispatch_alert(
            sender, make_alert(), tokens, checkpoint_every=1, on_progress=broken,
        ))
        assert result.success_count == 4


# ═══════════════════════════════════════════════════════════════════════════
# Push channel
# ═══════════════════════════════════════════════════════════════════════════

class FakeCredentials:
    """Stands in for google.oauth2 service account credentials."""

    def __init__(self, token="secret", valid=True, project_id="demo", fail=False):
        self.token = token
        self.valid = valid
        self.project_id = project_id
        self.fail = fail
        self.refreshes = 0

    def refresh(self, request):
        if self.fail:
            raise RuntimeError("invalid_grant")
        self.refreshes += 1
        self.token = f"fresh-{self.refreshes}"
        self.valid = True


def _fcm(handler, credentials=None) -> FcmPushSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sender = FcmPushSender(
        project_id="demo", credentials=credentials or FakeCredentials(), client=client,
    )
    sender._auth_request = object()
    return sender


class TestFcmSender:

    def test_send_posts_v1_message(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"name": "projects/demo/messages/1"})

        sender = _fcm(handler)
        message = PushMessage(token="tok", title="T", body="B", data={"alertId": "a1"})
        assert run(sender.send(message)) == "projects/demo/messages/1"
        assert seen["url"] == "https://fcm.googleapis.com/v1/projects/demo/messages:send"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["message"] == {
            "token": "tok",
            "notification": {"title": "T", "body": "B"},
            "data": {"alertId": "a1"},
        }

    def test_expired_token_is_refreshed(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"name": "projects/demo/messages/1"})

        credentials = FakeCredentials(token=None, valid=False)
        sender = _fcm(handler, credentials)
        message = PushMessage(token="tok", title="T", body="B")

        async def scenario():
            await sender.send(message)
            await sender.send(message)
            credentials.valid = False  # token lifetime elapsed
            await sender.send(message)

        run(scenario())
        assert seen == ["Bearer fresh-1", "Bearer fresh-1", "Bearer fresh-2"]
        assert credentials.refreshes == 2

    def test_refresh_failure_is_a_delivery_error(self):
        sender = _fcm(lambda r: httpx.Response(200, json={}), FakeCredentials(valid=False, fail=True))
        with pytest.raises(PushDeliveryError):
            run(sender.send(PushMessage(token="tok", title="T", body="B")))

    def test_rejection_raises_push_delivery_error(self):
        def handler(request):
            return httpx.Response(404, json={"error": {
                "message": "Requested entity was not found.",
                "status": "NOT_FOUND",
                "details": [{"errorCode": "UNREGISTERED"}],
            }})

        sender = _fcm(handler)
        with pytest.raises(PushDeliveryError) as exc_info:
            run(sender.send(PushMessage(token="tok", title="T", body="B")))
        assert exc_info.value.provider_code == "UNREGISTERED"
        assert exc_info.value.provider_status == 404

    def test_probe_interprets_invalid_token_as_reachable(self):
        def handler(request):
            assert json.loads(request.content)["validate_only"] is True
            return httpx.Response(400, json={"error": {
                "message": "The registration token is not a valid FCM registration token",
                "status": "INVALID_ARGUMENT",
            }})

        result = run(_fcm(handler).probe())
        assert result["reachable"] is True

    def test_probe_permission_denied(self):
        result = run(_fcm(lambda r: httpx.Response(403, json={"error": {}})).probe())
        assert result["reachable"] is False
        assert "suggestion" in result


class TestBuildSender:

    def test_default_is_simulation(self):
        assert isinstance(build_sender(make_settings()), SimulatedPushSender)

    def test_fcm_requires_credentials(self):
        with pytest.raises(ValueError):
            build_sender(make_settings(PUSH_PROVIDER="fcm"))

    def test_fcm_project_defaults_to_service_account(self):
        sender = build_sender(
            make_settings(PUSH_PROVIDER="fcm"), credentials=FakeCredentials(project_id="from-key"),
        )
        assert isinstance(sender, FcmPushSender)
        assert sender.endpoint.endswith("/projects/from-key/messages:send")
        run(sender.close())

    def test_fcm_without_any_project(self):
        with pytest.raises(ValueError):
            build_sender(make_settings(PUSH_PROVIDER="fcm"), credentials=FakeCredentials(project_id=None))

    def test_simulated_sender_records(self):
        sender = SimulatedPushSender()
        run(sender.send(PushMessage(token=make_token("x"), title="T", body="B")))
        assert len(sender.sent) == 1
