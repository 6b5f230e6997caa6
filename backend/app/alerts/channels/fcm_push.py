"""
fcm_push.py — Push notification channel (Firebase Cloud Messaging HTTP v1).

Delivery mechanism:
    • POST https://fcm.googleapis.com/v1/projects/{project}/messages:send
    • Body: {"message": {"token", "notification": {title, body}, "data": {...}}}
    • Auth: OAuth2 bearer minted from a service account (google-auth),
      refreshed whenever the cached token has expired

Two senders:
    SimulatedPushSender — logs and records messages (development / CI)
    FcmPushSender       — real HTTP delivery via httpx

One message per token. Batch endpoints are not used so one revoked
token cannot fail a whole batch.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from backend.app.alerts.models import PushMessage
from backend.app.core.config import Settings
from backend.app.core.errors import ExternalServiceError, PushDeliveryError

logger = logging.getLogger(__name__)

PROBE_TOKEN = "dummy-token-for-testing"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


class PushSender(abc.ABC):
    """Sends one push message; raises PushDeliveryError on rejection."""

    name: str = "push"

    @abc.abstractmethod
    async def send(self, message: PushMessage) -> str: ...

    async def probe(self) -> Dict[str, Any]:
        """Non-destructive reachability check for diagnostics."""
        return {"provider": self.name, "reachable": True}

    async def close(self) -> None:
        pass


class SimulatedPushSender(PushSender):
    """Logs the notification and reports a simulated delivery."""

    name = "simulation"

    def __init__(self) -> None:
        self.sent: List[PushMessage] = []

    async def send(self, message: PushMessage) -> str:
        self.sent.append(message)
        logger.info(
            "[PUSH:SIM] %s → %s…: %s",
            message.data.get("alertId", "-"), message.token[:12], message.title,
        )
        return f"simulated-{uuid.uuid4().hex[:12]}"

    async def probe(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "reachable": True,
            "message": "Simulation mode — no provider contacted",
        }


@dataclass
class FcmPushSender(PushSender):
    """FCM HTTP v1 sender over a shared httpx.AsyncClient."""

    project_id: str
    credentials: Any  # google.auth.credentials.Credentials
    base_url: str = "https://fcm.googleapis.com/v1"
    timeout_seconds: float = 10.0
    client: Optional[httpx.AsyncClient] = None
    _owns_client: bool = field(default=False, init=False, repr=False)
    _auth_request: Any = field(default=None, init=False, repr=False)
    _refresh_lock: Optional[asyncio.Lock] = field(default=None, init=False, repr=False)

    name = "fcm"

    def __post_init__(self) -> None:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        self._refresh_lock = asyncio.Lock()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/projects/{self.project_id}/messages:send"

    async def _access_token(self) -> str:
        """Current bearer token, refreshing the credentials when expired."""
        async with self._refresh_lock:
            if not self.credentials.valid:
                if self._auth_request is None:
                    from google.auth.transport.requests import Request

                    self._auth_request = Request()
                # refresh() is blocking I/O
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, self.credentials.refresh, self._auth_request)
                logger.info("FCM access token refreshed for project %s", self.project_id)
            return self.credentials.token

    async def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json; UTF-8",
        }

    @staticmethod
    def _body(message: PushMessage, validate_only: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "message": {
                "token": message.token,
                "notification": {"title": message.title, "body": message.body},
                "data": {k: str(v) for k, v in message.data.items()},
            }
        }
        if validate_only:
            body["validate_only"] = True
        return body

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[str, Optional[str]]:
        try:
            err = response.json().get("error", {})
        except ValueError:
            return response.text[:200], None
        code = err.get("status")
        for detail in err.get("details", []) or []:
            if detail.get("errorCode"):
                code = detail["errorCode"]
        return err.get("message", response.text[:200]), code

    async def send(self, message: PushMessage) -> str:
        try:
            headers = await self._headers()
        except Exception as exc:
            raise PushDeliveryError(f"FCM credential refresh failed: {exc}") from exc
        try:
            response = await self.client.post(
                self.endpoint, json=self._body(message), headers=headers,
            )
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"FCM request failed: {exc}") from exc

        if response.status_code >= 400:
            text, code = self._error_details(response)
            raise PushDeliveryError(
                f"FCM rejected message ({response.status_code}): {text}",
                status=response.status_code,
                provider_code=code,
            )
        return response.json().get("name", "")

    async def probe(self) -> Dict[str, Any]:
        """
        Validate-only send to a dummy token.

        A 400 invalid-argument / unregistered answer means the API is
        reachable and the credentials work; 403 and 404 point at
        permissions and project configuration respectively.
        """
        message = PushMessage(
            token=PROBE_TOKEN,
            title="FCM API Test",
            body="Testing FCM API endpoint availability",
        )
        try:
            response = await self.client.post(
                self.endpoint,
                json=self._body(message, validate_only=True),
                headers=await self._headers(),
            )
        except Exception as exc:
            raise ExternalServiceError("fcm", str(exc)) from exc

        result: Dict[str, Any] = {"provider": self.name, "status_code": response.status_code}
        if response.status_code < 400:
            result.update(reachable=True, message="FCM API accepted probe")
            return result

        text, code = self._error_details(response)
        result["error"] = text
        if response.status_code == 400 or code in ("INVALID_ARGUMENT", "UNREGISTERED"):
            result.update(
                reachable=True,
                message="FCM API is accessible — invalid-token error expected with dummy token",
            )
        elif response.status_code == 404:
            result.update(
                reachable=False,
                message="FCM API 404 — project may not have FCM enabled",
                suggestion="Check that Cloud Messaging is enabled for the project",
            )
        elif response.status_code in (401, 403):
            result.update(
                reachable=False,
                message=f"FCM API {response.status_code} — permission denied",
                suggestion="Check the service account has the Firebase Messaging role",
            )
        else:
            result.update(reachable=False, message="FCM API error")
        return result

    async def close(self) -> None:
        if self._owns_client and self.client is not None and not self.client.is_closed:
            await self.client.aclose()


def load_credentials(path: str):
    """Service account credentials scoped for FCM sends."""
    from google.oauth2 import service_account

    return service_account.Credentials.from_service_account_file(path, scopes=[FCM_SCOPE])


def build_sender(cfg: Settings, credentials: Optional[Any] = None) -> PushSender:
    """Select the push backend from settings."""
    if cfg.PUSH_PROVIDER == "fcm":
        if credentials is None:
            if not cfg.FCM_CREDENTIALS_FILE:
                raise ValueError("PUSH_PROVIDER=fcm requires FCM_CREDENTIALS_FILE")
            credentials = load_credentials(cfg.FCM_CREDENTIALS_FILE)
        project_id = cfg.FCM_PROJECT_ID or getattr(credentials, "project_id", None)
        if not project_id:
            raise ValueError("PUSH_PROVIDER=fcm requires FCM_PROJECT_ID")
        logger.info("FCM push channel initialized for project %s", project_id)
        return FcmPushSender(
            project_id=project_id,
            credentials=credentials,
            base_url=cfg.FCM_API_BASE_URL,
            timeout_seconds=cfg.PUSH_TIMEOUT_SECONDS,
        )
    if cfg.PUSH_PROVIDER != "simulation":
        logger.warning("Unknown PUSH_PROVIDER '%s' — using simulation", cfg.PUSH_PROVIDER)
    return SimulatedPushSender()
