"""
Processed-alert ledger — idempotency keys for at-least-once alert triggers.

The create event for an alert may be delivered more than once. Before
dispatch the trigger claims the alert id here; a second claim within the
TTL reports "already claimed" and the duplicate invocation exits.

Provides:
    • RedisAlertLedger    — SET key NX EX ttl on a shared Redis
    • InMemoryAlertLedger — per-process dict with expiry (dev / tests)
    • build_ledger()      — choose from settings

Redis errors degrade to "claim granted": a duplicate push is preferred to
a dropped alert.

Usage:
    ledger = build_ledger(settings)
    if await ledger.claim(alert_id):
        ...
"""

from __future__ import annotations

import abc
import logging
import time
from typing import Dict, Optional

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "alerts:processed:"


class AlertLedger(abc.ABC):

    @abc.abstractmethod
    async def claim(self, alert_id: str) -> bool:
        """True if this caller is the first to claim ``alert_id``."""

    @abc.abstractmethod
    async def release(self, alert_id: str) -> None:
        """Drop a claim so the alert can be retried."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryAlertLedger(AlertLedger):

    def __init__(self, ttl_seconds: int = 86400):
        self.ttl_seconds = ttl_seconds
        self._claims: Dict[str, float] = {}

    async def claim(self, alert_id: str) -> bool:
        now = time.monotonic()
        self._prune(now)
        if alert_id in self._claims:
            return False
        self._claims[alert_id] = now + self.ttl_seconds
        return True

    async def release(self, alert_id: str) -> None:
        self._claims.pop(alert_id, None)

    def _prune(self, now: float) -> None:
        expired = [key for key, expires in self._claims.items() if expires <= now]
        for key in expired:
            del self._claims[key]


class RedisAlertLedger(AlertLedger):

    def __init__(self, client, ttl_seconds: int = 86400):
        self._client = client
        self.ttl_seconds = ttl_seconds

    async def claim(self, alert_id: str) -> bool:
        try:
            created = await self._client.set(
                f"{KEY_PREFIX}{alert_id}", "1", nx=True, ex=self.ttl_seconds,
            )
        except Exception as e:
            logger.warning("Ledger CLAIM error for %s: %s — proceeding", alert_id, e)
            return True
        return bool(created)

    async def release(self, alert_id: str) -> None:
        try:
            await self._client.delete(f"{KEY_PREFIX}{alert_id}")
        except Exception as e:
            logger.warning("Ledger RELEASE error for %s: %s", alert_id, e)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")


def build_ledger(cfg: Settings, client: Optional[object] = None) -> AlertLedger:
    """Redis ledger when REDIS_URL is configured, else in-process."""
    if client is None and not cfg.REDIS_URL:
        return InMemoryAlertLedger(cfg.PROCESSED_ALERT_TTL)
    if client is None:
        import redis.asyncio as aioredis

        client = aioredis.from_url(
            cfg.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        logger.info("Redis ledger configured: %s", cfg.REDIS_URL.split("@")[-1])
    return RedisAlertLedger(client, cfg.PROCESSED_ALERT_TTL)
