"""Webhook idempotency: Redis-based at-most-once acceptance.

Contract:
- claim() is a single SET NX EX: checking and marking are one operation,
  so two concurrent deliveries of one event_id cannot both win
- Key pattern: event:{event_id}, value is the ProcessingRecord JSON, 24h TTL
- After the TTL a redelivery is no longer recognized as a duplicate
- Store errors propagate from claim(); the controller decides what to do
- Volume counters live at metrics:{event_type}
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from webhook_hub.config import Settings
from webhook_hub.models import Envelope, ProcessingRecord

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

EVENT_PREFIX = "event:"
METRICS_PREFIX = "metrics:"


class IdempotencyStore:
    """Durable event_id -> ProcessingRecord map with create-if-absent."""

    def __init__(self, redis_client: Redis, settings: Settings):
        self._redis = redis_client
        self._ttl = settings.dedup_ttl_seconds

    @staticmethod
    def key_for(event_id: str) -> str:
        return f"{EVENT_PREFIX}{event_id}"

    async def claim(self, envelope: Envelope) -> bool:
        """Atomically record the envelope as accepted.

        Returns:
            True if this call created the record (first delivery), False if a
            record already existed (duplicate)
        """
        record = ProcessingRecord.for_envelope(envelope)
        was_set = await self._redis.set(
            self.key_for(envelope.event_id), record.to_json(), nx=True, ex=self._ttl
        )
        if not was_set:
            logger.info("Duplicate event suppressed: %s", envelope.event_id)
            return False
        return True

    async def release(self, event_id: str) -> None:
        """Drop a claim so a later retry can reclaim the event.

        Storage errors are logged, not raised.
        """
        try:
            await self._redis.delete(self.key_for(event_id))
        except Exception:
            logger.warning("Failed to release claim for %s", event_id, exc_info=True)

    async def get(self, event_id: str) -> str | None:
        return await self._redis.get(self.key_for(event_id))

    async def increment_metric(self, event_type: str) -> None:
        try:
            await self._redis.incr(f"{METRICS_PREFIX}{event_type or 'unknown'}")
        except Exception:
            logger.warning("Failed to increment metric for %s", event_type, exc_info=True)

    async def metrics(self) -> dict[str, int]:
        """Per-type processed-event counts."""
        counts: dict[str, int] = {}
        async for key in self._redis.scan_iter(match=f"{METRICS_PREFIX}*"):
            raw: Any = await self._redis.get(key)
            name = key[len(METRICS_PREFIX):]
            try:
                counts[name] = int(raw or 0)
            except (TypeError, ValueError):
                counts[name] = 0
        return counts

    async def ping(self) -> bool:
        return bool(await self._redis.ping())
