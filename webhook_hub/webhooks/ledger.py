"""Failure ledger: durable, time-ordered log of events awaiting retry.

Stored as one Redis sorted set (failed_events). Score is the failure time in
epoch milliseconds; each member is a JSON-serialized FailureRecord. A record's
identity is its exact member string.

append() is fire-and-forget: storage errors are logged and the call returns
None.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from webhook_hub.errors import ErrorKind
from webhook_hub.models import FailureRecord

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LEDGER_KEY = "failed_events"


class FailureLedger:
    """Append / ordered-drain / remove-by-identity log of failed events."""

    def __init__(self, redis_client: Redis, key: str = LEDGER_KEY):
        self._redis = redis_client
        self._key = key

    async def append(
        self,
        payload: dict[str, Any],
        error: BaseException | str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
    ) -> FailureRecord | None:
        """Record a failed event. Returns the stored record, or None on storage failure."""
        event_id = str(payload.get("event_id") or "") if isinstance(payload, dict) else ""
        if not event_id:
            logger.error("Refusing to ledger an event without event_id")
            return None

        record = FailureRecord(
            event_id=event_id,
            payload=payload,
            error=str(error),
            error_kind=kind,
        )
        member = record.serialize()
        try:
            await self._redis.zadd(self._key, {member: record.score})
        except Exception:
            logger.error("Failed to store failed event %s", event_id, exc_info=True)
            return None

        record.member = member
        logger.warning(
            "Event %s stored for retry (kind=%s): %s", event_id, kind.value, record.error
        )
        return record

    async def drain(self) -> list[FailureRecord]:
        """All current records, oldest first."""
        entries = await self._redis.zrange(self._key, 0, -1, withscores=True)
        records: list[FailureRecord] = []
        for member, score in entries:
            try:
                records.append(FailureRecord.deserialize(member, score))
            except (ValueError, TypeError):
                logger.error("Dropping unreadable ledger entry: %.200s", member)
                await self._redis.zrem(self._key, member)
        return records

    async def remove(self, record: FailureRecord) -> bool:
        """Delete a record by identity. Returns True if it was present."""
        member = record.member or record.serialize()
        removed = await self._redis.zrem(self._key, member)
        return bool(removed)

    async def update(self, record: FailureRecord) -> FailureRecord:
        """Rewrite a record (e.g. new retry count) keeping its original score."""
        new_member = record.serialize()
        async with self._redis.pipeline(transaction=True) as pipe:
            if record.member is not None:
                pipe.zrem(self._key, record.member)
            pipe.zadd(self._key, {new_member: record.score})
            await pipe.execute()
        record.member = new_member
        return record

    async def size(self) -> int:
        return int(await self._redis.zcard(self._key))
