"""Retry sweeper: re-drives failure-ledger entries through the pipeline.

For each ledger record (oldest first) the embedded envelope is processed again
from scratch:
- processed or duplicate -> record removed
- rejected (permanent)   -> record removed
- failed again           -> retry_count + 1; removed once it reaches max_retries

No locking against live deliveries: the idempotency store's atomic claim
decides which of a sweep and a fresh delivery processes the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from webhook_hub.config import Settings
from webhook_hub.webhooks.controller import IngestionController, Outcome
from webhook_hub.webhooks.ledger import FailureLedger

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "abandoned": self.abandoned,
        }


class RetrySweeper:
    """Drains the failure ledger and retries each entry once per sweep."""

    def __init__(self, settings: Settings, ledger: FailureLedger, controller: IngestionController):
        self._ledger = ledger
        self._controller = controller
        self._max_retries = settings.max_retries

    async def sweep(self) -> SweepSummary:
        records = await self._ledger.drain()
        summary = SweepSummary(total=len(records))
        if not records:
            logger.info("No failed events to retry")
            return summary

        logger.info("Retrying %d failed events", len(records))
        for record in records:
            logger.info(
                "Retrying event %s (attempt %d)", record.event_id, record.retry_count + 1
            )
            try:
                result = await self._controller.process(record.payload, record_failure=False)
            except Exception:
                # process() contains its own failures; this is a defect, count it
                logger.exception("Unexpected error retrying %s", record.event_id)
                summary.failed += 1
                continue

            if result.succeeded:
                await self._ledger.remove(record)
                summary.succeeded += 1
                logger.info("Reprocessed event %s (%s)", record.event_id, result.outcome.value)
                continue

            summary.failed += 1
            if result.outcome is Outcome.REJECTED:
                logger.error(
                    "Dropping event %s from retry ledger: permanent failure (%s)",
                    record.event_id,
                    result.error,
                )
                await self._ledger.remove(record)
                summary.abandoned += 1
                continue

            record.retry_count += 1
            record.error = result.error or record.error
            if result.error_kind is not None:
                record.error_kind = result.error_kind
            if record.retry_count >= self._max_retries:
                logger.error(
                    "Giving up on event %s after %d retries: %s",
                    record.event_id,
                    record.retry_count,
                    record.error,
                )
                await self._ledger.remove(record)
                summary.abandoned += 1
            else:
                await self._ledger.update(record)

        logger.info("Retry sweep complete: %s", summary.to_dict())
        return summary


class SweepLoop:
    """Runs the sweeper on a fixed interval inside the event loop."""

    def __init__(self, sweeper: RetrySweeper, interval_s: float):
        self._sweeper = sweeper
        self._interval = interval_s
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0 or self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Retry sweep loop started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Retry sweep loop stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._sweeper.sweep()
            except Exception:
                logger.warning("Scheduled retry sweep failed", exc_info=True)
