"""Event distribution: concurrent fan-out to every enabled sink.

Contract:
- All applicable sinks start together; the join waits for every one
- Each sink runs under its own deadline; a slow sink is cancelled at its
  deadline, so total latency is bounded by the slowest deadline, not the sum
- A failing or timed-out sink is logged and counted, never aborts the others
- distribute() never raises; partial failure is reported in the summary and
  does not send the event to the failure ledger
"""

from __future__ import annotations

import asyncio
import logging
import time

from webhook_hub.models import (
    DistributionSummary,
    EnrichedContext,
    Envelope,
    TargetOutcome,
    TargetStatus,
)
from webhook_hub.tasks import Completed, run_with_deadline
from webhook_hub.webhooks.sinks import Sink

logger = logging.getLogger(__name__)


class Distributor:
    """Fans an envelope out to the configured sinks."""

    def __init__(self, sinks: list[Sink]):
        self._sinks = sinks

    @property
    def sinks(self) -> list[Sink]:
        return list(self._sinks)

    def targets_for(self, envelope: Envelope) -> list[Sink]:
        return [s for s in self._sinks if s.enabled and s.applies_to(envelope)]

    async def distribute(self, envelope: Envelope, context: EnrichedContext) -> DistributionSummary:
        targets = self.targets_for(envelope)
        outcomes = await asyncio.gather(
            *(self._deliver_one(sink, envelope, context) for sink in targets)
        )
        summary = DistributionSummary(outcomes=list(outcomes))

        if summary.failed:
            logger.warning(
                "Distribution of %s partially failed: %d ok, %d failed (%s)",
                envelope.event_id,
                summary.succeeded,
                summary.failed,
                ", ".join(summary.failed_targets),
            )
        else:
            logger.info(
                "Distribution of %s complete: %d targets", envelope.event_id, summary.succeeded
            )
        return summary

    async def _deliver_one(
        self, sink: Sink, envelope: Envelope, context: EnrichedContext
    ) -> TargetOutcome:
        start = time.monotonic()
        try:
            outcome = await run_with_deadline(
                sink.deliver(envelope, context), sink.timeout, label=sink.name
            )
        except Exception as e:
            logger.error("%s distribution failed for %s: %s", sink.name, envelope.event_id, e)
            return TargetOutcome(
                target=sink.name,
                status=TargetStatus.FAILED,
                detail=f"{type(e).__name__}: {e}",
                elapsed_ms=(time.monotonic() - start) * 1000,
            )

        elapsed_ms = (time.monotonic() - start) * 1000
        if isinstance(outcome, Completed):
            return TargetOutcome(sink.name, TargetStatus.SUCCEEDED, elapsed_ms=elapsed_ms)

        logger.error(
            "%s distribution timed out for %s after %.1fs",
            sink.name,
            envelope.event_id,
            outcome.after_s,
        )
        return TargetOutcome(
            sink.name,
            TargetStatus.TIMED_OUT,
            detail=f"timed out after {outcome.after_s}s",
            elapsed_ms=elapsed_ms,
        )
