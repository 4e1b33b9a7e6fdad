"""Ingestion controller: the per-envelope processing pipeline.

Pipeline:
1. Validate the envelope (event_id and type required) -> REJECTED if not
2. Claim the event_id atomically in the idempotency store -> DUPLICATE if taken
3. Enrich from the Square API under a fixed deadline (empty context on failure)
4. Distribute to all enabled sinks (never raises)
5. Anything that still escapes is classified once:
   VALIDATION -> logged and dropped (REJECTED)
   TRANSIENT / UNKNOWN -> claim released, event ledgered for retry (FAILED)

process() never raises for processing failures; outcomes are returned and
logged. Task cancellation is the exception: the event is ledgered first,
then the cancellation propagates.

The controller holds no per-event state. Duplicate safety comes entirely
from the store's SET NX, so any number of replicas may run it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from webhook_hub.config import Settings
from webhook_hub.errors import ErrorKind, classify_error
from webhook_hub.models import DistributionSummary, EnrichedContext, Envelope
from webhook_hub.tasks import Completed, run_with_deadline
from webhook_hub.webhooks.distribution import Distributor
from webhook_hub.webhooks.enrichment import EnrichmentGateway
from webhook_hub.webhooks.idempotency import IdempotencyStore
from webhook_hub.webhooks.ledger import FailureLedger

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Result of one processing attempt."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"  # permanent, never retried
    FAILED = "failed"  # retryable, ledgered

    @property
    def succeeded(self) -> bool:
        return self in (Outcome.PROCESSED, Outcome.DUPLICATE)


@dataclass
class ProcessingResult:
    outcome: Outcome
    event_id: str = ""
    summary: DistributionSummary | None = None
    error: str = ""
    error_kind: ErrorKind | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded


def _audit(event_id: str, event_type: str, status: str) -> None:
    logger.info("WEBHOOK_AUDIT id=%s type=%s status=%s", event_id, event_type, status)


class IngestionController:
    """Runs envelopes through claim -> enrich -> distribute."""

    def __init__(
        self,
        settings: Settings,
        store: IdempotencyStore,
        ledger: FailureLedger,
        distributor: Distributor,
        gateway: EnrichmentGateway | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._distributor = distributor
        self._gateway = gateway
        self._enrichment_timeout = settings.enrichment_timeout_s
        self._slots = asyncio.Semaphore(max(1, settings.max_concurrent_events))

    async def process(self, payload: Any, *, record_failure: bool = True) -> ProcessingResult:
        """Process one raw envelope payload.

        Args:
            payload: Parsed webhook body
            record_failure: Ledger retryable failures. The retry sweeper passes
                False because it updates the existing ledger entry itself.
        """
        envelope = Envelope.from_payload(payload)
        if envelope is None:
            event_id = payload.get("event_id", "") if isinstance(payload, dict) else ""
            logger.error("Invalid webhook envelope rejected (missing event_id or type)")
            _audit(str(event_id or "unknown"), "unknown", "rejected")
            return ProcessingResult(
                Outcome.REJECTED,
                event_id=str(event_id or ""),
                error="missing event_id or type",
                error_kind=ErrorKind.VALIDATION,
            )

        async with self._slots:
            return await self._run(envelope, record_failure)

    async def _run(self, envelope: Envelope, record_failure: bool) -> ProcessingResult:
        logger.info("Processing %s event: %s", envelope.event_type, envelope.event_id)

        try:
            claimed = await self._store.claim(envelope)
        except Exception as e:
            return await self._on_failure(envelope, e, claimed=False, record_failure=record_failure)

        if not claimed:
            _audit(envelope.event_id, envelope.event_type, "duplicate")
            return ProcessingResult(Outcome.DUPLICATE, event_id=envelope.event_id)

        try:
            context = await self._enrich(envelope)
            summary = await self._distributor.distribute(envelope, context)
        except asyncio.CancelledError as e:
            await self._on_failure(envelope, e, claimed=True, record_failure=record_failure)
            raise
        except Exception as e:
            return await self._on_failure(envelope, e, claimed=True, record_failure=record_failure)

        await self._store.increment_metric(envelope.event_type)
        _audit(envelope.event_id, envelope.event_type, "processed")
        logger.info(
            "Processed event %s: %d/%d targets succeeded",
            envelope.event_id,
            summary.succeeded,
            summary.succeeded + summary.failed,
        )
        return ProcessingResult(Outcome.PROCESSED, event_id=envelope.event_id, summary=summary)

    async def _enrich(self, envelope: Envelope) -> EnrichedContext:
        """Best-effort enrichment; any failure yields an empty context."""
        if self._gateway is None:
            return EnrichedContext()
        try:
            outcome = await run_with_deadline(
                self._gateway.enrich(envelope), self._enrichment_timeout, label="enrichment"
            )
        except Exception as e:
            logger.warning("Enrichment failed for %s: %s", envelope.event_id, e)
            return EnrichedContext()
        if isinstance(outcome, Completed):
            return outcome.value
        logger.warning(
            "Enrichment timed out for %s after %.1fs, continuing without it",
            envelope.event_id,
            outcome.after_s,
        )
        return EnrichedContext()

    async def _on_failure(
        self,
        envelope: Envelope,
        error: BaseException,
        *,
        claimed: bool,
        record_failure: bool,
    ) -> ProcessingResult:
        kind = (
            ErrorKind.TRANSIENT
            if isinstance(error, asyncio.CancelledError)
            else classify_error(error)
        )
        message = str(error) or type(error).__name__

        if kind is ErrorKind.VALIDATION:
            logger.error(
                "Permanent failure processing %s, dropping: %s", envelope.event_id, message
            )
            _audit(envelope.event_id, envelope.event_type, "rejected")
            return ProcessingResult(
                Outcome.REJECTED, event_id=envelope.event_id, error=message, error_kind=kind
            )

        if kind is ErrorKind.TRANSIENT or kind is ErrorKind.UNKNOWN:
            logger.error(
                "Retryable failure (%s) processing %s: %s",
                kind.value,
                envelope.event_id,
                message,
                exc_info=error,
            )
            if claimed:
                await self._store.release(envelope.event_id)
            if record_failure:
                await self._ledger.append(envelope.payload, message, kind)
            _audit(envelope.event_id, envelope.event_type, "failed")
            return ProcessingResult(
                Outcome.FAILED, event_id=envelope.event_id, error=message, error_kind=kind
            )

        raise AssertionError(f"Unhandled error kind: {kind!r}")
