"""Data models for webhook processing.

- Envelope: one inbound Square notification (raw payload retained)
- ProcessingRecord: idempotency marker written on first acceptance
- EnrichedContext: per-attempt Square API lookups, never persisted
- FailureRecord: durable ledger entry for later retry
- DistributionSummary: per-target fan-out outcome
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from webhook_hub.errors import ErrorKind


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Envelope:
    """A Square webhook notification.

    ``payload`` is the parsed body exactly as received; retries reprocess it
    from scratch.
    """

    event_id: str
    event_type: str
    created_at: str = ""
    merchant_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> Envelope | None:
        """Build an Envelope, or None when the identifier or type is missing."""
        if not isinstance(payload, dict):
            return None
        event_id = payload.get("event_id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            return None
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            return None
        return cls(
            event_id=event_id,
            event_type=event_type,
            created_at=str(payload.get("created_at") or ""),
            merchant_id=str(payload.get("merchant_id") or ""),
            payload=payload,
        )

    @property
    def data(self) -> dict[str, Any]:
        data = self.payload.get("data")
        return data if isinstance(data, dict) else {}

    @property
    def object(self) -> dict[str, Any]:
        """The typed object reference carried in ``data.object``."""
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}

    @property
    def category(self) -> str:
        """Leading namespace of the type: ``order.created`` -> ``order``."""
        return self.event_type.split(".", 1)[0]

    @property
    def location_id(self) -> str:
        return str(self.object.get("location_id") or "")

    def order_value(self) -> float:
        """Order or payment value in major currency units (0 when unknown).

        Square amounts are integer minor units (cents).
        """
        obj = self.object
        if self.event_type.startswith("order."):
            money = obj.get("total_money")
        elif self.event_type.startswith("payment."):
            money = obj.get("amount_money")
        else:
            return 0.0
        if not isinstance(money, dict):
            return 0.0
        amount = money.get("amount")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            return 0.0
        return amount / 100


@dataclass
class ProcessingRecord:
    """Idempotency marker stored at ``event:<event_id>``."""

    event_id: str
    event_type: str
    processed_at: str
    merchant_id: str = ""
    location_id: str = ""

    @classmethod
    def for_envelope(cls, envelope: Envelope) -> ProcessingRecord:
        return cls(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            processed_at=utc_now_iso(),
            merchant_id=envelope.merchant_id,
            location_id=envelope.location_id,
        )

    def to_json(self) -> str:
        return json.dumps(
            {
                "event_id": self.event_id,
                "event_type": self.event_type,
                "processed_at": self.processed_at,
                "merchant_id": self.merchant_id,
                "location_id": self.location_id,
            }
        )


@dataclass
class EnrichedContext:
    """Authoritative Square objects fetched for one processing attempt."""

    order: dict[str, Any] | None = None
    payment: dict[str, Any] | None = None
    customer: dict[str, Any] | None = None
    catalog: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.order or self.payment or self.customer or self.catalog)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "payment": self.payment,
            "customer": self.customer,
            "catalog": self.catalog,
        }


@dataclass
class FailureRecord:
    """Ledger entry for an envelope whose processing did not complete.

    ``member`` is the exact serialized form stored in the ledger; it is the
    record's identity for removal.
    """

    event_id: str
    payload: dict[str, Any]
    error: str
    error_kind: ErrorKind = ErrorKind.UNKNOWN
    failed_at: str = field(default_factory=utc_now_iso)
    retry_count: int = 0
    score: float = field(default_factory=lambda: time.time() * 1000)
    member: str | None = None

    def serialize(self) -> str:
        return json.dumps(
            {
                "event_id": self.event_id,
                "event_data": self.payload,
                "error": self.error,
                "error_kind": self.error_kind.value,
                "failed_at": self.failed_at,
                "retry_count": self.retry_count,
            },
            sort_keys=True,
            default=str,
        )

    @classmethod
    def deserialize(cls, member: str, score: float) -> FailureRecord:
        raw = json.loads(member)
        if not isinstance(raw, dict):
            raise ValueError("ledger entry is not a JSON object")
        if not isinstance(raw.get("event_data"), dict):
            raise ValueError("ledger entry has no event_data object")
        try:
            kind = ErrorKind(raw.get("error_kind", ErrorKind.UNKNOWN.value))
        except ValueError:
            kind = ErrorKind.UNKNOWN
        return cls(
            event_id=raw.get("event_id", ""),
            payload=raw["event_data"],
            error=raw.get("error", ""),
            error_kind=kind,
            failed_at=raw.get("failed_at", ""),
            retry_count=int(raw.get("retry_count", 0)),
            score=score,
            member=member,
        )


class TargetStatus(str, Enum):
    """Outcome of one distribution target."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class TargetOutcome:
    target: str
    status: TargetStatus
    detail: str = ""
    elapsed_ms: float = 0.0


@dataclass
class DistributionSummary:
    """Completion summary for one fan-out."""

    outcomes: list[TargetOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == TargetStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    @property
    def failed_targets(self) -> list[str]:
        return [o.target for o in self.outcomes if o.status != TargetStatus.SUCCEEDED]
