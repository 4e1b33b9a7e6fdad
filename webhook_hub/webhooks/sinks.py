"""Distribution sinks: downstream consumers of processed envelopes.

Each sink is one side-effecting call with its own deadline:
- analytics: server-side GTM endpoint, GA4 measurement format (8s)
- crm: CRM webhook, raw event plus enriched context (5s)
- alert: high-value order notification, only above the threshold (5s)
- log: internal activity log line (3s)

A sink raises on failure (non-2xx, transport error); isolation and timeouts
are applied by the distributor, not here.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from webhook_hub.config import Settings
from webhook_hub.models import EnrichedContext, Envelope, utc_now_iso

logger = logging.getLogger(__name__)

USER_AGENT = "Square-Webhook-Handler"

# Square event type -> GA4 event name
_GA4_EVENT_NAMES: dict[str, str] = {
    "order.created": "purchase",
    "order.updated": "order_updated",
    "order.fulfilled": "order_fulfilled",
    "payment.created": "payment_received",
    "payment.updated": "payment_updated",
    "refund.created": "refund",
    "customer.created": "new_customer",
    "customer.updated": "customer_updated",
    "inventory.count.updated": "inventory_updated",
}


def _is_url(value: str) -> bool:
    return bool(value) and "://" in value


def _money(value: Any) -> tuple[float, str] | None:
    if not isinstance(value, dict):
        return None
    return (value.get("amount") or 0) / 100, value.get("currency") or "USD"


def _customer_name(customer: dict) -> str:
    return " ".join(p for p in (customer.get("given_name"), customer.get("family_name")) if p)


# ── GA4 transformation ────────────────────────────────────────────────────


def ga4_event_name(event_type: str) -> str:
    return _GA4_EVENT_NAMES.get(event_type, "square_webhook_event")


def transform_for_ga4(envelope: Envelope, context: EnrichedContext) -> dict[str, Any]:
    """Build a GA4 measurement-protocol document for the envelope."""
    params: dict[str, Any] = {
        "engagement_time_msec": 1,
        "session_id": envelope.event_id,
        "event_source": "square_webhook",
        "webhook_event_type": envelope.event_type,
    }
    obj = envelope.object
    if obj:
        params["merchant_id"] = obj.get("merchant_id") or envelope.merchant_id
        params["location_id"] = obj.get("location_id") or ""
        category = envelope.category
        if category == "order":
            _add_order_params(params, obj, context)
        elif category == "payment":
            _add_payment_params(params, obj, context)
        elif category == "refund":
            _add_refund_params(params, obj)
        elif category == "customer":
            _add_customer_params(params, context.customer or obj)
        else:
            for key, value in obj.items():
                if value is not None and not isinstance(value, (dict, list)):
                    params[f"square_{key}"] = str(value)

    return {
        "client_id": f"square_{envelope.merchant_id or 'unknown'}",
        "timestamp_micros": int(time.time() * 1_000_000),
        "non_personalized_ads": True,
        "events": [{"name": ga4_event_name(envelope.event_type), "params": params}],
    }


def _add_order_params(params: dict, order_data: dict, context: EnrichedContext) -> None:
    order = context.order or order_data
    params["transaction_id"] = order.get("id") or ""
    params["affiliation"] = "Square"

    total = _money(order.get("total_money"))
    if total:
        params["value"], params["currency"] = total
    tax = _money(order.get("total_tax_money"))
    if tax:
        params["tax"] = tax[0]
    shipping = _money(order.get("total_service_charge_money"))
    if shipping:
        params["shipping"] = shipping[0]

    items = order.get("line_items") or []
    if items:
        params["items"] = [
            {
                "item_id": item.get("catalog_object_id") or "",
                "item_name": item.get("name") or "Unknown Item",
                "quantity": item.get("quantity") or 1,
                "price": (_money(item.get("base_price_money")) or (0, ""))[0],
                "item_category": item.get("variation_name") or "",
            }
            for item in items
            if isinstance(item, dict)
        ]

    customer = context.customer
    if customer:
        params["customer_id"] = customer.get("id") or ""
        if customer.get("email_address"):
            params["email"] = customer["email_address"]
        name = _customer_name(customer)
        if name:
            params["customer_name"] = name


def _add_payment_params(params: dict, payment_data: dict, context: EnrichedContext) -> None:
    payment = context.payment or payment_data
    params["transaction_id"] = payment.get("id") or ""
    params["payment_status"] = payment.get("status") or ""
    amount = _money(payment.get("amount_money"))
    if amount:
        params["value"], params["currency"] = amount
    if payment.get("payment_type"):
        params["payment_method"] = payment["payment_type"]
    if payment.get("source_type"):
        params["payment_source"] = payment["source_type"]
    if payment.get("order_id"):
        params["order_id"] = payment["order_id"]
    if payment.get("location_id"):
        params["location_id"] = payment["location_id"]


def _add_refund_params(params: dict, refund: dict) -> None:
    params["transaction_id"] = refund.get("id") or ""
    params["refund_status"] = refund.get("status") or ""
    amount = _money(refund.get("amount_money"))
    if amount:
        params["value"], params["currency"] = amount
    if refund.get("reason"):
        params["refund_reason"] = refund["reason"]
    if refund.get("payment_id"):
        params["payment_id"] = refund["payment_id"]


def _add_customer_params(params: dict, customer: dict) -> None:
    params["customer_id"] = customer.get("id") or ""
    if customer.get("email_address"):
        params["email"] = customer["email_address"]
    name = _customer_name(customer)
    if name:
        params["customer_name"] = name
    if customer.get("created_at"):
        params["customer_creation_date"] = customer["created_at"]


# ── Sinks ─────────────────────────────────────────────────────────────────


class Sink:
    """Base distribution target."""

    name = "sink"

    def __init__(self, timeout: float, enabled: bool = True):
        self.timeout = timeout
        self.enabled = enabled

    def applies_to(self, envelope: Envelope) -> bool:
        """Whether this sink should receive the envelope."""
        return True

    async def deliver(self, envelope: Envelope, context: EnrichedContext) -> None:
        raise NotImplementedError


class HttpSink(Sink):
    """Sink that POSTs a JSON document and expects a 2xx acknowledgement."""

    def __init__(self, url: str, client: httpx.AsyncClient, timeout: float):
        super().__init__(timeout=timeout, enabled=_is_url(url))
        self.url = url
        self._client = client

    def build_document(self, envelope: Envelope, context: EnrichedContext) -> dict[str, Any]:
        raise NotImplementedError

    async def deliver(self, envelope: Envelope, context: EnrichedContext) -> None:
        response = await self._client.post(
            self.url,
            json=self.build_document(envelope, context),
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info(
            "Delivered %s to %s (HTTP %d)", envelope.event_id, self.name, response.status_code
        )


class AnalyticsSink(HttpSink):
    name = "analytics"

    def build_document(self, envelope: Envelope, context: EnrichedContext) -> dict[str, Any]:
        return transform_for_ga4(envelope, context)


class CrmSink(HttpSink):
    name = "crm"

    def build_document(self, envelope: Envelope, context: EnrichedContext) -> dict[str, Any]:
        return {
            "source": "square",
            "event_type": envelope.event_type,
            "event_id": envelope.event_id,
            "timestamp": utc_now_iso(),
            "data": {**envelope.data, "enriched": context.to_dict()},
        }


class AlertSink(HttpSink):
    """High-value order notification; fires only when value > threshold."""

    name = "alert"

    def __init__(self, url: str, client: httpx.AsyncClient, timeout: float, threshold: float):
        super().__init__(url, client, timeout)
        self.threshold = threshold

    def applies_to(self, envelope: Envelope) -> bool:
        return envelope.order_value() > self.threshold

    def build_document(self, envelope: Envelope, context: EnrichedContext) -> dict[str, Any]:
        order = context.order or envelope.object
        customer = context.customer or {}
        total = _money(order.get("total_money") or order.get("amount_money"))
        order_id = order.get("id") or ""
        return {
            "type": "high_value_order",
            "order_id": order_id,
            "order_total": f"{total[1]} {total[0]:.2f}" if total else "Unknown",
            "order_value": envelope.order_value(),
            "location_id": order.get("location_id") or "",
            "customer_name": _customer_name(customer) or "Unknown Customer",
            "customer_email": customer.get("email_address") or "No email provided",
            "timestamp": utc_now_iso(),
            "order_url": f"https://squareup.com/dashboard/orders/{order_id}",
        }


class LogSink(Sink):
    """Internal activity log."""

    name = "log"

    async def deliver(self, envelope: Envelope, context: EnrichedContext) -> None:
        logger.info(
            "WEBHOOK_ACTIVITY id=%s type=%s merchant=%s value=%.2f enriched=%s",
            envelope.event_id,
            envelope.event_type,
            envelope.merchant_id or "-",
            envelope.order_value(),
            not context.is_empty,
        )


def build_sinks(settings: Settings, client: httpx.AsyncClient) -> list[Sink]:
    """Configured distribution targets (disabled ones included, flagged off)."""
    timeouts = settings.sink_timeouts
    return [
        AnalyticsSink(settings.gtm_server_url, client, timeouts.analytics),
        CrmSink(settings.crm_webhook_url, client, timeouts.crm),
        AlertSink(
            settings.notification_webhook_url,
            client,
            timeouts.alert,
            threshold=settings.high_value_threshold,
        ),
        LogSink(timeouts.log, enabled=settings.log_sink_enabled),
    ]
