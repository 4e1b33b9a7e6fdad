"""Square API enrichment gateway.

Fetches authoritative object state for an envelope:
- order.*    -> order, then its customer and catalog objects (concurrently)
- payment.*  -> payment, then its parent order and that order's relations
- customer.* -> customer

Every upstream call is bounded by its own deadline. A failed or timed-out
secondary lookup never discards a successful primary lookup; enrich() returns
whatever it managed to resolve and does not raise for upstream failures.

A missing access token is a startup error (ConfigurationError), not a
per-call error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from webhook_hub.config import ConfigurationError, Settings
from webhook_hub.errors import ErrorKind, ProcessingError
from webhook_hub.models import EnrichedContext, Envelope
from webhook_hub.tasks import Completed, run_with_deadline

logger = logging.getLogger(__name__)

USER_AGENT = "Square-Webhook-Handler"


class EnrichmentGateway:
    """Async client for the Square REST API (orders, payments, customers, catalog)."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        if not settings.square_access_token:
            raise ConfigurationError("SQUARE_ACCESS_TOKEN is required for enrichment")
        self._call_timeout = settings.api_call_timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.square_base_url,
            timeout=settings.api_call_timeout_s,
        )
        self._headers = {
            "Authorization": f"Bearer {settings.square_access_token}",
            "Square-Version": settings.square_api_version,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        logger.info("Square enrichment gateway ready (%s)", settings.square_environment)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Raw API calls ────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        response = await self._client.request(method, path, headers=self._headers, **kwargs)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ProcessingError(
                ErrorKind.VALIDATION, f"{method} {path} returned a non-object body"
            )
        return data

    async def fetch_order(self, order_id: str) -> dict | None:
        data = await self._request("GET", f"/v2/orders/{order_id}")
        return data.get("order")

    async def fetch_payment(self, payment_id: str) -> dict | None:
        data = await self._request("GET", f"/v2/payments/{payment_id}")
        return data.get("payment")

    async def fetch_customer(self, customer_id: str) -> dict | None:
        data = await self._request("GET", f"/v2/customers/{customer_id}")
        return data.get("customer")

    async def fetch_catalog_objects(self, object_ids: list[str]) -> list[dict]:
        if not object_ids:
            return []
        data = await self._request(
            "POST",
            "/v2/catalog/batch-retrieve",
            json={"object_ids": object_ids, "include_related_objects": True},
        )
        return list(data.get("objects") or [])

    async def check(self) -> None:
        """Connectivity probe; raises on failure."""
        await self._request("GET", "/v2/locations")

    # ── Bounded lookups ──────────────────────────────────────────────────

    async def _lookup(self, label: str, coro: Any) -> Any:
        """Run one upstream call under the per-call deadline; None on failure."""
        try:
            outcome = await run_with_deadline(coro, self._call_timeout, label=label)
        except Exception as e:
            logger.warning("Square %s lookup failed: %s", label, e)
            return None
        if isinstance(outcome, Completed):
            return outcome.value
        logger.warning("Square %s lookup timed out after %.1fs", label, outcome.after_s)
        return None

    # ── Enrichment ───────────────────────────────────────────────────────

    async def enrich(self, envelope: Envelope) -> EnrichedContext:
        """Resolve the envelope's object and its related object."""
        context = EnrichedContext()
        obj = envelope.object
        object_id = obj.get("id")
        if not object_id:
            return context

        category = envelope.category
        if category == "order":
            context.order = await self._lookup("order", self.fetch_order(object_id))
            await self._enrich_order_relations(context)
        elif category == "payment":
            context.payment = await self._lookup("payment", self.fetch_payment(object_id))
            order_id = (context.payment or {}).get("order_id")
            if order_id:
                context.order = await self._lookup("parent order", self.fetch_order(order_id))
                await self._enrich_order_relations(context)
        elif category == "customer":
            context.customer = await self._lookup("customer", self.fetch_customer(object_id))
        else:
            logger.debug("No enrichment for event type %s", envelope.event_type)

        logger.info(
            "Enrichment complete for %s (%s): order=%s payment=%s customer=%s",
            envelope.event_id,
            envelope.event_type,
            context.order is not None,
            context.payment is not None,
            context.customer is not None,
        )
        return context

    async def _enrich_order_relations(self, context: EnrichedContext) -> None:
        order = context.order
        if not order:
            return
        customer_id = order.get("customer_id")
        variation_ids = [
            item["catalog_object_id"]
            for item in order.get("line_items") or []
            if isinstance(item, dict) and item.get("catalog_object_id")
        ]

        async def _none() -> None:
            return None

        customer, catalog = await asyncio.gather(
            self._lookup("customer", self.fetch_customer(customer_id)) if customer_id else _none(),
            self._lookup("catalog", self.fetch_catalog_objects(variation_ids))
            if variation_ids
            else _none(),
        )
        context.customer = customer
        context.catalog = catalog or []
