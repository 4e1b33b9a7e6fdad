"""Tests for the Square enrichment gateway (httpx.MockTransport backed)."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from fakes import make_payload
from webhook_hub.config import ConfigurationError, Settings
from webhook_hub.errors import ErrorKind, ProcessingError
from webhook_hub.models import Envelope
from webhook_hub.webhooks.enrichment import EnrichmentGateway

ORDER = {
    "id": "o1",
    "location_id": "L1",
    "customer_id": "c1",
    "total_money": {"amount": 2650, "currency": "USD"},
    "line_items": [{"name": "Tee", "catalog_object_id": "var-1"}],
}
PAYMENT = {"id": "p1", "order_id": "o1", "amount_money": {"amount": 2650, "currency": "USD"}}
CUSTOMER = {"id": "c1", "given_name": "Ada", "family_name": "Lovelace"}


def _settings(**overrides) -> Settings:
    return Settings(square_access_token="sq-token", api_call_timeout_s=0.2, **overrides)


def _gateway(handler, settings: Settings | None = None) -> EnrichmentGateway:
    settings = settings or _settings()
    client = httpx.AsyncClient(
        base_url=settings.square_base_url, transport=httpx.MockTransport(handler)
    )
    return EnrichmentGateway(settings, client=client)


def _square_api(failing: set[str] | None = None, slow: set[str] | None = None):
    """Mock Square API; paths in ``failing`` return 500, in ``slow`` stall."""
    failing = failing or set()
    slow = slow or set()
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append(path)
        if path in slow:
            await asyncio.sleep(5)
        if path in failing:
            return httpx.Response(500, json={"errors": [{"code": "INTERNAL_SERVER_ERROR"}]})
        if path == "/v2/orders/o1":
            return httpx.Response(200, json={"order": ORDER})
        if path == "/v2/payments/p1":
            return httpx.Response(200, json={"payment": PAYMENT})
        if path == "/v2/customers/c1":
            return httpx.Response(200, json={"customer": CUSTOMER})
        if path == "/v2/catalog/batch-retrieve":
            ids = json.loads(request.content)["object_ids"]
            return httpx.Response(200, json={"objects": [{"id": i, "type": "ITEM_VARIATION"} for i in ids]})
        if path == "/v2/locations":
            return httpx.Response(200, json={"locations": []})
        return httpx.Response(404, json={})

    return handler, calls


class TestGatewayConstruction:
    def test_missing_token_is_fatal(self):
        with pytest.raises(ConfigurationError):
            EnrichmentGateway(Settings(square_access_token=""))

    def test_base_url_per_environment(self):
        assert Settings(square_environment="production").square_base_url == "https://connect.squareup.com"
        assert "sandbox" in Settings().square_base_url


class TestEnrich:
    @pytest.mark.asyncio
    async def test_order_with_customer_and_catalog(self):
        handler, calls = _square_api()
        gateway = _gateway(handler)

        context = await gateway.enrich(Envelope.from_payload(make_payload()))

        assert context.order == ORDER
        assert context.customer == CUSTOMER
        assert [o["id"] for o in context.catalog] == ["var-1"]
        assert context.payment is None

    @pytest.mark.asyncio
    async def test_sends_auth_headers(self):
        seen: list[httpx.Request] = []

        async def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"customer": CUSTOMER})

        gateway = _gateway(handler)
        await gateway.fetch_customer("c1")
        assert seen[0].headers["Authorization"] == "Bearer sq-token"
        assert seen[0].headers["Square-Version"]

    @pytest.mark.asyncio
    async def test_payment_with_parent_order(self):
        handler, calls = _square_api()
        gateway = _gateway(handler)
        payload = make_payload(event_type="payment.created")
        payload["data"]["object"]["id"] = "p1"

        context = await gateway.enrich(Envelope.from_payload(payload))

        assert context.payment == PAYMENT
        assert context.order == ORDER
        assert context.customer == CUSTOMER
        assert calls[:2] == ["/v2/payments/p1", "/v2/orders/o1"]
        assert "/v2/customers/c1" in calls

    @pytest.mark.asyncio
    async def test_customer_event(self):
        handler, _ = _square_api()
        gateway = _gateway(handler)
        payload = make_payload(event_type="customer.created")
        payload["data"]["object"]["id"] = "c1"

        context = await gateway.enrich(Envelope.from_payload(payload))
        assert context.customer == CUSTOMER

    @pytest.mark.asyncio
    async def test_secondary_failure_keeps_primary(self):
        handler, _ = _square_api(failing={"/v2/customers/c1"})
        gateway = _gateway(handler)

        context = await gateway.enrich(Envelope.from_payload(make_payload()))

        assert context.order == ORDER
        assert context.customer is None

    @pytest.mark.asyncio
    async def test_secondary_timeout_keeps_primary(self):
        handler, _ = _square_api(slow={"/v2/orders/o1"})
        gateway = _gateway(handler)
        payload = make_payload(event_type="payment.created")
        payload["data"]["object"]["id"] = "p1"

        context = await gateway.enrich(Envelope.from_payload(payload))

        assert context.payment == PAYMENT
        assert context.order is None

    @pytest.mark.asyncio
    async def test_primary_failure_gives_empty_context(self):
        handler, calls = _square_api(failing={"/v2/orders/o1"})
        gateway = _gateway(handler)

        context = await gateway.enrich(Envelope.from_payload(make_payload()))

        assert context.is_empty
        assert calls == ["/v2/orders/o1"]

    @pytest.mark.asyncio
    async def test_unsupported_type_makes_no_calls(self):
        handler, calls = _square_api()
        gateway = _gateway(handler)

        context = await gateway.enrich(
            Envelope.from_payload(make_payload(event_type="inventory.count.updated"))
        )
        assert context.is_empty
        assert calls == []

    @pytest.mark.asyncio
    async def test_check_raises_on_failure(self):
        handler, _ = _square_api(failing={"/v2/locations"})
        gateway = _gateway(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await gateway.check()

    @pytest.mark.asyncio
    async def test_non_object_body_is_validation_error(self):
        async def handler(request):
            return httpx.Response(200, json=["unexpected"])

        gateway = _gateway(handler)
        with pytest.raises(ProcessingError) as excinfo:
            await gateway.fetch_order("o1")
        assert excinfo.value.kind is ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_non_object_body_leaves_lookup_empty(self):
        async def handler(request):
            return httpx.Response(200, json="oops")

        gateway = _gateway(handler)
        context = await gateway.enrich(Envelope.from_payload(make_payload()))
        assert context.is_empty
