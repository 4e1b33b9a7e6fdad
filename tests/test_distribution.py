"""Tests for sink fan-out and the sink documents."""

from __future__ import annotations

import json
import time

import httpx
import pytest

from fakes import RecordingSink, make_payload
from webhook_hub.config import Settings
from webhook_hub.models import EnrichedContext, Envelope, TargetStatus
from webhook_hub.webhooks.distribution import Distributor
from webhook_hub.webhooks.sinks import (
    AlertSink,
    AnalyticsSink,
    CrmSink,
    LogSink,
    build_sinks,
    ga4_event_name,
    transform_for_ga4,
)


def _envelope(**kwargs) -> Envelope:
    return Envelope.from_payload(make_payload(**kwargs))


def _capturing_client(status: int = 200):
    posted: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append((str(request.url), json.loads(request.content)))
        return httpx.Response(status, json={"ok": status < 400})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), posted


class TestFanOut:
    @pytest.mark.asyncio
    async def test_all_sinks_invoked(self):
        sinks = [RecordingSink("a"), RecordingSink("b"), RecordingSink("c")]
        summary = await Distributor(sinks).distribute(_envelope(), EnrichedContext())

        assert summary.succeeded == 3
        assert summary.failed == 0
        assert all(len(s.calls) == 1 for s in sinks)

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_abort_others(self):
        ok = RecordingSink("ok", delay=0.05)
        bad = RecordingSink("bad", error=httpx.ConnectError("refused"))
        summary = await Distributor([bad, ok]).distribute(_envelope(), EnrichedContext())

        assert ok.completed == 1
        assert summary.succeeded == 1
        assert summary.failed_targets == ["bad"]
        [failed] = [o for o in summary.outcomes if o.target == "bad"]
        assert failed.status == TargetStatus.FAILED
        assert "ConnectError" in failed.detail

    @pytest.mark.asyncio
    async def test_slow_sink_cancelled_at_its_deadline(self):
        slow = RecordingSink("slow", timeout=0.05, delay=5.0)
        fast = RecordingSink("fast")
        summary = await Distributor([slow, fast]).distribute(_envelope(), EnrichedContext())

        [outcome] = [o for o in summary.outcomes if o.target == "slow"]
        assert outcome.status == TargetStatus.TIMED_OUT
        assert slow.completed == 0
        assert fast.completed == 1

    @pytest.mark.asyncio
    async def test_latency_bounded_by_slowest_deadline_not_sum(self):
        sinks = [RecordingSink(f"s{i}", timeout=0.1, delay=1.0) for i in range(4)]
        start = time.monotonic()
        summary = await Distributor(sinks).distribute(_envelope(), EnrichedContext())
        elapsed = time.monotonic() - start

        assert summary.failed == 4
        assert elapsed < 0.35

    @pytest.mark.asyncio
    async def test_disabled_sinks_skipped(self):
        off = RecordingSink("off", enabled=False)
        on = RecordingSink("on")
        summary = await Distributor([off, on]).distribute(_envelope(), EnrichedContext())

        assert off.calls == []
        assert [o.target for o in summary.outcomes] == ["on"]

    @pytest.mark.asyncio
    async def test_no_targets_is_empty_success(self):
        summary = await Distributor([]).distribute(_envelope(), EnrichedContext())
        assert summary.outcomes == []
        assert summary.failed == 0


class TestHighValueThreshold:
    def _alert(self, client=None) -> AlertSink:
        client = client or httpx.AsyncClient()
        return AlertSink("https://alerts.example.com/hook", client, 5.0, threshold=100.0)

    def test_below_threshold_not_targeted(self):
        assert self._alert().applies_to(_envelope(amount=2650)) is False

    def test_above_threshold_targeted(self):
        assert self._alert().applies_to(_envelope(amount=15000)) is True

    def test_exactly_threshold_not_targeted(self):
        assert self._alert().applies_to(_envelope(amount=10000)) is False

    def test_non_order_events_never_alert(self):
        assert self._alert().applies_to(_envelope(event_type="customer.created")) is False

    @pytest.mark.asyncio
    async def test_one_alert_for_high_value_order(self):
        client, posted = _capturing_client()
        alert = self._alert(client)
        log = RecordingSink("log")
        distributor = Distributor([alert, log])

        await distributor.distribute(_envelope(amount=2650), EnrichedContext())
        assert posted == []

        summary = await distributor.distribute(_envelope(amount=15000), EnrichedContext())
        assert len(posted) == 1
        url, document = posted[0]
        assert url == "https://alerts.example.com/hook"
        assert document["type"] == "high_value_order"
        assert document["order_value"] == 150.0
        assert document["order_total"] == "USD 150.00"
        assert document["order_url"].endswith("/o1")
        assert summary.succeeded == 2
        assert len(log.calls) == 2


class TestHttpSinks:
    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        client, _ = _capturing_client(status=503)
        sink = CrmSink("https://crm.example.com/hook", client, 5.0)
        summary = await Distributor([sink]).distribute(_envelope(), EnrichedContext())

        assert summary.failed_targets == ["crm"]

    @pytest.mark.asyncio
    async def test_crm_document_carries_enriched_context(self):
        client, posted = _capturing_client()
        sink = CrmSink("https://crm.example.com/hook", client, 5.0)
        context = EnrichedContext(customer={"id": "c1"})

        await sink.deliver(_envelope(), context)

        _, document = posted[0]
        assert document["source"] == "square"
        assert document["event_id"] == "evt-1"
        assert document["event_type"] == "order.created"
        assert document["data"]["object"]["id"] == "o1"
        assert document["data"]["enriched"]["customer"] == {"id": "c1"}

    @pytest.mark.asyncio
    async def test_analytics_posts_ga4_document(self):
        client, posted = _capturing_client()
        sink = AnalyticsSink("https://gtm.example.com/collect", client, 8.0)
        await sink.deliver(_envelope(), EnrichedContext())

        _, document = posted[0]
        assert document["events"][0]["name"] == "purchase"

    def test_unset_or_invalid_url_disables_sink(self):
        client = httpx.AsyncClient()
        assert CrmSink("", client, 5.0).enabled is False
        assert CrmSink("not a url", client, 5.0).enabled is False
        assert CrmSink("https://crm.example.com", client, 5.0).enabled is True

    @pytest.mark.asyncio
    async def test_log_sink_writes_activity_line(self, caplog):
        caplog.set_level("INFO")
        await LogSink(3.0).deliver(_envelope(), EnrichedContext())
        assert "WEBHOOK_ACTIVITY id=evt-1 type=order.created" in caplog.text


class TestBuildSinks:
    def test_default_timeouts(self):
        sinks = build_sinks(Settings(), httpx.AsyncClient())
        assert {s.name: s.timeout for s in sinks} == {
            "analytics": 8.0,
            "crm": 5.0,
            "alert": 5.0,
            "log": 3.0,
        }

    def test_only_log_enabled_without_urls(self):
        sinks = build_sinks(Settings(), httpx.AsyncClient())
        assert [s.name for s in sinks if s.enabled] == ["log"]


class TestGa4Transform:
    def test_event_name_mapping(self):
        assert ga4_event_name("order.created") == "purchase"
        assert ga4_event_name("refund.created") == "refund"
        assert ga4_event_name("loyalty.account.created") == "square_webhook_event"

    def test_order_params_prefer_enriched_order(self):
        order = {
            "id": "o1",
            "total_money": {"amount": 4200, "currency": "EUR"},
            "total_tax_money": {"amount": 300, "currency": "EUR"},
            "line_items": [
                {
                    "name": "Mug",
                    "catalog_object_id": "var-9",
                    "quantity": "2",
                    "base_price_money": {"amount": 1950, "currency": "EUR"},
                }
            ],
        }
        customer = {"id": "c1", "given_name": "Ada", "email_address": "ada@example.com"}
        document = transform_for_ga4(_envelope(), EnrichedContext(order=order, customer=customer))

        params = document["events"][0]["params"]
        assert params["transaction_id"] == "o1"
        assert params["value"] == 42.0
        assert params["currency"] == "EUR"
        assert params["tax"] == 3.0
        assert params["items"][0]["item_id"] == "var-9"
        assert params["items"][0]["price"] == 19.5
        assert params["customer_name"] == "Ada"
        assert params["email"] == "ada@example.com"
        assert document["client_id"] == "square_M1"

    def test_payment_params(self):
        envelope = _envelope(event_type="payment.created", amount=1234, status="COMPLETED")
        params = transform_for_ga4(envelope, EnrichedContext())["events"][0]["params"]

        assert params["event_source"] == "square_webhook"
        assert params["value"] == 12.34
        assert params["payment_status"] == "COMPLETED"

    def test_unknown_type_flattens_scalars(self):
        envelope = _envelope(event_type="loyalty.account.created", points=7)
        params = transform_for_ga4(envelope, EnrichedContext())["events"][0]["params"]
        assert params["square_points"] == "7"
