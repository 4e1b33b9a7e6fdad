"""Shared fixtures for the webhook hub test suite."""

from __future__ import annotations

from typing import Any

import pytest

from fakes import SIGNATURE_KEY, FakeRedis, make_payload
from webhook_hub.config import Settings


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """Keep the host environment out of Settings."""
    for name in [*Settings.model_fields, "square_api_timeout_s"]:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest.fixture
def settings() -> Settings:
    """Settings with enrichment off and no scheduled sweeps."""
    return Settings(
        square_signature_key=SIGNATURE_KEY,
        enrichment_enabled=False,
        retry_secret_key="retry-secret-0123",
        retry_sweep_interval_s=0,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def payload() -> dict[str, Any]:
    return make_payload()
