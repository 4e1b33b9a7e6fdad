"""FastAPI application factory and service wiring.

Settings are loaded once, then passed into every component constructor.
Run with:  uvicorn --factory webhook_hub.serve:create_app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import redis.asyncio as redis
from fastapi import FastAPI

from webhook_hub.config import ConfigurationError, Settings
from webhook_hub.webhooks.controller import IngestionController
from webhook_hub.webhooks.distribution import Distributor
from webhook_hub.webhooks.enrichment import EnrichmentGateway
from webhook_hub.webhooks.handlers import register_webhook_routes
from webhook_hub.webhooks.idempotency import IdempotencyStore
from webhook_hub.webhooks.ledger import FailureLedger
from webhook_hub.webhooks.sinks import build_sinks
from webhook_hub.webhooks.sweeper import RetrySweeper, SweepLoop

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Install a root handler once; leaves existing handlers alone."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)


@dataclass
class HubServices:
    """Everything the routes need, built once per app."""

    settings: Settings
    redis: redis.Redis
    http_client: httpx.AsyncClient
    store: IdempotencyStore
    ledger: FailureLedger
    distributor: Distributor
    controller: IngestionController
    sweeper: RetrySweeper
    sweep_loop: SweepLoop
    gateway: EnrichmentGateway | None = None

    async def aclose(self) -> None:
        await self.sweep_loop.stop()
        if self.gateway is not None:
            await self.gateway.aclose()
        await self.http_client.aclose()
        await self.redis.aclose()


def build_services(
    settings: Settings,
    *,
    redis_client: redis.Redis | None = None,
    http_client: httpx.AsyncClient | None = None,
    square_client: httpx.AsyncClient | None = None,
) -> HubServices:
    """Wire the hub. Raises ConfigurationError for fatal settings problems."""
    problems = settings.validate_settings()
    for warning in problems["warnings"]:
        logger.warning("Configuration: %s", warning)
    for error in problems["errors"]:
        logger.error("Configuration: %s", error)

    if redis_client is None:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    if http_client is None:
        http_client = httpx.AsyncClient()

    gateway = None
    if settings.enrichment_enabled:
        gateway = EnrichmentGateway(settings, client=square_client)
    else:
        logger.info("Square enrichment disabled")

    store = IdempotencyStore(redis_client, settings)
    ledger = FailureLedger(redis_client)
    distributor = Distributor(build_sinks(settings, http_client))
    enabled = [s.name for s in distributor.sinks if s.enabled]
    logger.info("Distribution targets enabled: %s", ", ".join(enabled) or "none")

    controller = IngestionController(settings, store, ledger, distributor, gateway)
    sweeper = RetrySweeper(settings, ledger, controller)
    return HubServices(
        settings=settings,
        redis=redis_client,
        http_client=http_client,
        store=store,
        ledger=ledger,
        distributor=distributor,
        controller=controller,
        sweeper=sweeper,
        sweep_loop=SweepLoop(sweeper, settings.retry_sweep_interval_s),
        gateway=gateway,
    )


def create_app(settings: Settings | None = None, services: HubServices | None = None) -> FastAPI:
    configure_logging()
    if services is None:
        settings = settings or Settings.from_env()
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.sweep_loop.start()
        try:
            yield
        finally:
            await services.aclose()

    app = FastAPI(title="Square Webhook Hub", lifespan=lifespan)
    app.state.services = services
    register_webhook_routes(app)
    return app


def main() -> None:
    import uvicorn

    try:
        app = create_app()
    except ConfigurationError as e:
        logger.critical("Startup aborted: %s", e)
        raise SystemExit(1) from e
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
