"""Webhook HTTP handlers: FastAPI routes for the hub.

Routes:
- POST /api/square-webhook        inbound Square notifications
- POST /api/validate              explicit (payload, signature, key) check
- GET|POST /api/retry-failed-events  on-demand / cron retry sweep
- GET /api/health                 storage, Square API and volume metrics

Security contract:
- Signature is verified over the raw body before anything is parsed
- 500 when no signature key is configured, 401 for a bad or missing
  signature, 400 for invalid JSON, 200 otherwise
- The 200 is sent before enrichment and distribution start; processing runs
  as a background task after the response
- Never return processing error details to the webhook sender
- POST retry triggers need the x-retry-secret-key header (constant-time check)
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse

from webhook_hub.models import utc_now_iso
from webhook_hub.webhooks.verification import SIGNATURE_HEADER, verify_signature

if TYPE_CHECKING:
    from webhook_hub.serve import HubServices

logger = logging.getLogger(__name__)

RETRY_SECRET_HEADER = "x-retry-secret-key"
HEALTH_PROBE_TIMEOUT_S = 5.0


def _services(request: Request) -> HubServices:
    return request.app.state.services


async def _handle_square_webhook(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    services = _services(request)
    start = time.time()

    signature_key = services.settings.square_signature_key
    if not signature_key:
        logger.error("SQUARE_SIGNATURE_KEY is not configured, cannot accept webhooks")
        return JSONResponse({"status": "error"}, status_code=500)

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_signature(body, signature, signature_key):
        logger.warning("Invalid webhook signature (present=%s)", bool(signature))
        return JSONResponse({"status": "unauthorized"}, status_code=401)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON")
        return JSONResponse({"status": "invalid_json"}, status_code=400)

    if isinstance(payload, dict):
        logger.info(
            "Received webhook: type=%s id=%s", payload.get("type"), payload.get("event_id")
        )
    background_tasks.add_task(services.controller.process, payload)

    logger.debug("Webhook accepted in %.1fms", (time.time() - start) * 1000)
    return JSONResponse({"status": "received"}, status_code=200)


async def _handle_validate(request: Request) -> JSONResponse:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse({"valid": False, "error": "Invalid JSON body"}, status_code=400)

    if not isinstance(body, dict):
        body = {}
    payload = body.get("payload")
    signature = body.get("signature")
    signature_key = body.get("signatureKey")
    if not payload or not signature or not signature_key:
        return JSONResponse(
            {
                "valid": False,
                "error": "Missing required fields. Please provide payload, signature, and signatureKey.",
            },
            status_code=400,
        )

    if not isinstance(payload, str):
        payload = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    valid = verify_signature(payload, str(signature), str(signature_key))
    return JSONResponse({"valid": valid, "timestamp": utc_now_iso()})


def _retry_authorized(request: Request, configured_key: str) -> bool:
    if request.method != "POST":
        return True
    provided = request.headers.get(RETRY_SECRET_HEADER, "")
    if not configured_key or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), configured_key.encode("utf-8"))


async def _handle_retry(request: Request) -> JSONResponse:
    services = _services(request)
    if not _retry_authorized(request, services.settings.retry_secret_key):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        summary = await services.sweeper.sweep()
    except Exception:
        logger.exception("Retry sweep failed")
        return JSONResponse(
            {"success": False, "error": "Retry sweep failed", "timestamp": utc_now_iso()},
            status_code=500,
        )

    return JSONResponse(
        {"success": True, "results": summary.to_dict(), "timestamp": utc_now_iso()}
    )


async def _handle_health(request: Request) -> JSONResponse:
    services = _services(request)
    start = time.monotonic()
    status = "ok"
    report: dict[str, Any] = {"timestamp": utc_now_iso(), "services": {}}

    try:
        await asyncio.wait_for(services.store.ping(), HEALTH_PROBE_TIMEOUT_S)
        report["services"]["storage"] = {
            "status": "ok",
            "latency_ms": round((time.monotonic() - start) * 1000, 1),
        }
    except Exception as e:
        report["services"]["storage"] = {"status": "error", "message": type(e).__name__}
        status = "degraded"

    if services.gateway is None:
        report["services"]["square_api"] = {"status": "disabled"}
    else:
        probe_start = time.monotonic()
        try:
            await asyncio.wait_for(services.gateway.check(), HEALTH_PROBE_TIMEOUT_S)
            report["services"]["square_api"] = {
                "status": "ok",
                "latency_ms": round((time.monotonic() - probe_start) * 1000, 1),
            }
        except Exception as e:
            report["services"]["square_api"] = {"status": "error", "message": type(e).__name__}
            status = "degraded"

    missing = services.settings.missing_required()
    if missing:
        report["missing_env_vars"] = missing
        status = "degraded"

    try:
        report["webhook_metrics"] = await services.store.metrics()
        report["failed_events_pending"] = await services.ledger.size()
    except Exception:
        logger.warning("Failed to read webhook metrics", exc_info=True)

    report["status"] = status
    report["response_time_ms"] = round((time.monotonic() - start) * 1000, 1)
    return JSONResponse(report, status_code=200 if status == "ok" else 207)


def register_webhook_routes(app: FastAPI) -> None:
    """Register hub routes. Expects ``app.state.services`` to be set."""

    @app.post("/api/square-webhook")
    async def square_webhook(request: Request, background_tasks: BackgroundTasks):
        """Receive Square webhooks (signature-verified)."""
        return await _handle_square_webhook(request, background_tasks)

    @app.post("/api/validate")
    async def validate(request: Request):
        """Check a signature for an explicit payload and key."""
        return await _handle_validate(request)

    @app.api_route("/api/retry-failed-events", methods=["GET", "POST"])
    async def retry_failed_events(request: Request):
        """Retry ledgered events (POST needs the retry secret)."""
        return await _handle_retry(request)

    @app.get("/api/health")
    async def health(request: Request):
        """Storage, Square API and webhook volume status."""
        return await _handle_health(request)

    logger.info("Webhook routes registered: /api/{square-webhook,validate,retry-failed-events,health}")
