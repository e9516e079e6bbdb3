"""
nafflesync.api.routes.webhook — Platform webhook ingress
=========================================================

Every route is rate limited per peer IP.  The two webhook routes also
require a valid ``X-Naffles-Signature`` over the raw body; the signature
is checked before the body is decoded.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from nafflesync.api.deps import get_webhook_secret, get_webhook_service, read_verified_body
from nafflesync.api.rate_limit import rate_limited_peer
from nafflesync.database.engine import ping_db, run_db
from nafflesync.services.webhook_service import WebhookService

router = APIRouter(tags=["webhook"], dependencies=[Depends(rate_limited_peer)])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class WebhookEvent(BaseModel):
    eventType: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Any = None
    batchId: str | None = None


class BatchWebhook(BaseModel):
    batchId: str | None = None
    events: list[WebhookEvent] = Field(default_factory=list)
    timestamp: Any = None


def _decode(model: type[BaseModel], body: bytes) -> Any:
    try:
        return model.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid webhook body", "message": str(exc.errors()[0]["msg"])},
        ) from exc


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# POST /webhook
# ---------------------------------------------------------------------------
@router.post("/webhook")
async def receive_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
    secret: str = Depends(get_webhook_secret),
):
    """Apply one signed platform event."""
    service.mark_received()
    body = await read_verified_body(request, service, secret)
    event = _decode(WebhookEvent, body)

    logger.info(
        "Received webhook: %s (batch=%s, keys=%s)",
        event.eventType, event.batchId or "single", sorted(event.data),
    )
    try:
        processed = await service.apply(
            event.eventType, event.data,
            {"timestamp": event.timestamp, "batchId": event.batchId},
        )
    except Exception as exc:
        logger.exception("Error handling webhook %s", event.eventType)
        service.counters.webhooks_failed += 1
        return JSONResponse(
            status_code=500,
            content={"error": "Webhook processing failed", "message": str(exc)},
        )

    if processed:
        service.counters.webhooks_processed += 1
    return {"success": True, "processed": processed, "timestamp": _now_iso()}


# ---------------------------------------------------------------------------
# POST /webhook/batch
# ---------------------------------------------------------------------------
@router.post("/webhook/batch")
async def receive_batch_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
    secret: str = Depends(get_webhook_secret),
):
    """Apply a signed batch; one failing event never fails the others."""
    service.mark_received(batch=True)
    body = await read_verified_body(request, service, secret)
    batch = _decode(BatchWebhook, body)

    logger.info("Received batch webhook %s with %d events", batch.batchId, len(batch.events))
    results = await service.process_batch(
        [e.model_dump() for e in batch.events],
        {"batchId": batch.batchId, "timestamp": batch.timestamp, "source": "batch_webhook"},
    )
    successful = sum(1 for r in results if r.success)
    failed = len(results) - successful
    service.counters.webhooks_processed += successful
    service.counters.webhooks_failed += failed

    return {
        "success": True,
        "batchId": batch.batchId,
        "processed": successful,
        "failed": failed,
        "results": [r.to_dict() for r in results],
    }


# ---------------------------------------------------------------------------
# POST /register
# ---------------------------------------------------------------------------
@router.post("/register")
async def register_peer(request: Request):
    """Registration handshake from the platform.  Nothing is persisted."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    events = payload.get("events") if isinstance(payload, dict) else None
    secret = payload.get("secret") if isinstance(payload, dict) else None
    if not isinstance(events, list) or not secret:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid registration request", "required": ["events", "secret"]},
        )

    registered_at = _now_iso()
    logger.info("Webhook registration received: %d events", len(events))
    return {"success": True, "registration": {"events": len(events), "registeredAt": registered_at}}


# ---------------------------------------------------------------------------
# GET /health, GET /metrics
# ---------------------------------------------------------------------------
async def _service_checks(request: Request) -> dict[str, bool]:
    state = request.app.state
    discord_ready = state.discord_ready() if state.discord_ready else False

    database = False
    if state.db_engine is not None:
        database = await run_db(ping_db, state.db_engine)

    redis = False
    if state.kv is not None:
        redis = await state.kv.ping()

    return {
        "discord": bool(discord_ready),
        "sync": state.webhook_service.engine is not None,
        "database": database,
        "redis": redis,
    }


@router.get("/health")
async def health(request: Request, service: WebhookService = Depends(get_webhook_service)):
    """Liveness plus a boolean per backing service."""
    try:
        services = await _service_checks(request)
    except Exception as exc:
        logger.exception("Health check failed")
        return JSONResponse(
            status_code=500,
            content={"status": "unhealthy", "error": str(exc), "timestamp": _now_iso()},
        )
    return {
        "status": "healthy" if all(services.values()) else "degraded",
        "timestamp": _now_iso(),
        "uptime": service.clock.now() - request.app.state.started_at,
        "metrics": service.statistics(),
        "services": services,
    }


@router.get("/metrics")
async def metrics(request: Request, service: WebhookService = Depends(get_webhook_service)):
    limiter = request.app.state.rate_limiter
    return {
        **service.statistics(),
        "rateLimits": {
            "activeIps": limiter.active_peers,
            "maxRequestsPerMinute": limiter.max_requests,
        },
        "eventHandlers": service.handler_count,
        "uptime": service.clock.now() - request.app.state.started_at,
    }
