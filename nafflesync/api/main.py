"""
nafflesync.api.main — FastAPI webhook ingress
==============================================

The ingress runs inside the bot process (the bot starts a uvicorn server
task in ``setup_hook``) so webhook handlers and the sync engine share one
event loop.  :func:`create_app` takes the live collaborators and parks
them on ``app.state`` for the routes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import Engine

from nafflesync.api.rate_limit import PeerRateLimiter
from nafflesync.api.routes.webhook import router as webhook_router
from nafflesync.errors import SignatureError
from nafflesync.services.kv_cache import KVCache
from nafflesync.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


def create_app(
    service: WebhookService,
    *,
    webhook_secret: str = "",
    rate_limiter: PeerRateLimiter | None = None,
    kv: KVCache | None = None,
    db_engine: Engine | None = None,
    discord_ready: Callable[[], bool] | None = None,
) -> FastAPI:
    """Build the ingress app around an existing :class:`WebhookService`."""
    if rate_limiter is None:
        rate_limiter = PeerRateLimiter(clock=service.clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Webhook ingress started (%d event types)", service.handler_count)
        yield
        logger.info("Webhook ingress shutting down")

    app = FastAPI(title="Naffles Sync Webhook Ingress", version="1.0.0", lifespan=lifespan)

    app.state.webhook_service = service
    app.state.webhook_secret = webhook_secret
    app.state.rate_limiter = rate_limiter
    app.state.kv = kv
    app.state.db_engine = db_engine
    app.state.discord_ready = discord_ready
    app.state.started_at = service.clock.now()

    @app.exception_handler(SignatureError)
    async def _signature_error(request: Request, exc: SignatureError):
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    app.include_router(webhook_router)
    return app
