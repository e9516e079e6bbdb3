"""
nafflesync.api.deps — FastAPI dependency injection
===================================================

The ingress shares its collaborators with the bot process, so they are
attached to ``app.state`` by :func:`nafflesync.api.main.create_app` rather
than built lazily here.
"""

from __future__ import annotations

import logging

from fastapi import Request

from nafflesync import constants as C
from nafflesync.api.signature import verify_signature
from nafflesync.errors import SignatureError
from nafflesync.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.webhook_service


def get_webhook_secret(request: Request) -> str:
    return request.app.state.webhook_secret


async def read_verified_body(request: Request, service: WebhookService, secret: str) -> bytes:
    """Raw request body, after its HMAC has been checked.

    A mismatch counts against ``webhooksFailed`` and re-raises
    :class:`~nafflesync.errors.SignatureError`, which the app turns into a
    401.
    """
    body = await request.body()
    signature = request.headers.get(C.SIGNATURE_HEADER)
    try:
        verify_signature(body, signature, secret)
    except SignatureError:
        service.counters.webhooks_failed += 1
        logger.warning(
            "Invalid webhook signature from %s (%s...)",
            request.client.host if request.client else "unknown",
            (signature or "")[:10],
        )
        raise
    return body
