"""Razorpay webhook endpoints.

Provides endpoints for:
- POST /webhooks/razorpay: signed event delivery
- GET /webhooks/razorpay: health and routing statistics

These endpoints do NOT require authentication; deliveries are verified by
their HMAC signature inside the processor.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from payhook.api.dependencies import (
    get_event_router,
    get_idempotency_store,
    get_webhook_processor,
)
from payhook.services.event_router import EventRouter
from payhook.services.idempotency import IdempotencyStore
from payhook.services.webhook_processor import WebhookProcessor
from payhook.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

PROCESSED_AT_HEADER = "X-Webhook-Processed-At"


@router.post("/webhooks/razorpay")
async def razorpay_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """Receive a Razorpay webhook delivery.

    The raw body is passed through untouched; the signature covers the
    exact bytes. Processing is shielded from client disconnects so a
    dropped connection never leaves an event half-handled.

    Returns:
        200 processed/duplicate/acknowledged, 400 rejected payload,
        401 invalid signature, 500 transient failure (provider retries)
    """
    body = await request.body()
    outcome = await asyncio.shield(processor.process(body, request.headers))

    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.response.to_body(),
        headers={PROCESSED_AT_HEADER: outcome.response.timestamp.isoformat()},
    )


@router.get("/webhooks/razorpay")
async def razorpay_webhook_health(
    include_events: bool = False,
    event_router: EventRouter = Depends(get_event_router),
    store: IdempotencyStore = Depends(get_idempotency_store),
) -> dict[str, Any]:
    """Health check with routing statistics.

    Args:
        include_events: Also aggregate the idempotency store (full table scan)
    """
    body: dict[str, Any] = {
        "status": "ok",
        "service": "razorpay-webhooks",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "router": event_router.get_statistics().model_dump(),
        "registeredEventTypes": event_router.registered_event_types(),
    }
    if include_events:
        stats = await asyncio.to_thread(store.get_statistics)
        body["events"] = stats.model_dump()
    return body
