"""Provider webhooks: reconcile orders Duffel reports against the ones we stored."""

import hashlib
import hmac
import json
import logging
from decimal import Decimal, InvalidOperation

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from app.config import settings
from app.dependencies import get_order_repository
from app.schemas.booking import ProviderBookingResponse
from app.services.booking.persistence import OrderRepository

logger = logging.getLogger(__name__)

router = APIRouter()


def signature_is_valid(header: str | None, body: bytes, secret: str) -> bool:
    """Check an ``X-Duffel-Signature`` header of the form ``t=<timestamp>,v1=<hex hmac>``."""
    if not header:
        return False
    parts = dict(part.split("=", 1) for part in header.split(",") if "=" in part)
    timestamp, signature = parts.get("t"), parts.get("v1")
    if not timestamp or not signature:
        return False
    expected = hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


@router.post("/webhooks/duffel")
async def duffel_webhook(
    request: Request,
    x_duffel_signature: str | None = Header(None),
    repository: OrderRepository = Depends(get_order_repository),
):
    """Record ``order.created`` events; other event types are acknowledged and ignored."""
    body = await request.body()
    secret = settings.duffel_webhook_secret
    if secret and not signature_is_valid(x_duffel_signature, body, secret):
        raise HTTPException(status_code=400, detail="Invalid Duffel signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    event_type = event.get("type")
    logger.info(f"Duffel webhook received: {event_type}")
    if event_type != "order.created":
        return {"received": True}

    order = (event.get("data") or {}).get("object") or {}
    if not order.get("id"):
        raise HTTPException(status_code=400, detail="order.created event has no order id")
    try:
        total = Decimal(str(order["total_amount"])) if order.get("total_amount") else None
    except InvalidOperation:
        raise HTTPException(status_code=400, detail=f"Invalid total_amount {order['total_amount']!r}")

    metadata = order.get("metadata") or {}
    record = await repository.record_provider_order(
        order["id"],
        idempotency_key=metadata.get("idempotency_key"),
        booking_reference=order.get("booking_reference"),
        total_amount=total,
        currency=order.get("total_currency"),
        payload=order,
    )
    return {"received": True, "status": record["status"], "order_id": record["order_id"]}


@router.get("/provider-bookings", response_model=list[ProviderBookingResponse])
async def list_provider_bookings(
    status: str | None = None,
    limit: int = 50,
    repository: OrderRepository = Depends(get_order_repository),
):
    """Provider-side orders, newest first. ``status=unmatched`` lists the ones needing follow-up."""
    return await repository.list_provider_bookings(status=status, limit=min(limit, 200))
