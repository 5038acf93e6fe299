"""Mercado Pago payment notifications.

The gateway retries any notification that is not answered with 200, so the
endpoint acknowledges first and does the work in a background task.
"""
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool

from kiosk.config import DEFAULT_STORE_ID, MP_WEBHOOK_SECRET
from kiosk.errors import PaymentError
from kiosk.gateway import PAID_INTENT_STATES
from kiosk.registry import amount_key, reference_key, to_minor_units
from kiosk.routes import get_engine, get_gateway_factory, settle_order
from kiosk.store_resolver import load_store

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_signature(secret: str, signature: Optional[str], request_id: Optional[str], data_id: str) -> bool:
    """Check ``x-signature: ts=...,v1=...`` against the notification manifest."""
    if not signature:
        return False
    parts = dict(
        chunk.strip().split("=", 1) for chunk in signature.split(",") if "=" in chunk
    )
    ts, received = parts.get("ts"), parts.get("v1")
    if not ts or not received:
        return False

    manifest = f"id:{data_id.lower() if data_id.isalnum() else data_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"
    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


def extract_payment_id(event: dict, query: dict) -> Optional[str]:
    """Payment id carried by a webhook, IPN or Point intent notification."""
    kind = event.get("type") or event.get("topic") or query.get("type") or query.get("topic") or ""
    data = event.get("data") or {}

    if kind == "point_integration_wh":
        if str(data.get("state") or "").upper() not in {s.value for s in PAID_INTENT_STATES}:
            return None
        payment_id = (data.get("payment") or {}).get("id")
    elif kind == "payment" or str(event.get("action") or "").startswith("payment."):
        payment_id = data.get("id") or query.get("data.id") or query.get("id")
    else:
        return None
    return str(payment_id) if payment_id else None


def record_confirmation(registry, store_id: str, payment) -> None:
    """Make an approved payment visible to the store's next status poll without a gateway call."""
    if payment.external_reference:
        registry.record_confirmed(reference_key(store_id, payment.external_reference),
                                  payment.payment_id, payment.transaction_amount, payment.status)
    registry.record_confirmed(amount_key(store_id, to_minor_units(payment.transaction_amount)),
                              payment.payment_id, payment.transaction_amount, payment.status)


async def process_payment_event(engine, gateway_factory, payment_id: str, store_id: Optional[str]) -> None:
    store = await run_in_threadpool(load_store, store_id or DEFAULT_STORE_ID)
    if store is None or not store.access_token:
        logger.warning("Notification for payment %s: store %s unknown or without credentials",
                       payment_id, store_id or DEFAULT_STORE_ID)
        return

    try:
        payment = await gateway_factory(store).get_payment(payment_id)
    except PaymentError as exc:
        logger.warning("Notification for payment %s: lookup failed: %s", payment_id, exc)
        return

    if not payment.is_approved:
        logger.info("Notification for payment %s: status %s, nothing to do", payment_id, payment.status)
        return

    record_confirmation(engine.registry, store.id, payment)
    if await run_in_threadpool(settle_order, payment.external_reference, payment.payment_id):
        logger.info("Order %s paid by notification", payment.external_reference)


@router.post("/notifications/payment-events")
async def payment_events(request: Request, background_tasks: BackgroundTasks,
                         store_id: Optional[str] = None,
                         x_store_id: Optional[str] = Header(None),
                         x_signature: Optional[str] = Header(None),
                         x_request_id: Optional[str] = Header(None),
                         engine=Depends(get_engine), gateway_factory=Depends(get_gateway_factory)):
    raw = await request.body()
    try:
        event = json.loads(raw) if raw else {}
    except ValueError:
        logger.warning("Notification with invalid JSON body ignored")
        return {"received": True}
    if not isinstance(event, dict):
        event = {}

    query = dict(request.query_params)
    payment_id = extract_payment_id(event, query)
    if not payment_id:
        logger.debug("Notification ignored: %s", event.get("type") or event.get("topic"))
        return {"received": True}

    if MP_WEBHOOK_SECRET:
        data_id = str((event.get("data") or {}).get("id") or query.get("data.id") or "")
        if not verify_signature(MP_WEBHOOK_SECRET, x_signature, x_request_id, data_id):
            logger.warning("Notification for payment %s dropped: bad signature", payment_id)
            return {"received": True}

    background_tasks.add_task(process_payment_event, engine, gateway_factory, payment_id, store_id or x_store_id)
    return {"received": True}
