import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from kiosk import order_store
from kiosk.auth import verify_operator
from kiosk.errors import CredentialsMissing, PaymentError
from kiosk.reconciliation import HandleKind, PaymentHandle
from kiosk.registry import to_minor_units
from kiosk.store_resolver import StoreConfig, resolve_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment")


def get_engine(request: Request):
    return request.app.state.engine


def get_gateway_factory(request: Request):
    return request.app.state.gateway_factory


class PixRequest(BaseModel):
    amount: Optional[Decimal] = None
    description: str = "Pedido"
    orderId: Optional[str] = None
    email: Optional[str] = None
    payerName: Optional[str] = None


class CardRequest(BaseModel):
    amount: Optional[Decimal] = None
    description: str = "Pedido"
    orderId: Optional[str] = None


def _error(exc: Exception, action: str) -> JSONResponse:
    logger.error("%s failed: %s", action, exc)
    return JSONResponse(status_code=500, content={"error": str(exc) or action})


def _require_amount(amount):
    if amount is None:
        raise HTTPException(status_code=400, detail="Field amount is required")


def _require_device(store: StoreConfig):
    if not store.device_id:
        raise HTTPException(status_code=400, detail="No Point device configured for this store")


def _attempt_for(engine, store: StoreConfig, payment_id: str):
    """In-flight attempt for the id, rebuilt from the paying order after a restart."""
    attempt = engine.get_attempt(payment_id)
    if attempt is not None:
        return attempt

    order = order_store.find_order_by_payment(payment_id)
    if order is None:
        return engine.attempt_for(PaymentHandle.infer(payment_id), device_id=store.device_id)

    kind = HandleKind(order["paymentKind"]) if order["paymentKind"] else PaymentHandle.infer(payment_id).kind
    return engine.attempt_for(
        PaymentHandle(kind, str(payment_id)),
        reference=order["id"],
        expected_amount_minor=to_minor_units(order["total"]),
        device_id=store.device_id,
        created_at_ms=int(datetime.fromisoformat(order["timestamp"]).timestamp() * 1000),
    )


def settle_order(reference: str, payment_id: str, handle_id: Optional[str] = None) -> bool:
    """Mark the order behind an approved charge as paid; safe to call repeatedly."""
    order = order_store.get_order(reference) if reference else None
    if order is None and handle_id:
        order = order_store.find_order_by_payment(handle_id)
    if order is None:
        return False
    try:
        return order_store.mark_paid(order["id"], payment_id or handle_id)
    except SQLAlchemyError as exc:
        # the next approved poll or webhook retries the transition
        logger.error("Could not mark order %s paid: %s", order["id"], exc)
        return False


@router.post("/create-pix")
async def create_pix(request: PixRequest, store=Depends(resolve_store), engine=Depends(get_engine)):
    _require_amount(request.amount)

    try:
        attempt, payment = await engine.create_pix_payment(
            store, request.amount, request.orderId or "",
            payer={"email": request.email, "name": request.payerName},
            description=request.description,
        )
    except PaymentError as exc:
        return _error(exc, "Create PIX")

    if request.orderId:
        await run_in_threadpool(order_store.attach_payment, request.orderId, payment.payment_id,
                                HandleKind.PAYMENT.value)

    return {
        "paymentId": payment.payment_id,
        "status": payment.status,
        "qrCodeBase64": payment.qr_code_base64,
        "qrCodeCopyPaste": payment.qr_code,
        "type": "pix",
    }


@router.post("/create")
async def create_card(request: CardRequest, store=Depends(resolve_store), engine=Depends(get_engine)):
    _require_amount(request.amount)
    try:
        store.require_token()
    except CredentialsMissing as exc:
        return _error(exc, "Create card payment")
    _require_device(store)

    try:
        attempt = await engine.create_card_payment(
            store, request.amount, request.orderId or "", description=request.description
        )
    except PaymentError as exc:
        return _error(exc, "Create card payment")

    if request.orderId:
        await run_in_threadpool(order_store.attach_payment, request.orderId, attempt.handle.id,
                                HandleKind.INTENT.value)

    return {"intentId": attempt.handle.id, "status": "pending", "type": "card", "device_id": store.device_id}


@router.get("/status/{payment_id}")
async def payment_status(payment_id: str, store=Depends(resolve_store), engine=Depends(get_engine)):
    attempt = await run_in_threadpool(_attempt_for, engine, store, payment_id)
    try:
        result = await engine.check_payment_status(store, attempt)
    except CredentialsMissing as exc:
        return _error(exc, "Payment status")

    if result.approved:
        await run_in_threadpool(settle_order, attempt.reference, attempt.payment_id, attempt.handle.id)
    return {"status": result.status.value}


@router.delete("/cancel/{payment_id}")
async def cancel(payment_id: str, reason: Optional[str] = None,
                 store=Depends(resolve_store), engine=Depends(get_engine)):
    attempt = await run_in_threadpool(_attempt_for, engine, store, payment_id)
    try:
        done = await engine.cancel_payment(store, attempt, timed_out=(reason == "timeout"))
    except PaymentError as exc:
        return _error(exc, "Cancel payment")

    if not done:
        return {"success": True, "message": "Terminal still busy, the charge is left for the queue sweep"}
    return {"success": True, "message": "Payment canceled"}


@router.post("/clear-queue")
async def clear_queue(store=Depends(resolve_store), engine=Depends(get_engine)):
    _require_device(store)
    try:
        cleared = await engine.clear_queue(store)
    except PaymentError as exc:
        return _error(exc, "Clear queue")
    return {"success": True, "cleared": cleared}


@router.post("/point/configure")
async def configure_point(store=Depends(resolve_store), gateway_factory=Depends(get_gateway_factory),
                          auth=Depends(verify_operator)):
    _require_device(store)
    try:
        await gateway_factory(store.require_token()).patch_device_mode(store.device_id, "PDV")
    except PaymentError as exc:
        return _error(exc, "Configure Point")
    return {"device_id": store.device_id, "operating_mode": "PDV", "status": "configured"}


@router.get("/point/status")
async def point_status(store=Depends(resolve_store), gateway_factory=Depends(get_gateway_factory)):
    _require_device(store)
    try:
        device = await gateway_factory(store.require_token()).get_device(store.device_id)
    except PaymentError as exc:
        return _error(exc, "Point status")
    return {"id": device.id, "operating_mode": device.operating_mode, "status": "online"}
