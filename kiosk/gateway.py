"""Typed async wrapper around the Mercado Pago REST API.

Covers the Point Integration API (payment intents on a physical terminal)
and the payments API (PIX charges, lookups and searches). No business logic
lives here: HTTP statuses are mapped onto :mod:`kiosk.errors` and the JSON
payloads onto the small dataclasses below.
"""
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import httpx

from kiosk.config import MP_API_BASE_URL
from kiosk.errors import GatewayUnavailable, IntentConflict, NotFound

logger = logging.getLogger(__name__)

APPROVED_STATUSES = frozenset({"approved", "authorized"})
FAILED_STATUSES = frozenset({"rejected", "cancelled"})


class IntentState(str, enum.Enum):
    OPEN = "OPEN"
    ON_TERMINAL = "ON_TERMINAL"
    PROCESSING = "PROCESSING"
    FINISHED = "FINISHED"
    PROCESSED = "PROCESSED"
    CANCELED = "CANCELED"
    ERROR = "ERROR"


# states the terminal has left behind for good
FINAL_INTENT_STATES = frozenset({IntentState.FINISHED, IntentState.CANCELED, IntentState.ERROR})
PAID_INTENT_STATES = frozenset({IntentState.FINISHED, IntentState.PROCESSED})

_STATE_ALIASES = {"ABANDONED": IntentState.CANCELED}


def _parse_state(raw) -> IntentState:
    value = str(raw or "OPEN").upper()
    if value in _STATE_ALIASES:
        return _STATE_ALIASES[value]
    try:
        return IntentState(value)
    except ValueError:
        logger.warning("Unknown intent state %r, treating as OPEN", raw)
        return IntentState.OPEN


def _parse_datetime(raw) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


@dataclass
class PaymentIntent:
    intent_id: str
    amount_minor_units: int
    external_reference: str
    state: IntentState
    device_id: Optional[str] = None
    linked_payment_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "PaymentIntent":
        additional = data.get("additional_info") or {}
        payment = data.get("payment") or {}
        return cls(
            intent_id=str(data.get("id")),
            amount_minor_units=int(data.get("amount") or 0),
            external_reference=str(additional.get("external_reference") or data.get("external_reference") or ""),
            state=_parse_state(data.get("state")),
            device_id=data.get("device_id"),
            linked_payment_id=str(payment["id"]) if payment.get("id") else None,
        )


@dataclass
class Payment:
    payment_id: str
    status: str
    transaction_amount: Decimal
    external_reference: str = ""
    created_at: Optional[datetime] = None
    status_detail: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None

    @property
    def is_approved(self) -> bool:
        return self.status in APPROVED_STATUSES

    @classmethod
    def from_api(cls, data: dict) -> "Payment":
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        return cls(
            payment_id=str(data.get("id")),
            status=str(data.get("status") or "pending").lower(),
            transaction_amount=Decimal(str(data.get("transaction_amount") or 0)),
            external_reference=str(data.get("external_reference") or ""),
            created_at=_parse_datetime(data.get("date_created")),
            status_detail=data.get("status_detail"),
            qr_code=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
        )


@dataclass
class DeviceStatus:
    id: str
    operating_mode: Optional[str]


class MercadoPagoClient:
    """One client per store access token; the ``httpx.AsyncClient`` is shared."""

    def __init__(self, access_token: str, http: httpx.AsyncClient,
                 base_url: str = MP_API_BASE_URL, notification_url: Optional[str] = None):
        self._token = access_token
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._notification_url = notification_url

    async def _request(self, method: str, path: str, *, json=None, params=None,
                       idempotency_key: Optional[str] = None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        try:
            response = await self._http.request(
                method, f"{self._base_url}{path}", json=json, params=params, headers=headers
            )
        except httpx.HTTPError as exc:
            raise GatewayUnavailable(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise NotFound(f"{method} {path}: not found")
        if response.status_code == 409:
            raise IntentConflict(f"{method} {path}: conflict")
        if response.is_error:
            raise GatewayUnavailable(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response

    # --- Point terminal -----------------------------------------------------

    async def create_intent(self, device_id: str, amount_minor_units: int, reference: str,
                            metadata: Optional[dict] = None, description: str = "Pedido") -> str:
        additional_info = {"external_reference": reference}
        additional_info.update(metadata or {})
        body = {
            "amount": int(amount_minor_units),
            "description": description,
            "additional_info": additional_info,
        }
        if self._notification_url:
            body["notification_url"] = self._notification_url

        try:
            response = await self._request(
                "POST",
                f"/point/integration-api/devices/{device_id}/payment-intents",
                json=body,
                idempotency_key=f"card_{reference}_{int(time.time() * 1000)}",
            )
        except (NotFound, IntentConflict) as exc:
            raise GatewayUnavailable(f"terminal {device_id} rejected the intent: {exc}") from exc

        data = response.json()
        logger.info("Intent %s created on %s (state %s)", data.get("id"), device_id, data.get("state"))
        return str(data["id"])

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        response = await self._request("GET", f"/point/integration-api/payment-intents/{intent_id}")
        return PaymentIntent.from_api(response.json())

    async def delete_intent(self, device_id: str, intent_id: str) -> None:
        """Delete an intent from the terminal queue.

        A missing intent counts as deleted. ``IntentConflict`` is raised while
        the terminal is processing it; retrying is up to the caller.
        """
        try:
            await self._request("DELETE", f"/point/integration-api/devices/{device_id}/payment-intents/{intent_id}")
        except NotFound:
            logger.debug("Intent %s already gone", intent_id)

    async def list_intents(self, device_id: str) -> list:
        response = await self._request("GET", f"/point/integration-api/devices/{device_id}/payment-intents")
        data = response.json()
        if isinstance(data, dict):
            data = data.get("payment_intents") or data.get("results") or []
        return [PaymentIntent.from_api(item) for item in data]

    async def patch_device_mode(self, device_id: str, mode: str) -> None:
        try:
            await self._request("PATCH", f"/point/integration-api/devices/{device_id}",
                                json={"operating_mode": mode})
        except GatewayUnavailable as exc:
            # the API answers 400 when the device already runs in that mode
            if exc.status_code != 400:
                raise
            logger.info("Device %s already in %s mode", device_id, mode)

    async def get_device(self, device_id: str) -> DeviceStatus:
        response = await self._request("GET", f"/point/integration-api/devices/{device_id}")
        data = response.json()
        return DeviceStatus(id=str(data.get("id") or device_id), operating_mode=data.get("operating_mode"))

    # --- payments -----------------------------------------------------------

    async def create_pix_payment(self, amount, reference: str, payer: Optional[dict] = None,
                                 description: str = "Pedido",
                                 created_at_ms: Optional[int] = None) -> Payment:
        """Create a PIX charge; the result carries the QR payload.

        Pass the same ``created_at_ms`` when retrying so the gateway collapses
        the retry onto the first charge.
        """
        payer = payer or {}
        created_at_ms = created_at_ms or int(time.time() * 1000)
        body = {
            "transaction_amount": float(Decimal(str(amount)).quantize(Decimal("0.01"))),
            "description": description,
            "payment_method_id": "pix",
            "payer": {
                "email": payer.get("email") or "cliente@loja.com",
                "first_name": payer.get("name") or "Cliente",
            },
            "external_reference": reference,
        }
        if self._notification_url:
            body["notification_url"] = self._notification_url

        response = await self._request(
            "POST", "/v1/payments", json=body,
            idempotency_key=f"pix_{reference or 'noref'}_{created_at_ms}",
        )
        payment = Payment.from_api(response.json())
        logger.info("PIX payment %s created (%s)", payment.payment_id, payment.status)
        return payment

    async def get_payment(self, payment_id: str) -> Payment:
        response = await self._request("GET", f"/v1/payments/{payment_id}")
        return Payment.from_api(response.json())

    async def cancel_payment(self, payment_id: str) -> Payment:
        response = await self._request("PUT", f"/v1/payments/{payment_id}", json={"status": "cancelled"})
        return Payment.from_api(response.json())

    async def search_payments(self, *, external_reference: Optional[str] = None,
                              begin: Optional[datetime] = None, end: Optional[datetime] = None,
                              limit: int = 20) -> list:
        """Search payments, most recently created first."""
        params = {"sort": "date_created", "criteria": "desc", "limit": limit}
        if external_reference:
            params["external_reference"] = external_reference
        if begin is not None:
            params["range"] = "date_created"
            params["begin_date"] = begin.isoformat(timespec="milliseconds")
            params["end_date"] = (end or datetime.now(begin.tzinfo)).isoformat(timespec="milliseconds")

        response = await self._request("GET", "/v1/payments/search", params=params)
        results = [Payment.from_api(item) for item in response.json().get("results") or []]
        results.sort(key=_created_sort_key, reverse=True)
        return results


def _created_sort_key(payment: Payment) -> float:
    return payment.created_at.timestamp() if payment.created_at else 0.0
