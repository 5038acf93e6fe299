"""In-memory stand-in for :class:`~kiosk.gateway.MercadoPagoClient`.

Only used when ``PAYMENTS_MOCK_MODE=1``: lets the kiosk front end run a full
checkout without a terminal. Every charge is approved after a few polls.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from kiosk.errors import IntentConflict, NotFound
from kiosk.gateway import DeviceStatus, IntentState, Payment, PaymentIntent

logger = logging.getLogger(__name__)


class MockGateway:

    def __init__(self, approve_after_polls: int = 3):
        self.approve_after_polls = approve_after_polls
        self.intents = {}
        self.payments = {}
        self.device_modes = {}
        self._polls = {}
        self._next_payment_id = 1000

    def _new_payment(self, amount, reference, status="pending", **extra) -> Payment:
        self._next_payment_id += 1
        payment = Payment(
            payment_id=str(self._next_payment_id),
            status=status,
            transaction_amount=Decimal(str(amount)),
            external_reference=reference or "",
            created_at=datetime.now(timezone.utc),
            **extra,
        )
        self.payments[payment.payment_id] = payment
        return payment

    def _tick(self, key) -> bool:
        self._polls[key] = self._polls.get(key, 0) + 1
        return self._polls[key] >= self.approve_after_polls

    async def create_intent(self, device_id, amount_minor_units, reference, metadata=None, description="Pedido"):
        if any(i.state not in (IntentState.FINISHED, IntentState.CANCELED) for i in self.intents.values()
               if i.device_id == device_id):
            raise IntentConflict(f"device {device_id} busy")
        intent = PaymentIntent(
            intent_id=str(uuid.uuid4()),
            amount_minor_units=int(amount_minor_units),
            external_reference=reference or "",
            state=IntentState.OPEN,
            device_id=device_id,
        )
        self.intents[intent.intent_id] = intent
        logger.info("[mock] intent %s for %s", intent.intent_id, amount_minor_units)
        return intent.intent_id

    async def get_intent(self, intent_id):
        intent = self.intents.get(intent_id)
        if intent is None:
            raise NotFound(intent_id)
        if intent.state is IntentState.OPEN and self._tick(intent_id):
            payment = self._new_payment(Decimal(intent.amount_minor_units) / 100,
                                        intent.external_reference, status="approved")
            intent.state = IntentState.FINISHED
            intent.linked_payment_id = payment.payment_id
        return intent

    async def delete_intent(self, device_id, intent_id):
        self.intents.pop(intent_id, None)

    async def list_intents(self, device_id):
        return [i for i in self.intents.values() if i.device_id == device_id]

    async def create_pix_payment(self, amount, reference, payer=None, description="Pedido", created_at_ms=None):
        return self._new_payment(amount, reference, qr_code=f"00020126-mock-{reference}", qr_code_base64="")

    async def get_payment(self, payment_id):
        payment = self.payments.get(str(payment_id))
        if payment is None:
            raise NotFound(payment_id)
        if payment.status == "pending" and self._tick(payment.payment_id):
            payment.status = "approved"
        return payment

    async def cancel_payment(self, payment_id):
        payment = await self.get_payment(payment_id)
        payment.status = "cancelled"
        return payment

    async def search_payments(self, *, external_reference=None, begin=None, end=None, limit=20):
        found = [
            p for p in self.payments.values()
            if (not external_reference or p.external_reference == external_reference)
            and (begin is None or p.created_at >= begin)
        ]
        found.sort(key=lambda p: p.created_at, reverse=True)
        return found[:limit]

    async def patch_device_mode(self, device_id, mode):
        self.device_modes[device_id] = mode

    async def get_device(self, device_id):
        return DeviceStatus(id=device_id, operating_mode=self.device_modes.get(device_id, "PDV"))
