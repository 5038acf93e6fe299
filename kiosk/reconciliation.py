"""Payment reconciliation for terminal (Point) and PIX charges.

A kiosk polls :meth:`ReconciliationEngine.check_payment_status` every couple
of seconds while the customer pays. The terminal, the webhooks and the
payments search are all eventually consistent and often disagree (the
terminal frequently drops ``external_reference``), so each poll walks the
signals in a fixed order and stops at the first that proves the charge:

1. confirmed payments pushed by webhooks (registry, no network)
2. the intent on the terminal (final state or linked payment id)
3. payments searched by external reference
4. approved payments of the same amount created in the last minutes

Anything else, including gateway failures, is reported as pending. The
client's poll loop owns the timeout; the engine never gives up on its own.
"""
import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from kiosk.config import (
    AMOUNT_EPSILON,
    DELETE_RETRY,
    FUZZY_SEARCH_LIMIT,
    FUZZY_WINDOW_MINUTES,
    RetryPolicy,
)
from kiosk.errors import AmbiguousMatch, IntentConflict, NotFound, PaymentError
from kiosk.gateway import FAILED_STATUSES, FINAL_INTENT_STATES, PAID_INTENT_STATES, IntentState, Payment
from kiosk.registry import PaymentIntentRegistry, amount_key, reference_key, to_minor_units

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class HandleKind(str, enum.Enum):
    INTENT = "intent"
    PAYMENT = "payment"


@dataclass(frozen=True)
class PaymentHandle:
    kind: HandleKind
    id: str

    @classmethod
    def infer(cls, payment_id: str) -> "PaymentHandle":
        # payment ids are numeric, terminal intent ids are UUIDs
        kind = HandleKind.PAYMENT if str(payment_id).isdigit() else HandleKind.INTENT
        return cls(kind, str(payment_id))


class AttemptState(str, enum.Enum):
    CREATED = "created"
    PENDING = "pending"
    APPROVED = "approved"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"


class Resolution(str, enum.Enum):
    REGISTRY_HIT = "registry_hit"
    TERMINAL_REPORTED = "terminal_reported"
    PAYMENT_REPORTED = "payment_reported"
    REFERENCE_MATCHED = "reference_matched"
    AMOUNT_MATCHED = "amount_matched"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELED = "canceled"


@dataclass
class ChargeAttempt:
    handle: PaymentHandle
    reference: str = ""
    expected_amount_minor: Optional[int] = None
    device_id: Optional[str] = None
    created_at_ms: int = 0
    state: AttemptState = AttemptState.CREATED
    resolution: Optional[Resolution] = None
    payment_id: Optional[str] = None

    @property
    def expected_amount(self) -> Optional[Decimal]:
        if self.expected_amount_minor is None:
            return None
        return Decimal(self.expected_amount_minor) / 100


@dataclass
class StatusResult:
    status: PaymentStatus
    attempt: ChargeAttempt

    @property
    def approved(self) -> bool:
        return self.status is PaymentStatus.APPROVED


def amount_candidates(payments, expected_amount, epsilon, reference: str = "",
                      not_before: Optional[datetime] = None) -> list:
    """Approved payments within ``epsilon`` of the expected amount, newest first.

    A payment that carries another order's reference, or that was created
    before ``not_before``, belongs to a different charge and is skipped.
    """
    expected = Decimal(str(expected_amount))
    tolerance = Decimal(str(epsilon))
    matches = [
        p for p in payments
        if p.is_approved and abs(p.transaction_amount - expected) <= tolerance
        and (not p.external_reference or p.external_reference == reference)
        and (not_before is None or p.created_at is None or p.created_at >= not_before)
    ]
    matches.sort(key=_created_key, reverse=True)
    return matches


def select_amount_match(payments, expected_amount, epsilon, reference: str = "",
                        not_before: Optional[datetime] = None) -> Optional[Payment]:
    """Single approved payment for the amount; raises ``AmbiguousMatch`` on several."""
    matches = amount_candidates(payments, expected_amount, epsilon, reference, not_before)
    if len(matches) > 1:
        raise AmbiguousMatch(matches)
    return matches[0] if matches else None


def _created_key(payment: Payment) -> float:
    return payment.created_at.timestamp() if payment.created_at else 0.0


class ReconciliationEngine:
    """Creates charges and decides, poll after poll, whether they were paid.

    ``gateway_factory`` maps a :class:`~kiosk.store_resolver.StoreConfig` to a
    gateway client for that tenant's credentials.
    """

    def __init__(self, registry: PaymentIntentRegistry, gateway_factory: Callable,
                 delete_retry: RetryPolicy = DELETE_RETRY,
                 fuzzy_window: timedelta = timedelta(minutes=FUZZY_WINDOW_MINUTES),
                 fuzzy_limit: int = FUZZY_SEARCH_LIMIT,
                 amount_epsilon=AMOUNT_EPSILON,
                 clock: Callable[[], int] = _now_ms):
        self.registry = registry
        self._gateway_factory = gateway_factory
        self._delete_retry = delete_retry
        self._fuzzy_window = fuzzy_window
        self._fuzzy_limit = fuzzy_limit
        self._epsilon = Decimal(str(amount_epsilon))
        self._clock = clock
        self._attempts = {}
        # payment id -> when an amount match claimed it
        self._claimed = {}
        self._background = set()

    # --- attempts -----------------------------------------------------------

    def attempt_for(self, handle: PaymentHandle, reference: str = "",
                    expected_amount_minor: Optional[int] = None, device_id: Optional[str] = None,
                    created_at_ms: Optional[int] = None) -> ChargeAttempt:
        """Return the in-flight attempt for ``handle``, registering it if unknown."""
        attempt = self._attempts.get(handle.id)
        if attempt is None:
            attempt = ChargeAttempt(
                handle=handle,
                reference=reference or "",
                expected_amount_minor=expected_amount_minor,
                device_id=device_id,
                created_at_ms=created_at_ms if created_at_ms is not None else self._clock(),
            )
            self._attempts[handle.id] = attempt
        return attempt

    def get_attempt(self, payment_id: str) -> Optional[ChargeAttempt]:
        return self._attempts.get(str(payment_id))

    def forget_expired(self, retention_ms: int) -> int:
        cutoff = self._clock() - retention_ms
        stale = [key for key, a in self._attempts.items() if a.created_at_ms < cutoff]
        for key in stale:
            del self._attempts[key]
        for payment_id in [pid for pid, at in self._claimed.items() if at < cutoff]:
            del self._claimed[payment_id]
        return len(stale)

    # --- create -------------------------------------------------------------

    async def create_card_payment(self, store, amount, reference: str,
                                  description: str = "Pedido") -> ChargeAttempt:
        """Queue a charge on the store's terminal and return without waiting for it.

        Leftover intents are removed first: a terminal still holding an
        abandoned intent rejects new ones. Gateway failures propagate.
        """
        store.require_device()
        gateway = self._gateway_factory(store)
        device_id = store.device_id

        await self._clear_leftovers(gateway, device_id)

        amount_minor = to_minor_units(amount)
        intent_id = await gateway.create_intent(
            device_id, amount_minor, reference,
            metadata={"print_on_terminal": True},
            description=description,
        )
        attempt = self.attempt_for(
            PaymentHandle(HandleKind.INTENT, intent_id),
            reference=reference,
            expected_amount_minor=amount_minor,
            device_id=device_id,
        )
        logger.info("Card charge %s for %s on %s (ref %r)", intent_id, amount, device_id, reference)
        return attempt

    async def create_pix_payment(self, store, amount, reference: str, payer: Optional[dict] = None,
                                 description: str = "Pedido"):
        store.require_token()
        gateway = self._gateway_factory(store)
        payment = await gateway.create_pix_payment(amount, reference, payer or {}, description=description)
        attempt = self.attempt_for(
            PaymentHandle(HandleKind.PAYMENT, payment.payment_id),
            reference=reference,
            expected_amount_minor=to_minor_units(amount),
        )
        return attempt, payment

    async def _clear_leftovers(self, gateway, device_id: str) -> None:
        try:
            leftovers = await gateway.list_intents(device_id)
        except PaymentError as exc:
            logger.warning("Could not list intents on %s before create: %s", device_id, exc)
            return
        for intent in leftovers:
            logger.info("Removing leftover intent %s (%s) from %s", intent.intent_id, intent.state.value, device_id)
            try:
                await self._delete_intent(gateway, device_id, intent.intent_id)
            except PaymentError as exc:
                logger.warning("Leftover intent %s not removed: %s", intent.intent_id, exc)

    # --- resolve ------------------------------------------------------------

    async def check_payment_status(self, store, attempt: ChargeAttempt) -> StatusResult:
        if attempt.state is AttemptState.APPROVED:
            return StatusResult(PaymentStatus.APPROVED, attempt)
        if attempt.state in (AttemptState.CANCELED, AttemptState.TIMED_OUT):
            return StatusResult(PaymentStatus.CANCELED, attempt)

        store.require_token()

        if self._check_registry(store, attempt):
            return self._approve(store, attempt)

        gateway = self._gateway_factory(store)
        if attempt.handle.kind is HandleKind.PAYMENT:
            status = await self._resolve_payment(gateway, attempt)
        else:
            status = await self._resolve_intent(gateway, attempt)

        if status is PaymentStatus.APPROVED:
            return self._approve(store, attempt)
        if status is PaymentStatus.CANCELED:
            attempt.state = AttemptState.CANCELED
            return StatusResult(PaymentStatus.CANCELED, attempt)

        attempt.state = AttemptState.PENDING
        return StatusResult(PaymentStatus.PENDING, attempt)

    def _check_registry(self, store, attempt: ChargeAttempt) -> bool:
        if attempt.reference:
            entry = self.registry.lookup(reference_key(store.id, attempt.reference))
            if entry:
                attempt.resolution = Resolution.REGISTRY_HIT
                attempt.payment_id = entry.payment_id
                return True

        if attempt.expected_amount_minor is not None:
            key = amount_key(store.id, attempt.expected_amount_minor)
            entry = self.registry.lookup(key)
            # an older confirmation of the same amount belongs to another charge
            if entry and entry.confirmed_at_ms >= attempt.created_at_ms:
                self.registry.discard(key)
                attempt.resolution = Resolution.REGISTRY_HIT
                attempt.payment_id = entry.payment_id
                return True
        return False

    async def _resolve_payment(self, gateway, attempt: ChargeAttempt) -> PaymentStatus:
        try:
            payment = await gateway.get_payment(attempt.handle.id)
        except PaymentError as exc:
            logger.warning("Status of payment %s unavailable, reporting pending: %s", attempt.handle.id, exc)
            return PaymentStatus.PENDING

        if payment.is_approved:
            attempt.resolution = Resolution.PAYMENT_REPORTED
            attempt.payment_id = payment.payment_id
            return PaymentStatus.APPROVED
        if payment.status in FAILED_STATUSES:
            return PaymentStatus.CANCELED
        return PaymentStatus.PENDING

    async def _resolve_intent(self, gateway, attempt: ChargeAttempt) -> PaymentStatus:
        intent = None
        try:
            intent = await gateway.get_intent(attempt.handle.id)
        except NotFound:
            # purged by the terminal, which says nothing about the charge itself
            logger.info("Intent %s no longer on the terminal", attempt.handle.id)
        except PaymentError as exc:
            logger.warning("Intent %s unavailable: %s", attempt.handle.id, exc)

        if intent is not None:
            if intent.state in PAID_INTENT_STATES or intent.linked_payment_id:
                attempt.resolution = Resolution.TERMINAL_REPORTED
                attempt.payment_id = intent.linked_payment_id
                return PaymentStatus.APPROVED
            if not attempt.reference and intent.external_reference:
                attempt.reference = intent.external_reference
            if attempt.expected_amount_minor is None and intent.amount_minor_units:
                attempt.expected_amount_minor = intent.amount_minor_units
            if not attempt.device_id:
                attempt.device_id = intent.device_id

        if attempt.reference and await self._match_by_reference(gateway, attempt):
            return PaymentStatus.APPROVED

        if attempt.expected_amount_minor is not None and await self._match_by_amount(gateway, attempt):
            return PaymentStatus.APPROVED

        if intent is not None and intent.state in (IntentState.CANCELED, IntentState.ERROR):
            return PaymentStatus.CANCELED
        return PaymentStatus.PENDING

    async def _match_by_reference(self, gateway, attempt: ChargeAttempt) -> bool:
        try:
            payments = await gateway.search_payments(external_reference=attempt.reference)
        except PaymentError as exc:
            logger.warning("Reference search for %r failed: %s", attempt.reference, exc)
            return False

        approved = sorted((p for p in payments if p.is_approved), key=_created_key, reverse=True)
        if not approved:
            return False
        attempt.resolution = Resolution.REFERENCE_MATCHED
        attempt.payment_id = approved[0].payment_id
        return True

    async def _match_by_amount(self, gateway, attempt: ChargeAttempt) -> bool:
        """Best-effort fallback for terminals that drop the reference.

        Only payments created after the attempt, carrying no other order's
        reference and not already claimed by another attempt are considered.
        Two charges of the same amount completed inside the window cannot be
        told apart; the newest payment wins and the ambiguity is logged.
        """
        now = datetime.now(timezone.utc)
        created = datetime.fromtimestamp(attempt.created_at_ms / 1000, timezone.utc)
        try:
            payments = await gateway.search_payments(
                begin=max(now - self._fuzzy_window, created), end=now, limit=self._fuzzy_limit
            )
        except PaymentError as exc:
            logger.warning("Amount search for %s failed: %s", attempt.handle.id, exc)
            return False

        unclaimed = [p for p in payments if p.payment_id not in self._claimed]
        try:
            match = select_amount_match(unclaimed, attempt.expected_amount, self._epsilon,
                                        reference=attempt.reference, not_before=created)
        except AmbiguousMatch as exc:
            match = exc.candidates[0]
            logger.warning(
                "Ambiguous amount match for %s (%s): candidates %s, picked %s",
                attempt.handle.id, attempt.expected_amount,
                [p.payment_id for p in exc.candidates], match.payment_id,
            )
        if match is None:
            return False
        self._claimed[match.payment_id] = self._clock()
        attempt.resolution = Resolution.AMOUNT_MATCHED
        attempt.payment_id = match.payment_id
        return True

    def _approve(self, store, attempt: ChargeAttempt) -> StatusResult:
        attempt.state = AttemptState.APPROVED
        logger.info("Charge %s approved via %s (payment %s)",
                    attempt.handle.id, attempt.resolution.value, attempt.payment_id)
        if attempt.handle.kind is HandleKind.INTENT:
            device_id = attempt.device_id or store.device_id
            if device_id:
                self._spawn(self._release_intent(store, device_id, attempt.handle.id))
        return StatusResult(PaymentStatus.APPROVED, attempt)

    async def _release_intent(self, store, device_id: str, intent_id: str) -> None:
        try:
            await self._delete_intent(self._gateway_factory(store), device_id, intent_id)
        except PaymentError as exc:
            logger.warning("Cleanup of approved intent %s failed: %s", intent_id, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending intent cleanups (shutdown, tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- cancel -------------------------------------------------------------

    async def _delete_intent(self, gateway, device_id: str, intent_id: str) -> bool:
        """Delete with the conflict rule: back off and retry, then give up.

        A 409 means the cardholder is mid-payment on the terminal. Returns
        False when the intent is still busy after the last attempt.
        """
        policy = self._delete_retry
        for attempt_no in range(1, policy.max_attempts + 1):
            try:
                await gateway.delete_intent(device_id, intent_id)
                return True
            except IntentConflict:
                if attempt_no >= policy.max_attempts:
                    logger.warning("Intent %s still processing after %d attempts, leaving it",
                                   intent_id, attempt_no)
                    return False
                logger.info("Intent %s busy, retrying delete in %.1fs", intent_id, policy.delay_seconds)
                await asyncio.sleep(policy.delay_seconds)
        return False

    async def cancel_payment(self, store, attempt: ChargeAttempt, timed_out: bool = False) -> bool:
        gateway = self._gateway_factory(store.require_token())

        if attempt.handle.kind is HandleKind.INTENT:
            device_id = attempt.device_id or store.require_device().device_id
            done = await self._delete_intent(gateway, device_id, attempt.handle.id)
        else:
            try:
                await gateway.cancel_payment(attempt.handle.id)
            except NotFound:
                pass
            done = True

        if done and attempt.state is not AttemptState.APPROVED:
            attempt.state = AttemptState.TIMED_OUT if timed_out else AttemptState.CANCELED
        logger.info("Cancel %s %s: %s", attempt.handle.kind.value, attempt.handle.id,
                    "done" if done else "terminal busy")
        return done

    async def clear_queue(self, store) -> int:
        """Delete every intent queued on the store's terminal. Returns how many went."""
        store.require_device()
        gateway = self._gateway_factory(store)
        intents = await gateway.list_intents(store.device_id)

        cleared = 0
        for intent in intents:
            try:
                if await self._delete_intent(gateway, store.device_id, intent.intent_id):
                    cleared += 1
            except PaymentError as exc:
                logger.error("Could not delete intent %s from %s: %s", intent.intent_id, store.device_id, exc)
        logger.info("Queue of %s cleared: %d/%d intents", store.device_id, cleared, len(intents))
        return cleared

    async def sweep_finished_intents(self, store) -> int:
        """Background variant of :meth:`clear_queue` that only touches final states."""
        gateway = self._gateway_factory(store)
        try:
            intents = await gateway.list_intents(store.device_id)
        except PaymentError as exc:
            logger.warning("Queue sweep of %s skipped: %s", store.device_id, exc)
            return 0

        removed = 0
        for intent in intents:
            if intent.state not in FINAL_INTENT_STATES:
                continue
            try:
                if await self._delete_intent(gateway, store.device_id, intent.intent_id):
                    removed += 1
            except PaymentError as exc:
                logger.error("Sweep could not delete intent %s: %s", intent.intent_id, exc)
        if removed:
            logger.info("Queue sweep removed %d finished intents from %s", removed, store.device_id)
        return removed
