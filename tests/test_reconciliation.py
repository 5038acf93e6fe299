import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from kiosk.config import RetryPolicy
from kiosk.errors import AmbiguousMatch, CredentialsMissing, GatewayUnavailable, IntentConflict, NotFound
from kiosk.gateway import IntentState, Payment, PaymentIntent
from kiosk.reconciliation import (
    AttemptState,
    HandleKind,
    PaymentHandle,
    PaymentStatus,
    ReconciliationEngine,
    Resolution,
    amount_candidates,
    select_amount_match,
)
from kiosk.registry import PaymentIntentRegistry, amount_key, reference_key
from kiosk.store_resolver import StoreConfig


def intent(state, intent_id="intent-1", amount=2550, reference="order_1", payment_id=None):
    return PaymentIntent(
        intent_id=intent_id,
        amount_minor_units=amount,
        external_reference=reference,
        state=state,
        device_id="DEVICE-1",
        linked_payment_id=payment_id,
    )


def started(minutes_ago):
    return int((time.time() - minutes_ago * 60) * 1000)


def payment(payment_id, amount, status="approved", minutes_ago=1, reference=""):
    return Payment(
        payment_id=payment_id,
        status=status,
        transaction_amount=Decimal(str(amount)),
        external_reference=reference,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


@pytest.mark.asyncio
async def test_terminal_finishes_on_third_poll(engine_under_test, gateway, store):
    gateway.create_intent.return_value = "intent-1"
    gateway.get_intent.side_effect = [
        intent(IntentState.OPEN),
        intent(IntentState.OPEN),
        intent(IntentState.FINISHED),
    ]

    attempt = await engine_under_test.create_card_payment(store, Decimal("25.50"), "order_1")

    gateway.create_intent.assert_awaited_once_with(
        "DEVICE-1", 2550, "order_1", metadata={"print_on_terminal": True}, description="Pedido"
    )

    first = await engine_under_test.check_payment_status(store, attempt)
    second = await engine_under_test.check_payment_status(store, attempt)
    assert first.status is PaymentStatus.PENDING
    assert second.status is PaymentStatus.PENDING
    gateway.delete_intent.assert_not_awaited()

    third = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert third.status is PaymentStatus.APPROVED
    assert attempt.resolution is Resolution.TERMINAL_REPORTED
    gateway.delete_intent.assert_awaited_once_with("DEVICE-1", "intent-1")


@pytest.mark.asyncio
async def test_webhook_confirmation_answers_first_poll_without_gateway(gateway, store):
    registry = PaymentIntentRegistry(clock=lambda: 2_000)
    engine = ReconciliationEngine(registry, lambda s: gateway, delete_retry=RetryPolicy(2, 0), clock=lambda: 1_000)
    gateway.create_intent.return_value = "intent-1"
    attempt = await engine.create_card_payment(store, Decimal("25.00"), "")

    registry.record_confirmed(amount_key("loja-1", 2500), "pay-77", Decimal("25.00"), "approved")

    result = await engine.check_payment_status(store, attempt)
    await engine.drain()

    assert result.status is PaymentStatus.APPROVED
    assert attempt.resolution is Resolution.REGISTRY_HIT
    assert attempt.payment_id == "pay-77"
    gateway.get_intent.assert_not_awaited()
    gateway.search_payments.assert_not_awaited()
    gateway.delete_intent.assert_awaited_once_with("DEVICE-1", "intent-1")


@pytest.mark.asyncio
async def test_older_amount_confirmation_is_not_reused(gateway, store):
    registry = PaymentIntentRegistry(clock=lambda: 500)
    engine = ReconciliationEngine(registry, lambda s: gateway, clock=lambda: 1_000)
    registry.record_confirmed(amount_key("loja-1", 2500), "pay-old", Decimal("25.00"), "approved")
    gateway.get_intent.return_value = intent(IntentState.OPEN, amount=2500, reference="")

    attempt = engine.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                 expected_amount_minor=2500, device_id="DEVICE-1")
    result = await engine.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_reference_key_beats_amount_search(engine_under_test, registry, gateway, store):
    registry.record_confirmed(reference_key("loja-1", "order_9"), "pay-9", Decimal("10.00"), "approved")
    gateway.search_payments.return_value = [payment("pay-other", "10.00")]

    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-9"),
                                            reference="order_9", expected_amount_minor=1000,
                                            device_id="DEVICE-1")
    result = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert result.approved
    assert attempt.resolution is Resolution.REGISTRY_HIT
    assert attempt.payment_id == "pay-9"
    gateway.search_payments.assert_not_awaited()


@pytest.mark.asyncio
async def test_linked_payment_on_intent_means_approved(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.PROCESSING, payment_id="123456")
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1")

    result = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert result.approved
    assert attempt.payment_id == "123456"


@pytest.mark.asyncio
async def test_reference_search_prefers_most_recent(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.OPEN)
    gateway.search_payments.return_value = [
        payment("old", "25.50", minutes_ago=8, reference="order_1"),
        payment("rejected", "25.50", status="rejected", minutes_ago=1, reference="order_1"),
        payment("new", "25.50", minutes_ago=3, reference="order_1"),
    ]
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                            reference="order_1", expected_amount_minor=2550,
                                            device_id="DEVICE-1")

    result = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert result.approved
    assert attempt.resolution is Resolution.REFERENCE_MATCHED
    assert attempt.payment_id == "new"
    gateway.search_payments.assert_awaited_once_with(external_reference="order_1")


@pytest.mark.asyncio
async def test_amount_search_when_terminal_drops_reference(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.OPEN, reference="", amount=1000)
    gateway.search_payments.return_value = [
        payment("too-much", "10.02"),
        payment("exact", "10.00", minutes_ago=2),
    ]
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1",
                                            created_at_ms=started(20))

    result = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert result.approved
    assert attempt.resolution is Resolution.AMOUNT_MATCHED
    assert attempt.payment_id == "exact"
    assert attempt.expected_amount_minor == 1000
    kwargs = gateway.search_payments.await_args.kwargs
    assert kwargs["limit"] == 20
    assert kwargs["end"] - kwargs["begin"] == timedelta(minutes=15)


@pytest.mark.asyncio
async def test_ambiguous_amount_match_picks_newest(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.OPEN, reference="", amount=1000)
    gateway.search_payments.return_value = [
        payment("older", "10.00", minutes_ago=6),
        payment("newer", "10.00", minutes_ago=2),
    ]
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1",
                                            created_at_ms=started(20))

    result = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert result.approved
    assert attempt.payment_id == "newer"


def test_amount_match_tolerates_rounding():
    payments = [payment("a", "10.00", minutes_ago=3), payment("b", "10.005", minutes_ago=1)]
    assert [p.payment_id for p in amount_candidates(payments, "10.00", "0.01")] == ["b", "a"]

    payments = [payment("a", "10.00"), payment("c", "10.02")]
    assert [p.payment_id for p in amount_candidates(payments, "10.00", "0.01")] == ["a"]


def test_amount_match_ignores_unpaid_and_reports_ambiguity():
    assert select_amount_match([payment("p", "10.00", status="pending")], "10.00", "0.01") is None

    with pytest.raises(AmbiguousMatch) as exc:
        select_amount_match([payment("a", "10.00", minutes_ago=4), payment("b", "10.00")], "10.00", "0.01")
    assert [p.payment_id for p in exc.value.candidates] == ["b", "a"]


@pytest.mark.asyncio
async def test_gateway_failures_report_pending(engine_under_test, gateway, store):
    gateway.get_intent.side_effect = GatewayUnavailable("boom", status_code=502)
    gateway.search_payments.side_effect = GatewayUnavailable("boom", status_code=503)
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                            reference="order_1", expected_amount_minor=2550)

    result = await engine_under_test.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.PENDING
    assert attempt.state is AttemptState.PENDING


@pytest.mark.asyncio
async def test_purged_intent_is_pending_not_canceled(engine_under_test, gateway, store):
    gateway.get_intent.side_effect = NotFound("gone")
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                            reference="order_1", expected_amount_minor=2550)

    result = await engine_under_test.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_canceled_on_terminal_without_payment(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.CANCELED)
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                            reference="order_1", expected_amount_minor=2550)

    result = await engine_under_test.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.CANCELED


@pytest.mark.asyncio
async def test_approved_attempt_short_circuits_later_polls(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.FINISHED)
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1")

    await engine_under_test.check_payment_status(store, attempt)
    again = await engine_under_test.check_payment_status(store, attempt)
    await engine_under_test.drain()

    assert again.approved
    assert gateway.get_intent.await_count == 1


@pytest.mark.asyncio
async def test_pix_payment_status(engine_under_test, gateway):
    pix_store = StoreConfig(id="pix-only", name="PIX", access_token="APP_USR-pix", device_id=None)
    gateway.get_payment.side_effect = [payment("987", "30.00", status="pending"),
                                       payment("987", "30.00", status="approved")]
    attempt = engine_under_test.attempt_for(PaymentHandle.infer("987"), reference="order_5",
                                            expected_amount_minor=3000)

    assert (await engine_under_test.check_payment_status(pix_store, attempt)).status is PaymentStatus.PENDING
    assert (await engine_under_test.check_payment_status(pix_store, attempt)).approved
    assert attempt.resolution is Resolution.PAYMENT_REPORTED
    gateway.get_intent.assert_not_awaited()
    gateway.delete_intent.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_credentials_surface(engine_under_test):
    store = StoreConfig(id="no-creds", name="Sem credenciais", access_token=None, device_id=None)
    attempt = engine_under_test.attempt_for(PaymentHandle.infer("123"))

    with pytest.raises(CredentialsMissing):
        await engine_under_test.check_payment_status(store, attempt)
    with pytest.raises(CredentialsMissing):
        await engine_under_test.create_card_payment(store, Decimal("10"), "order_1")


@pytest.mark.asyncio
async def test_create_removes_leftovers_then_escalates_failure(engine_under_test, gateway, store):
    gateway.list_intents.return_value = [intent(IntentState.OPEN, intent_id="stale")]
    gateway.create_intent.side_effect = GatewayUnavailable("terminal offline", status_code=500)

    with pytest.raises(GatewayUnavailable):
        await engine_under_test.create_card_payment(store, Decimal("12.00"), "order_2")

    gateway.delete_intent.assert_awaited_once_with("DEVICE-1", "stale")


@pytest.mark.asyncio
async def test_cancel_retries_once_after_conflict(engine_under_test, gateway, store):
    gateway.delete_intent.side_effect = [IntentConflict("processing"), None]
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1")

    assert await engine_under_test.cancel_payment(store, attempt) is True
    assert gateway.delete_intent.await_count == 2
    assert attempt.state is AttemptState.CANCELED

    result = await engine_under_test.check_payment_status(store, attempt)
    assert result.status is PaymentStatus.CANCELED


@pytest.mark.asyncio
async def test_cancel_gives_up_after_second_conflict(engine_under_test, gateway, store):
    gateway.delete_intent.side_effect = IntentConflict("processing")
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1")

    assert await engine_under_test.cancel_payment(store, attempt, timed_out=True) is False
    assert gateway.delete_intent.await_count == 2
    assert attempt.state is AttemptState.CREATED


@pytest.mark.asyncio
async def test_cancel_on_timeout(engine_under_test, gateway, store):
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), device_id="DEVICE-1")

    assert await engine_under_test.cancel_payment(store, attempt, timed_out=True)
    assert attempt.state is AttemptState.TIMED_OUT


@pytest.mark.asyncio
async def test_clear_queue_survives_single_failure(engine_under_test, gateway, store):
    gateway.list_intents.return_value = [
        intent(IntentState.OPEN, intent_id="a"),
        intent(IntentState.OPEN, intent_id="b"),
        intent(IntentState.ERROR, intent_id="c"),
    ]
    gateway.delete_intent.side_effect = [None, GatewayUnavailable("boom"), None]

    assert await engine_under_test.clear_queue(store) == 2
    assert gateway.delete_intent.await_count == 3


@pytest.mark.asyncio
async def test_sweep_only_removes_final_intents(engine_under_test, gateway, store):
    gateway.list_intents.return_value = [
        intent(IntentState.OPEN, intent_id="open"),
        intent(IntentState.CANCELED, intent_id="canceled"),
    ]

    assert await engine_under_test.sweep_finished_intents(store) == 1
    gateway.delete_intent.assert_awaited_once_with("DEVICE-1", "canceled")


@pytest.mark.asyncio
async def test_sweep_skips_store_when_listing_fails(engine_under_test, gateway, store):
    gateway.list_intents.side_effect = GatewayUnavailable("down")

    assert await engine_under_test.sweep_finished_intents(store) == 0
    gateway.delete_intent.assert_not_awaited()


def test_forget_expired_attempts(registry, gateway):
    now = {"ms": 0}
    engine = ReconciliationEngine(registry, lambda s: gateway, clock=lambda: now["ms"])
    engine.attempt_for(PaymentHandle.infer("111"))
    now["ms"] = 10_000
    engine.attempt_for(PaymentHandle.infer("222"))

    assert engine.forget_expired(5_000) == 1
    assert engine.get_attempt("111") is None
    assert engine.get_attempt("222") is not None


def test_amount_match_skips_other_orders_and_older_payments():
    payments = [
        payment("other-order", "25.50", minutes_ago=1, reference="order_0"),
        payment("same-order", "25.50", minutes_ago=2, reference="order_1"),
        payment("before-charge", "25.50", minutes_ago=9),
    ]
    not_before = datetime.now(timezone.utc) - timedelta(minutes=5)

    found = amount_candidates(payments, "25.50", "0.01", reference="order_1", not_before=not_before)

    assert [p.payment_id for p in found] == ["same-order"]


@pytest.mark.asyncio
async def test_payment_for_another_order_does_not_approve(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.OPEN, reference="order_1")
    gateway.search_payments.side_effect = [
        [],
        [payment("555", "25.50", minutes_ago=5, reference="order_0")],
    ]
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                            reference="order_1", expected_amount_minor=2550,
                                            device_id="DEVICE-1", created_at_ms=started(10))

    result = await engine_under_test.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.PENDING
    assert attempt.payment_id is None


@pytest.mark.asyncio
async def test_earlier_sale_of_same_amount_does_not_approve_new_charge(engine_under_test, gateway, store):
    gateway.get_intent.return_value = intent(IntentState.OPEN, reference="")
    gateway.search_payments.return_value = [payment("earlier-sale", "25.50", minutes_ago=5)]
    attempt = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"),
                                            expected_amount_minor=2550, device_id="DEVICE-1",
                                            created_at_ms=started(1))

    result = await engine_under_test.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.PENDING
    begin = gateway.search_payments.await_args.kwargs["begin"]
    assert begin >= datetime.fromtimestamp(attempt.created_at_ms / 1000, timezone.utc)


@pytest.mark.asyncio
async def test_one_payment_approves_only_one_same_amount_charge(engine_under_test, gateway, store):
    gateway.get_intent.side_effect = [
        intent(IntentState.OPEN, intent_id="first", reference=""),
        intent(IntentState.OPEN, intent_id="second", reference=""),
    ]
    gateway.search_payments.return_value = [payment("pay-1", "25.50", minutes_ago=1)]
    first = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "first"),
                                          expected_amount_minor=2550, device_id="DEVICE-1",
                                          created_at_ms=started(10))
    second = engine_under_test.attempt_for(PaymentHandle(HandleKind.INTENT, "second"),
                                           expected_amount_minor=2550, device_id="DEVICE-1",
                                           created_at_ms=started(10))

    assert (await engine_under_test.check_payment_status(store, first)).approved
    assert (await engine_under_test.check_payment_status(store, second)).status is PaymentStatus.PENDING
    await engine_under_test.drain()

    assert first.payment_id == "pay-1"
    assert second.payment_id is None


@pytest.mark.asyncio
async def test_confirmation_for_another_store_is_not_used(gateway, store):
    registry = PaymentIntentRegistry(clock=lambda: 2_000)
    engine = ReconciliationEngine(registry, lambda s: gateway, delete_retry=RetryPolicy(2, 0), clock=lambda: 1_000)
    registry.record_confirmed(amount_key("loja-b", 2550), "pay-store-b", Decimal("25.50"), "approved")
    registry.record_confirmed(reference_key("loja-b", "order_1"), "pay-store-b", Decimal("25.50"), "approved")
    gateway.get_intent.return_value = intent(IntentState.OPEN)
    attempt = engine.attempt_for(PaymentHandle(HandleKind.INTENT, "intent-1"), reference="order_1",
                                 expected_amount_minor=2550, device_id="DEVICE-1")

    result = await engine.check_payment_status(store, attempt)

    assert result.status is PaymentStatus.PENDING
    assert attempt.resolution is None
    gateway.get_intent.assert_awaited_once_with("intent-1")
