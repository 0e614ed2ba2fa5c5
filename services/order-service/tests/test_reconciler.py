from __future__ import annotations

import json

import pytest

from order_service.config import Settings
from order_service.errors import (
    AmountMismatch,
    InvalidTransition,
    InvalidWebhook,
    PaymentAlreadyInProgress,
    TransitionConflict,
    ValidationError,
)
from order_service.ledger import CANCELLED, PENDING, PREPARING, READY
from order_service.payment_provider import MockPaymentProvider, PaymentStatus, map_provider_status
from order_service.pricing import OrderLineRequest
from order_service.reconciler import PaymentReconciler, ReconcileOutcome

TWO_TACOS = [OrderLineRequest("taco", 2)]


@pytest.fixture()
def order(ledger, pricing, customer):
    return ledger.create_order(customer, "pickup", pricing.price_order(TWO_TACOS, "pickup"))


def webhook(event_type, intent_id, order_number=""):
    return json.dumps(
        {
            "type": event_type,
            "data": {"object": {"id": intent_id, "metadata": {"order_number": order_number}}},
        }
    ).encode()


def test_intent_amount_is_recomputed_and_stamped(reconciler, ledger, provider, customer, order):
    result = reconciler.create_payment_intent(
        TWO_TACOS, "pickup", customer, order.order_number, client_amount_cents=1
    )

    assert result.amount_cents == 653
    assert result.publishable_key == MockPaymentProvider.publishable_key
    assert result.client_secret
    intent = provider.get_intent(result.intent_id)
    assert intent.amount == 653
    assert intent.metadata["order_number"] == order.order_number
    assert ledger.get_order(order.id).payment_reference == result.intent_id


def test_successful_payment_advances_once(reconciler, ledger, provider, customer, order):
    result = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_succeeded(result.intent_id)

    assert reconciler.confirm_payment(result.intent_id) is PaymentStatus.SUCCEEDED
    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.ADVANCED
    stored = ledger.get_order(order.id)
    assert stored.status == PREPARING
    assert stored.payment_status == "succeeded"

    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.ALREADY_APPLIED
    assert ledger.get_order(order.id).status == PREPARING
    changes = [event for event in ledger.list_events() if event.event_type == "status_changed"]
    assert len(changes) == 1


def test_webhook_drives_reconcile(reconciler, ledger, provider, customer, order):
    result = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_succeeded(result.intent_id)

    payload = webhook("payment_intent.succeeded", result.intent_id, order.order_number)
    assert reconciler.handle_webhook(payload, None) is ReconcileOutcome.ADVANCED
    assert reconciler.handle_webhook(payload, None) is ReconcileOutcome.ALREADY_APPLIED
    assert reconciler.handle_webhook(webhook("charge.refunded", result.intent_id), None) is ReconcileOutcome.IGNORED
    with pytest.raises(InvalidWebhook):
        reconciler.handle_webhook(b"not json", None)


def test_late_payment_does_not_revive_cancelled_order(reconciler, ledger, provider, repo, customer, order):
    result = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    ledger.cancel_order(order.id, "customer")
    provider.mark_succeeded(result.intent_id)

    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.ORDER_TERMINAL
    assert ledger.get_order(order.id).status == CANCELLED
    alerts = repo.list_alerts()
    assert [alert.kind for alert in alerts] == ["order_terminal"]
    assert alerts[0].intent_id == result.intent_id


def test_payment_without_order_raises_alert(reconciler, provider, repo, customer):
    result = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, "ORD-20261017-9999")
    provider.mark_succeeded(result.intent_id)

    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.ORDER_MISSING
    alerts = repo.list_alerts()
    assert len(alerts) == 1
    assert alerts[0].kind == "order_missing"
    assert alerts[0].order_number == "ORD-20261017-9999"


def test_failed_payment_leaves_order_pending(reconciler, ledger, provider, customer, order):
    result = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_failed(result.intent_id)

    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.PAYMENT_FAILED
    stored = ledger.get_order(order.id)
    assert stored.status == PENDING
    assert stored.payment_status == "requires_action"
    assert len(ledger.list_orders()) == 1


def test_kitchen_cannot_complete_unpaid_order(ledger, order):
    with pytest.raises(InvalidTransition):
        ledger.transition_status(order.id, "completed", "kitchen")


def test_changed_prices_block_payment(reconciler, repo, customer, order, set_menu_item):
    set_menu_item("taco", price_cents=325)
    with pytest.raises(AmountMismatch):
        reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    assert [alert.kind for alert in repo.list_alerts()] == ["amount_mismatch"]


def test_cart_that_differs_from_order_is_rejected(reconciler, customer, order):
    with pytest.raises(AmountMismatch):
        reconciler.create_payment_intent([OrderLineRequest("taco", 3)], "pickup", customer, order.order_number)


def test_no_intent_for_order_past_pending(reconciler, ledger, customer, order):
    ledger.transition_status(order.id, PREPARING, "kitchen")
    with pytest.raises(InvalidTransition):
        reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)


def test_open_intent_is_reused(reconciler, customer, order):
    first = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    second = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    assert second.intent_id == first.intent_id


def test_intent_is_voided_when_order_cannot_be_stamped(ledger, pricing, repo, customer, order, monkeypatch):
    provider = MockPaymentProvider()
    created = []
    original_create = provider.create_intent

    def create_intent(*args, **kwargs):
        intent = original_create(*args, **kwargs)
        created.append(intent.id)
        return intent

    monkeypatch.setattr(provider, "create_intent", create_intent)
    monkeypatch.setattr(ledger, "attach_payment", lambda *args, **kwargs: False)
    reconciler = PaymentReconciler(ledger, pricing, provider, repo, Settings())

    with pytest.raises(TransitionConflict):
        reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    assert provider.get_intent(created[0]).status == "canceled"


def test_manual_acceptance_policy(ledger, pricing, provider, repo, customer, order):
    reconciler = PaymentReconciler(
        ledger, pricing, provider, repo, Settings(payment_success_policy="manual")
    )
    result = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_succeeded(result.intent_id)

    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.PAYMENT_RECORDED
    stored = ledger.get_order(order.id)
    assert stored.status == PENDING
    assert stored.payment_status == "succeeded"
    assert reconciler.reconcile(result.intent_id) is ReconcileOutcome.ALREADY_APPLIED

    ledger.transition_status(order.id, PREPARING, "kitchen")
    ledger.transition_status(order.id, READY, "kitchen")


def test_charged_amount_must_match_order(reconciler, ledger, provider, repo, order):
    intent = provider.create_intent(100, "usd", {"order_number": order.order_number})
    provider.mark_succeeded(intent.id)

    assert reconciler.reconcile(intent.id) is ReconcileOutcome.AMOUNT_MISMATCH
    assert ledger.get_order(order.id).status == PENDING
    assert [alert.kind for alert in repo.list_alerts()] == ["amount_mismatch"]


def test_paid_order_gets_no_second_intent(ledger, pricing, provider, repo, customer, order):
    reconciler = PaymentReconciler(
        ledger, pricing, provider, repo, Settings(payment_success_policy="manual")
    )
    first = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_succeeded(first.intent_id)
    assert reconciler.reconcile(first.intent_id) is ReconcileOutcome.PAYMENT_RECORDED

    with pytest.raises(PaymentAlreadyInProgress):
        reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    stored = ledger.get_order(order.id)
    assert stored.payment_reference == first.intent_id
    assert stored.payment_status == "succeeded"


def test_processing_payment_blocks_new_intent(reconciler, ledger, provider, customer, order):
    first = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_processing(first.intent_id)

    with pytest.raises(PaymentAlreadyInProgress) as excinfo:
        reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    assert excinfo.value.status_code == 409
    assert ledger.get_order(order.id).payment_reference == first.intent_id


def test_zero_amount_is_rejected_before_provider(reconciler, customer, set_menu_item, monkeypatch, provider):
    set_menu_item("horchata", price_cents=0)

    def create_intent(*args, **kwargs):
        raise AssertionError("provider must not be called")

    monkeypatch.setattr(provider, "create_intent", create_intent)
    with pytest.raises(ValidationError):
        reconciler.create_payment_intent([OrderLineRequest("horchata", 1)], "pickup", customer, None)


def test_failure_of_stale_intent_keeps_current_reference(reconciler, ledger, provider, customer, order):
    stale = provider.create_intent(653, "usd", {"order_number": order.order_number})
    current = reconciler.create_payment_intent(TWO_TACOS, "pickup", customer, order.order_number)
    provider.mark_failed(stale.id)

    assert reconciler.reconcile(stale.id) is ReconcileOutcome.PAYMENT_FAILED
    stored = ledger.get_order(order.id)
    assert stored.payment_reference == current.intent_id
    assert stored.payment_status == "requires_payment"


@pytest.mark.parametrize(
    "provider_status, expected",

    [
        ("succeeded", PaymentStatus.SUCCEEDED),
        ("processing", PaymentStatus.PROCESSING),
        ("requires_capture", PaymentStatus.PROCESSING),
        ("requires_action", PaymentStatus.REQUIRES_ACTION),
        ("requires_payment_method", PaymentStatus.REQUIRES_ACTION),
        ("canceled", PaymentStatus.FAILED),
        ("something_new", PaymentStatus.FAILED),
    ],
)
def test_provider_status_mapping(provider_status, expected):
    assert map_provider_status(provider_status) is expected
