"""Bridges payment provider state to order status.

The amount charged is always recomputed from the catalog; the only writer of
the payment-triggered ``pending -> preparing`` transition is
:meth:`PaymentReconciler.reconcile`, which goes through the ledger's
compare-and-swap path so a late confirmation can never revive a cancelled
order. Anomalies (money taken for a missing or cancelled order, amounts that
do not line up) are logged at ERROR and stored as payment alerts for manual
follow-up.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from .config import Settings
from .errors import (
    AmountMismatch,
    InvalidTransition,
    PaymentAlreadyInProgress,
    PaymentProviderError,
    TransitionConflict,
    ValidationError,
)
from .ledger import CANCELLED, PENDING, PREPARING, CustomerInfo, OrderLedger
from .payment_provider import PaymentProvider, PaymentStatus, map_provider_status
from .pricing import OrderLineRequest, PricingEngine
from .repository import OrderRecord, OrderRepository

logger = logging.getLogger(__name__)

ACTOR = "payment-reconciler"
REUSABLE_INTENT_STATES = {"requires_payment_method", "requires_confirmation", "requires_action"}
HANDLED_WEBHOOKS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.processing",
    "payment_intent.canceled",
}


class ReconcileOutcome(str, Enum):
    ADVANCED = "advanced"
    PAYMENT_RECORDED = "payment_recorded"
    ALREADY_APPLIED = "already_applied"
    PAYMENT_FAILED = "payment_failed"
    PROCESSING = "processing"
    ORDER_MISSING = "order_missing"
    ORDER_TERMINAL = "order_terminal"
    AMOUNT_MISMATCH = "amount_mismatch"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentIntentResult:
    intent_id: str
    client_secret: str | None
    publishable_key: str | None
    amount_cents: int
    currency: str


class PaymentReconciler:
    def __init__(
        self,
        ledger: OrderLedger,
        pricing: PricingEngine,
        provider: PaymentProvider,
        repository: OrderRepository,
        settings: Settings | None = None,
    ):
        self._ledger = ledger
        self._pricing = pricing
        self._provider = provider
        self._repo = repository
        self._settings = settings or Settings()

    def create_payment_intent(
        self,
        lines: Sequence[OrderLineRequest],
        order_type: str,
        customer: CustomerInfo,
        order_number: str | None,
        *,
        client_amount_cents: int | None = None,
    ) -> PaymentIntentResult:
        priced = self._pricing.price_order(lines, order_type)
        amount = priced.total_cents
        if amount <= 0:
            raise ValidationError("Calculated amount must be greater than 0")
        if client_amount_cents is not None and client_amount_cents != amount:
            logger.warning(
                "Ignoring client amount %d for order %s, recomputed %d",
                client_amount_cents,
                order_number,
                amount,
            )

        order = self._ledger.find_by_number(order_number) if order_number else None
        if order is not None:
            if order.status != PENDING:
                raise InvalidTransition(
                    f"Order {order.order_number} is {order.status} and no longer awaits payment",
                    current_status=order.status,
                )
            if order.payment_status == PaymentStatus.SUCCEEDED.value:
                raise PaymentAlreadyInProgress(f"Order {order.order_number} is already paid")
            if order.total_cents != amount:
                detail = f"order total {order.total_cents} != recomputed {amount}"
                self._alert("amount_mismatch", None, order.order_number, detail)
                raise AmountMismatch(
                    f"Prices changed since order {order.order_number} was placed; please review the cart"
                )
            existing = self._reusable_intent(order, amount)
            if existing is not None:
                return existing

        intent = self._provider.create_intent(
            amount,
            self._settings.currency,
            {
                "order_number": order_number or "",
                "customer_name": customer.name or "",
                "customer_phone": customer.phone or "",
                "order_type": order_type,
                "delivery_address": customer.delivery_address or "",
            },
            receipt_email=customer.email or None,
            description=f"Order {order_number}" if order_number else None,
        )
        logger.info("Created payment intent %s amount=%d order=%s", intent.id, amount, order_number)

        if order is not None:
            self._stamp_or_void(order, intent.id)

        return PaymentIntentResult(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            publishable_key=self._provider.publishable_key,
            amount_cents=amount,
            currency=intent.currency,
        )

    def confirm_payment(self, intent_id: str) -> PaymentStatus:
        intent = self._provider.get_intent(intent_id)
        return map_provider_status(intent.status)

    def reconcile(self, intent_id: str, order_number: str | None = None) -> ReconcileOutcome:
        intent = self._provider.get_intent(intent_id)
        status = map_provider_status(intent.status)
        order_number = order_number or intent.metadata.get("order_number") or None

        order = self._ledger.find_by_payment_reference(intent_id)
        if order is None and order_number:
            order = self._ledger.find_by_number(order_number)

        if order is None:
            if status is PaymentStatus.SUCCEEDED:
                self._alert(
                    "order_missing",
                    intent_id,
                    order_number,
                    f"payment of {intent.amount} {intent.currency} succeeded without an order",
                )
                return ReconcileOutcome.ORDER_MISSING
            logger.info("No order for intent %s (status %s), nothing to reconcile", intent_id, status.value)
            return ReconcileOutcome.IGNORED

        if status is PaymentStatus.SUCCEEDED:
            return self._apply_success(order, intent_id, intent.amount)

        if (
            order.status == PENDING
            and order.payment_status != PaymentStatus.SUCCEEDED.value
            and order.payment_reference in (None, intent_id)
        ):
            self._ledger.attach_payment(order.id, intent_id, status.value, only_if_status=PENDING)
        if status is PaymentStatus.PROCESSING:
            logger.info("Payment %s for order %s still processing", intent_id, order.order_number)
            return ReconcileOutcome.PROCESSING
        logger.warning(
            "Payment %s for order %s not completed (%s)", intent_id, order.order_number, intent.status
        )
        return ReconcileOutcome.PAYMENT_FAILED

    def handle_webhook(self, payload: bytes, signature: str | None) -> ReconcileOutcome:
        event = self._provider.parse_webhook(payload, signature)
        if event.type not in HANDLED_WEBHOOKS or not event.intent_id:
            logger.debug("Ignoring webhook %s", event.type)
            return ReconcileOutcome.IGNORED
        return self.reconcile(event.intent_id, event.metadata.get("order_number"))

    def void_payment_intent(self, intent_id: str, order_number: str | None = None) -> None:
        try:
            self._provider.cancel_intent(intent_id)
        except PaymentProviderError as exc:
            self._alert("void_failed", intent_id, order_number, str(exc))
            return
        logger.info("Voided payment intent %s for order %s", intent_id, order_number)

    def list_alerts(self, limit: int = 100):
        return self._repo.list_alerts(limit=limit)

    def _apply_success(self, order: OrderRecord, intent_id: str, amount: int) -> ReconcileOutcome:
        if order.status == CANCELLED:
            self._alert(
                "order_terminal",
                intent_id,
                order.order_number,
                "payment succeeded for a cancelled order; refund required",
            )
            return ReconcileOutcome.ORDER_TERMINAL

        if order.status != PENDING or order.payment_status == PaymentStatus.SUCCEEDED.value:
            if order.payment_reference not in (None, intent_id):
                self._alert(
                    "duplicate_payment",
                    intent_id,
                    order.order_number,
                    f"order already paid with {order.payment_reference}",
                )
            logger.info(
                "Payment %s for order %s already applied (status %s)",
                intent_id,
                order.order_number,
                order.status,
            )
            return ReconcileOutcome.ALREADY_APPLIED

        if amount != order.total_cents:
            self._alert(
                "amount_mismatch",
                intent_id,
                order.order_number,
                f"charged {amount} but order total is {order.total_cents}",
            )
            return ReconcileOutcome.AMOUNT_MISMATCH

        if self._settings.payment_success_policy == "manual":
            self._ledger.attach_payment(order.id, intent_id, PaymentStatus.SUCCEEDED.value, only_if_status=PENDING)
            logger.info("Payment %s recorded for order %s, awaiting kitchen acceptance", intent_id, order.order_number)
            return ReconcileOutcome.PAYMENT_RECORDED

        try:
            self._ledger.transition_status(
                order.id,
                PREPARING,
                ACTOR,
                expected_status=PENDING,
                payment_reference=intent_id,
                payment_status=PaymentStatus.SUCCEEDED.value,
            )
        except TransitionConflict as exc:
            if exc.current_status == CANCELLED:
                self._alert(
                    "order_terminal",
                    intent_id,
                    order.order_number,
                    "order was cancelled while payment was confirmed; refund required",
                )
                return ReconcileOutcome.ORDER_TERMINAL
            logger.info("Order %s moved on to %s before payment %s was applied", order.order_number, exc.current_status, intent_id)
            return ReconcileOutcome.ALREADY_APPLIED
        return ReconcileOutcome.ADVANCED

    def _reusable_intent(self, order: OrderRecord, amount: int) -> PaymentIntentResult | None:
        if not order.payment_reference:
            return None
        try:
            intent = self._provider.get_intent(order.payment_reference)
        except PaymentProviderError:
            logger.warning("Could not reload intent %s for order %s", order.payment_reference, order.order_number)
            return None
        if map_provider_status(intent.status) in (PaymentStatus.SUCCEEDED, PaymentStatus.PROCESSING):
            raise PaymentAlreadyInProgress(
                f"Payment {intent.id} for order {order.order_number} is already {intent.status}"
            )
        if intent.status not in REUSABLE_INTENT_STATES or intent.amount != amount:
            return None
        return PaymentIntentResult(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            publishable_key=self._provider.publishable_key,
            amount_cents=intent.amount,
            currency=intent.currency,
        )

    def _stamp_or_void(self, order: OrderRecord, intent_id: str) -> None:
        try:
            stamped = self._ledger.attach_payment(
                order.id, intent_id, "requires_payment", only_if_status=PENDING
            )
        except Exception:
            self.void_payment_intent(intent_id, order.order_number)
            raise
        if not stamped:
            self.void_payment_intent(intent_id, order.order_number)
            raise TransitionConflict(
                f"Order {order.order_number} changed while the payment was being set up"
            )

    def _alert(self, kind: str, intent_id: str | None, order_number: str | None, detail: str) -> None:
        logger.error(
            "Payment reconciliation alert kind=%s intent=%s order=%s: %s",
            kind,
            intent_id,
            order_number,
            detail,
        )
        self._repo.insert_alert(kind, intent_id=intent_id, order_number=order_number, detail=detail)
