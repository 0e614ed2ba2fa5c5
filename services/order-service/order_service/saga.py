from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import PaymentError
from .ledger import CustomerInfo, OrderLedger
from .pricing import OrderLineRequest, PricingEngine
from .reconciler import PaymentIntentResult, PaymentReconciler
from .repository import OrderRecord

logger = logging.getLogger(__name__)


@dataclass
class CreateOrderCommand:
    customer: CustomerInfo
    order_type: str
    items: list[OrderLineRequest]
    pay_online: bool = False


@dataclass(frozen=True)
class CheckoutResult:
    order: OrderRecord
    payment: PaymentIntentResult | None = None
    payment_error: PaymentError | None = None


class OrderSaga:
    """Checkout: validate, price, persist, then (optionally) set up payment.

    Each step runs only if the previous one succeeded. A payment set-up
    failure does not undo the order: it stays ``pending`` so the customer can
    retry or switch to paying at pickup.
    """

    def __init__(
        self,
        ledger: OrderLedger,
        pricing: PricingEngine,
        reconciler: PaymentReconciler | None = None,
    ):
        self._ledger = ledger
        self._pricing = pricing
        self._reconciler = reconciler

    def place_order(self, command: CreateOrderCommand) -> CheckoutResult:
        self._ledger.validate_customer(command.customer, command.order_type)
        priced = self._pricing.price_order(command.items, command.order_type)
        order = self._ledger.create_order(command.customer, command.order_type, priced)

        if not command.pay_online or self._reconciler is None:
            return CheckoutResult(order=order)

        try:
            payment = self._reconciler.create_payment_intent(
                command.items,
                command.order_type,
                command.customer,
                order.order_number,
            )
        except PaymentError as exc:
            logger.warning("Payment set-up failed for order %s: %s", order.order_number, exc)
            return CheckoutResult(order=self._ledger.get_order(order.id), payment_error=exc)

        return CheckoutResult(order=self._ledger.get_order(order.id), payment=payment)
