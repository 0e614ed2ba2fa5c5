from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from .database import INTEGRITY_ERRORS
from .errors import InvalidTransition, OrderNotFound, TransitionConflict, ValidationError
from .events import OrderEventNotifier
from .pricing import ORDER_TYPES, PricedOrder
from .repository import OrderLineRecord, OrderRecord, OrderRepository, utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
PREPARING = "preparing"
READY = "ready"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUSES = (PENDING, PREPARING, READY, COMPLETED, CANCELLED)
ACTIVE_STATUSES = (PENDING, PREPARING)
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PREPARING, CANCELLED}),
    PREPARING: frozenset({READY, CANCELLED}),
    READY: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}

MAX_NOTES_LENGTH = 500
ORDER_NUMBER_ATTEMPTS = 5


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    phone: str
    email: str | None = None
    delivery_address: str | None = None
    notes: str | None = None
    pickup_time: str | None = None


def generate_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{secrets.randbelow(10000):04d}"


class OrderLedger:
    """Authoritative store and state machine for orders."""

    def __init__(
        self,
        repository: OrderRepository,
        notifier: OrderEventNotifier | None = None,
        *,
        require_email: bool = False,
        number_factory=generate_order_number,
    ):
        self._repo = repository
        self._notifier = notifier or OrderEventNotifier()
        self._require_email = require_email
        self._number_factory = number_factory

    def validate_customer(self, customer: CustomerInfo, order_type: str) -> None:
        if order_type not in ORDER_TYPES:
            raise ValidationError(f"Order type must be one of: {', '.join(ORDER_TYPES)}")
        if not (customer.name or "").strip():
            raise ValidationError("Customer name is required")
        if not (customer.phone or "").strip():
            raise ValidationError("Customer phone is required")
        if self._require_email and not (customer.email or "").strip():
            raise ValidationError("Customer email is required for receipts")
        if order_type == "delivery" and not (customer.delivery_address or "").strip():
            raise ValidationError("Delivery address is required for delivery orders")
        if customer.notes and len(customer.notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"Notes may not exceed {MAX_NOTES_LENGTH} characters")

    def create_order(self, customer: CustomerInfo, order_type: str, priced: PricedOrder) -> OrderRecord:
        self.validate_customer(customer, order_type)
        if priced.order_type != order_type:
            raise ValidationError("Priced order does not match the requested order type")

        lines = tuple(
            OrderLineRecord(
                line_no=index,
                menu_item_id=line.item_id,
                item_name=line.item_name,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                customization=line.customization,
            )
            for index, line in enumerate(priced.lines, start=1)
        )
        address = customer.delivery_address.strip() if order_type == "delivery" else None

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            now = utcnow()
            record = OrderRecord(
                id=str(uuid.uuid4()),
                order_number=self._number_factory(),
                customer_name=customer.name.strip(),
                customer_phone=customer.phone.strip(),
                customer_email=(customer.email or "").strip() or None,
                order_type=order_type,
                delivery_address=address,
                notes=customer.notes,
                pickup_time=customer.pickup_time,
                status=PENDING,
                subtotal_cents=priced.subtotal_cents,
                tax_cents=priced.tax_cents,
                delivery_fee_cents=priced.delivery_fee_cents,
                total_cents=priced.total_cents,
                payment_reference=None,
                payment_status=None,
                created_at=now,
                updated_at=now,
                lines=lines,
            )
            try:
                self._repo.insert_order(record)
            except INTEGRITY_ERRORS:
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.warning("Order number %s already taken, retrying", record.order_number)
                continue
            break

        logger.info(
            "Created order %s type=%s lines=%d total_cents=%d",
            record.order_number,
            order_type,
            len(lines),
            record.total_cents,
        )
        self._notifier.publish(record.id, record.order_number, "created", record.status)
        return record

    def get_order(self, order_id: str) -> OrderRecord:
        record = self._repo.get_order(order_id)
        if record is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return record

    def get_order_by_number(self, order_number: str) -> OrderRecord:
        record = self._repo.get_order_by_number(order_number)
        if record is None:
            raise OrderNotFound(f"Order {order_number} not found")
        return record

    def find_by_number(self, order_number: str) -> OrderRecord | None:
        return self._repo.get_order_by_number(order_number)

    def find_by_payment_reference(self, reference: str) -> OrderRecord | None:
        return self._repo.get_order_by_payment_reference(reference)

    def list_active_orders(self) -> list[OrderRecord]:
        """Pending and preparing orders, oldest first so the kitchen serves them in turn."""
        return self._repo.list_by_status(ACTIVE_STATUSES)

    def list_orders(self, status: str | None = None, limit: int = 50, offset: int = 0) -> list[OrderRecord]:
        if status is not None and status not in STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(STATUSES)}")
        return self._repo.list_orders(status=status, limit=limit, offset=offset)

    def transition_status(
        self,
        order_id: str,
        target: str,
        actor: str,
        *,
        expected_status: str | None = None,
        payment_reference: str | None = None,
        payment_status: str | None = None,
    ) -> OrderRecord:
        """Apply one edge of the state machine with a compare-and-swap write.

        ``expected_status`` is the status the caller believes the order is in;
        when given, the write only lands if the order is still there.
        """
        if target not in STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(STATUSES)}")

        current = self.get_order(order_id)
        observed = expected_status or current.status
        if expected_status is not None and current.status != expected_status:
            raise TransitionConflict(
                f"Order {current.order_number} is {current.status}, not {expected_status}",
                current_status=current.status,
            )
        if not can_transition(observed, target):
            logger.warning(
                "Rejected transition %s -> %s for order %s by %s",
                observed,
                target,
                current.order_number,
                actor,
            )
            raise InvalidTransition(
                f"Cannot move order {current.order_number} from {observed} to {target}",
                current_status=observed,
            )

        swapped = self._repo.compare_and_set_status(
            order_id,
            observed,
            target,
            payment_reference=payment_reference,
            payment_status=payment_status,
        )
        if not swapped:
            latest = self.get_order(order_id)
            logger.warning(
                "Lost transition race %s -> %s for order %s (now %s) by %s",
                observed,
                target,
                current.order_number,
                latest.status,
                actor,
            )
            raise TransitionConflict(
                f"Order {current.order_number} changed to {latest.status} concurrently",
                current_status=latest.status,
            )

        logger.info("Order %s %s -> %s by %s", current.order_number, observed, target, actor)
        self._notifier.publish(order_id, current.order_number, "status_changed", target)
        return self.get_order(order_id)

    def cancel_order(self, order_id: str, actor: str) -> OrderRecord:
        return self.transition_status(order_id, CANCELLED, actor)

    def attach_payment(
        self,
        order_id: str,
        reference: str,
        payment_status: str | None,
        *,
        only_if_status: str | None = None,
    ) -> bool:
        return self._repo.set_payment_reference(
            order_id, reference, payment_status, only_if_status=only_if_status
        )

    def update_details(self, order_id: str, **fields) -> OrderRecord:
        for required in ("customer_name", "customer_phone"):
            if required in fields and not (fields[required] or "").strip():
                raise ValidationError(f"{required.replace('_', ' ').capitalize()} cannot be empty")
        notes = fields.get("notes")
        if notes and len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"Notes may not exceed {MAX_NOTES_LENGTH} characters")
        if not self._repo.update_details(order_id, fields):
            raise OrderNotFound(f"Order {order_id} not found")
        return self.get_order(order_id)

    def delete_order(self, order_id: str, actor: str) -> None:
        """Administrative hard delete; normal flows cancel instead."""
        record = self.get_order(order_id)
        if not self._repo.delete_order(order_id):
            raise OrderNotFound(f"Order {order_id} not found")
        logger.warning("Order %s deleted by %s", record.order_number, actor)

    def list_events(self, after: int = 0, limit: int = 100):
        return self._repo.list_events(after=after, limit=limit)
