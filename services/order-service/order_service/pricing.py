"""Server-side pricing of a cart.

Prices always come from the catalog at the moment of pricing; anything the
client claims about prices is never looked at. All arithmetic is done in
integer minor units, with tax rounded half-up to the nearest cent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from .catalog import CatalogAccessor
from .config import Settings
from .errors import (
    InvalidQuantity,
    ItemNotFound,
    ItemUnavailable,
    PriceOutOfBounds,
    ValidationError,
)

logger = logging.getLogger(__name__)

ORDER_TYPES = ("pickup", "delivery")


@dataclass(frozen=True)
class OrderLineRequest:
    item_id: str
    quantity: int
    customization: str | None = None


@dataclass(frozen=True)
class PricedLine:
    item_id: str
    item_name: str
    quantity: int
    unit_price_cents: int
    customization: str | None

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class PricedOrder:
    order_type: str
    lines: tuple[PricedLine, ...]
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    total_cents: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_tax(subtotal_cents: int, tax_rate: Decimal) -> int:
    return round_half_up(Decimal(subtotal_cents) * tax_rate)


class PricingEngine:
    def __init__(self, catalog: CatalogAccessor, settings: Settings | None = None):
        self._catalog = catalog
        self._settings = settings or Settings()

    def price_order(self, lines: Sequence[OrderLineRequest], order_type: str) -> PricedOrder:
        settings = self._settings
        if order_type not in ORDER_TYPES:
            raise ValidationError(f"Unknown order type: {order_type!r}")
        if not lines:
            raise ValidationError("At least one item is required")
        if len(lines) > settings.max_lines_per_order:
            raise ValidationError(
                f"An order may contain at most {settings.max_lines_per_order} lines"
            )

        priced: list[PricedLine] = []
        for line in lines:
            self._check_quantity(line)
            customization = (line.customization or "").strip() or None
            if customization and len(customization) > settings.max_customization_length:
                raise ValidationError(
                    f"Customization for {line.item_id} exceeds "
                    f"{settings.max_customization_length} characters"
                )

            item = self._catalog.get_item(line.item_id)
            if item is None:
                raise ItemNotFound(f"Menu item {line.item_id} not found", item_id=line.item_id)
            if not item.available:
                raise ItemUnavailable(f"{item.name} is currently unavailable", item_id=item.id)
            if item.unit_price_cents < 0 or item.unit_price_cents > settings.max_unit_price_cents:
                logger.error(
                    "Catalog price out of bounds item=%s price_cents=%d", item.id, item.unit_price_cents
                )
                raise PriceOutOfBounds(
                    f"{item.name} has an invalid catalog price", item_id=item.id
                )

            priced.append(
                PricedLine(
                    item_id=item.id,
                    item_name=item.name,
                    quantity=line.quantity,
                    unit_price_cents=item.unit_price_cents,
                    customization=customization,
                )
            )

        subtotal = sum(line.line_total_cents for line in priced)
        tax = compute_tax(subtotal, settings.tax_rate)
        delivery_fee = settings.delivery_fee_cents if order_type == "delivery" else 0
        return PricedOrder(
            order_type=order_type,
            lines=tuple(priced),
            subtotal_cents=subtotal,
            tax_cents=tax,
            delivery_fee_cents=delivery_fee,
            total_cents=subtotal + tax + delivery_fee,
        )

    def _check_quantity(self, line: OrderLineRequest) -> None:
        quantity = line.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidQuantity(
                f"Quantity for {line.item_id} must be a whole number", item_id=line.item_id
            )
        if quantity < 1 or quantity > self._settings.max_quantity_per_line:
            raise InvalidQuantity(
                f"Quantity for {line.item_id} must be between 1 and "
                f"{self._settings.max_quantity_per_line}",
                item_id=line.item_id,
            )
