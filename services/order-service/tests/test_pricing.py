from __future__ import annotations

import random
from decimal import Decimal

import pytest

from order_service.catalog import MenuItem, SqlCatalog
from order_service.config import Settings
from order_service.errors import (
    InvalidQuantity,
    ItemNotFound,
    ItemUnavailable,
    PriceOutOfBounds,
    ValidationError,
)
from order_service.pricing import OrderLineRequest, PricingEngine, compute_tax, round_half_up


class DictCatalog:
    def __init__(self, items):
        self._items = {item.id: item for item in items}

    def get_item(self, item_id):
        return self._items.get(item_id)


def test_two_tacos_pickup(pricing):
    priced = pricing.price_order([OrderLineRequest("taco", 2)], "pickup")

    assert priced.subtotal_cents == 600
    assert priced.tax_cents == 53
    assert priced.delivery_fee_cents == 0
    assert priced.total_cents == 653
    assert priced.lines[0].item_name == "Taco"
    assert priced.lines[0].unit_price_cents == 300


def test_delivery_adds_fee(pricing):
    priced = pricing.price_order([OrderLineRequest("burrito", 1)], "delivery")

    assert priced.subtotal_cents == 950
    assert priced.tax_cents == 84
    assert priced.delivery_fee_cents == 500
    assert priced.total_cents == 950 + 84 + 500


def test_unavailable_item_is_rejected(pricing):
    with pytest.raises(ItemUnavailable) as excinfo:
        pricing.price_order([OrderLineRequest("taco", 1), OrderLineRequest("elote", 1)], "pickup")
    assert excinfo.value.item_id == "elote"


def test_unknown_item_is_rejected(pricing):
    with pytest.raises(ItemNotFound):
        pricing.price_order([OrderLineRequest("pozole", 1)], "pickup")


@pytest.mark.parametrize("quantity", [0, -1, 101, 2.5, True, "3", None])
def test_bad_quantities(pricing, quantity):
    with pytest.raises(InvalidQuantity):
        pricing.price_order([OrderLineRequest("taco", quantity)], "pickup")


def test_quantity_cap_is_inclusive(pricing):
    priced = pricing.price_order([OrderLineRequest("taco", 100)], "pickup")
    assert priced.subtotal_cents == 30_000


def test_empty_cart(pricing):
    with pytest.raises(ValidationError):
        pricing.price_order([], "pickup")


def test_too_many_lines(pricing):
    with pytest.raises(ValidationError):
        pricing.price_order([OrderLineRequest("taco", 1)] * 51, "pickup")


def test_unknown_order_type(pricing):
    with pytest.raises(ValidationError):
        pricing.price_order([OrderLineRequest("taco", 1)], "drone")


def test_corrupt_catalog_price(pricing):
    with pytest.raises(PriceOutOfBounds):
        pricing.price_order([OrderLineRequest("gold-taco", 1)], "pickup")


def test_customization_is_bounded(pricing):
    with pytest.raises(ValidationError):
        pricing.price_order([OrderLineRequest("taco", 1, "x" * 201)], "pickup")

    priced = pricing.price_order([OrderLineRequest("taco", 1, "  no onions ")], "pickup")
    assert priced.lines[0].customization == "no onions"


def test_reads_current_catalog_price(pricing, set_menu_item):
    before = pricing.price_order([OrderLineRequest("taco", 1)], "pickup")
    set_menu_item("taco", price_cents=350)
    after = pricing.price_order([OrderLineRequest("taco", 1)], "pickup")

    assert before.subtotal_cents == 300
    assert after.subtotal_cents == 350


@pytest.mark.parametrize(
    "value, expected",
    [(Decimal("0.5"), 1), (Decimal("1.5"), 2), (Decimal("2.5"), 3), (Decimal("53.25"), 53), (Decimal("2.4999"), 2)],
)
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected


def test_tax_rounds_half_up_not_to_even():
    assert compute_tax(5, Decimal("0.5")) == 3
    assert compute_tax(600, Decimal("0.08875")) == 53


def test_randomised_carts_keep_exact_arithmetic():
    rng = random.Random(20261017)
    items = [
        MenuItem(id=f"item-{n}", name=f"Item {n}", unit_price_cents=rng.randint(0, 100_000), available=True)
        for n in range(40)
    ]
    engine = PricingEngine(DictCatalog(items), Settings())

    for _ in range(200):
        lines = [
            OrderLineRequest(rng.choice(items).id, rng.randint(1, 100))
            for _ in range(rng.randint(1, 50))
        ]
        order_type = rng.choice(["pickup", "delivery"])
        priced = engine.price_order(lines, order_type)
        prices = {item.id: item.unit_price_cents for item in items}

        expected_subtotal = sum(prices[line.item_id] * line.quantity for line in lines)
        assert priced.subtotal_cents == expected_subtotal
        assert priced.tax_cents == (expected_subtotal * 8875 + 50_000) // 100_000
        assert priced.total_cents == priced.subtotal_cents + priced.tax_cents + priced.delivery_fee_cents
        assert priced.delivery_fee_cents == (500 if order_type == "delivery" else 0)
        assert engine.price_order(lines, order_type) == priced


def test_customization_limit_comes_from_environment(connection_factory, monkeypatch):
    monkeypatch.setenv("MAX_CUSTOMIZATION_LENGTH", "10")
    settings = Settings.from_env()
    engine = PricingEngine(SqlCatalog(connection_factory), settings)

    assert settings.max_customization_length == 10
    assert engine.price_order([OrderLineRequest("taco", 1, "x" * 10)], "pickup").subtotal_cents == 300
    with pytest.raises(ValidationError):
        engine.price_order([OrderLineRequest("taco", 1, "x" * 11)], "pickup")
