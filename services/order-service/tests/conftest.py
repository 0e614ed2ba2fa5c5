from __future__ import annotations

import pytest

from order_service.catalog import SqlCatalog
from order_service.config import Settings
from order_service.database import apply_schema, connect_sqlite
from order_service.events import InMemoryNotifier, OrderEventNotifier
from order_service.ledger import CustomerInfo, OrderLedger
from order_service.payment_provider import MockPaymentProvider
from order_service.pricing import PricingEngine
from order_service.reconciler import PaymentReconciler
from order_service.repository import OrderRepository

MENU = [
    ("taco", "Taco", "TACOS", 300, 1),
    ("burrito", "Burrito", "TACOS", 950, 1),
    ("horchata", "Horchata", "DRINKS", 300, 1),
    ("elote", "Street Corn (Elote)", "SIDES", 450, 0),
    ("gold-taco", "Gold Taco", "TACOS", 250_000, 1),
]


@pytest.fixture()
def connection_factory(tmp_path):
    db_path = tmp_path / "orders.db"

    def factory():
        return connect_sqlite(db_path)

    conn = factory()
    try:
        apply_schema(conn)
        conn.executemany(
            """
            INSERT INTO menu_items (id, name, category, price_cents, available)
            VALUES (?, ?, ?, ?, ?);
            """,
            MENU,
        )
        conn.commit()
    finally:
        conn.close()
    return factory


@pytest.fixture()
def set_menu_item(connection_factory):
    def update(item_id, *, price_cents=None, available=None):
        conn = connection_factory()
        try:
            if price_cents is not None:
                conn.execute("UPDATE menu_items SET price_cents = ? WHERE id = ?;", (price_cents, item_id))
            if available is not None:
                conn.execute("UPDATE menu_items SET available = ? WHERE id = ?;", (int(available), item_id))
            conn.commit()
        finally:
            conn.close()

    return update


@pytest.fixture()
def settings():
    return Settings()


@pytest.fixture()
def repo(connection_factory):
    return OrderRepository(connection_factory=connection_factory)


@pytest.fixture()
def pricing(connection_factory, settings):
    return PricingEngine(SqlCatalog(connection_factory), settings)


@pytest.fixture()
def received_events():
    return []


@pytest.fixture()
def notifier(received_events):
    transport = InMemoryNotifier()
    transport.subscribe(received_events.append)
    return OrderEventNotifier(transport)


@pytest.fixture()
def ledger(repo, notifier):
    return OrderLedger(repo, notifier)


@pytest.fixture()
def provider():
    return MockPaymentProvider()


@pytest.fixture()
def reconciler(ledger, pricing, provider, repo, settings):
    return PaymentReconciler(ledger, pricing, provider, repo, settings)


@pytest.fixture()
def customer():
    return CustomerInfo(name="Ana Lopez", phone="555-0100", email="ana@example.com")
