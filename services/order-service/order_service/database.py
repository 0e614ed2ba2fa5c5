from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Iterable

import psycopg
from psycopg.rows import dict_row

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS menu_items (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT,
    price_cents INTEGER NOT NULL,
    available INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    order_number TEXT NOT NULL UNIQUE,
    customer_name TEXT NOT NULL,
    customer_phone TEXT NOT NULL,
    customer_email TEXT,
    order_type TEXT NOT NULL,
    delivery_address TEXT,
    notes TEXT,
    pickup_time TEXT,
    status TEXT NOT NULL,
    subtotal_cents INTEGER NOT NULL,
    tax_cents INTEGER NOT NULL,
    delivery_fee_cents INTEGER NOT NULL,
    total_cents INTEGER NOT NULL,
    payment_reference TEXT,
    payment_status TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_status_created ON orders (status, created_at);

CREATE TABLE IF NOT EXISTS order_lines (
    order_id TEXT NOT NULL,
    line_no INTEGER NOT NULL,
    menu_item_id TEXT NOT NULL,
    item_name TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    unit_price_cents INTEGER NOT NULL,
    customization TEXT,
    PRIMARY KEY (order_id, line_no),
    FOREIGN KEY (order_id) REFERENCES orders (id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS order_events (
    id {serial},
    order_id TEXT NOT NULL,
    order_number TEXT NOT NULL,
    event_type TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_alerts (
    id {serial},
    intent_id TEXT,
    order_number TEXT,
    kind TEXT NOT NULL,
    detail TEXT,
    created_at TEXT NOT NULL
);
"""

SERIAL_COLUMN = {
    "sqlite": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "postgres": "BIGSERIAL PRIMARY KEY",
}

INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)


def _build_database_url() -> str:
    if url := os.environ.get("DATABASE_URL"):
        return url
    user = os.environ.get("DB_USER", "orders")
    password = os.environ.get("DB_PASSWORD", "orders")
    host = os.environ.get("DB_HOST", "order-db")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "order_service")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


DATABASE_URL = _build_database_url()


def get_connection():
    """Return a connection against Postgres (default) or SQLite when configured."""
    retries = int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30"))
    delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
    for attempt in range(retries):
        try:
            return _connect_once()
        except (sqlite3.Error, psycopg.Error) as exc:  # pragma: no cover - only hits when DB down
            if attempt == retries - 1:
                raise StoreUnavailable(f"Database unreachable: {exc}") from exc
            logger.warning("Database connect attempt %d/%d failed: %s", attempt + 1, retries, exc)
            time.sleep(delay)
    raise StoreUnavailable("Database unreachable")  # pragma: no cover


def _connect_once():
    if DATABASE_URL.startswith("sqlite://"):
        path = DATABASE_URL.replace("sqlite:///", "")
        return connect_sqlite(path)

    return psycopg.connect(
        DATABASE_URL,
        autocommit=True,
        row_factory=dict_row,
        connect_timeout=int(os.environ.get("DB_CONNECT_TIMEOUT", "5")),
    )


def connect_sqlite(path) -> sqlite3.Connection:
    conn = sqlite3.connect(path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def init_db() -> None:
    conn = get_connection()
    try:
        apply_schema(conn)
        seed_if_empty(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    if hasattr(conn, "executescript"):
        conn.executescript(SCHEMA_SQL.format(serial=SERIAL_COLUMN["sqlite"]))
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(SCHEMA_SQL.format(serial=SERIAL_COLUMN["postgres"])):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


@contextmanager
def transaction(conn):
    """Run the enclosed statements as one unit: all commit or none do."""
    if hasattr(conn, "transaction"):
        with conn.transaction():
            yield conn
    else:
        with conn:
            yield conn


def seed_if_empty(conn) -> None:
    menu_items = [
        ("carne-asada-taco", "Carne Asada Taco", "TACOS", 450, 1),
        ("al-pastor-taco", "Al Pastor Taco", "TACOS", 425, 1),
        ("chicken-taco", "Chicken Taco", "TACOS", 375, 1),
        ("fish-taco", "Fish Taco", "TACOS", 500, 1),
        ("carnitas-taco", "Carnitas Taco", "TACOS", 425, 1),
        ("veggie-taco", "Veggie Taco", "TACOS", 350, 1),
        ("shrimp-taco", "Shrimp Taco", "TACOS", 550, 1),
        ("rice-and-beans", "Rice & Beans", "SIDES", 350, 1),
        ("chips-and-salsa", "Chips & Salsa", "SIDES", 400, 1),
        ("chips-and-guacamole", "Chips & Guacamole", "SIDES", 650, 1),
        ("street-corn", "Street Corn (Elote)", "SIDES", 450, 1),
        ("horchata", "Horchata", "DRINKS", 300, 1),
        ("jamaica", "Jamaica", "DRINKS", 300, 1),
        ("mexican-coke", "Mexican Coke", "DRINKS", 250, 1),
    ]

    row = conn.execute("SELECT COUNT(1) AS cnt FROM menu_items;").fetchone()
    count = 0
    if row is not None:
        if isinstance(row, dict):
            count = row.get("cnt", 0) or 0
        else:
            count = row[0] or 0
    if count > 0:
        return

    placeholder = placeholder_for(conn)
    insert_menu_items = (
        "INSERT INTO menu_items (id, name, category, price_cents, available)"
        f" VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})"
    )
    cur = conn.cursor()
    cur.executemany(insert_menu_items, menu_items)
    conn.commit()
    logger.info("Seeded %d menu items", len(menu_items))


def placeholder_for(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
