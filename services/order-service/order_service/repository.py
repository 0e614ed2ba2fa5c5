from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from .database import get_connection, placeholder_for, transaction

ORDER_COLUMNS = """
    id, order_number, customer_name, customer_phone, customer_email,
    order_type, delivery_address, notes, pickup_time, status,
    subtotal_cents, tax_cents, delivery_fee_cents, total_cents,
    payment_reference, payment_status, created_at, updated_at
"""

EDITABLE_FIELDS = ("customer_name", "customer_phone", "customer_email", "notes", "pickup_time")


@dataclass(frozen=True)
class OrderLineRecord:
    line_no: int
    menu_item_id: str
    item_name: str
    quantity: int
    unit_price_cents: int
    customization: Optional[str]

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class OrderRecord:
    id: str
    order_number: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    order_type: str
    delivery_address: Optional[str]
    notes: Optional[str]
    pickup_time: Optional[str]
    status: str
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    total_cents: int
    payment_reference: Optional[str]
    payment_status: Optional[str]
    created_at: str
    updated_at: str
    lines: tuple[OrderLineRecord, ...] = ()


@dataclass(frozen=True)
class OrderEventRecord:
    id: int
    order_id: str
    order_number: str
    event_type: str
    status: str
    created_at: str


@dataclass(frozen=True)
class PaymentAlertRecord:
    id: int
    intent_id: Optional[str]
    order_number: Optional[str]
    kind: str
    detail: Optional[str]
    created_at: str


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderRepository:
    """Data-access layer for orders, their lines and the change feed."""

    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def insert_order(self, record: OrderRecord) -> None:
        """Write the order row, all of its lines and its ``created`` event atomically."""
        with self._connection() as conn, transaction(conn):
            placeholder = placeholder_for(conn)
            values = ", ".join(placeholder for _ in range(18))
            conn.execute(
                f"INSERT INTO orders ({ORDER_COLUMNS}) VALUES ({values});",
                (
                    record.id,
                    record.order_number,
                    record.customer_name,
                    record.customer_phone,
                    record.customer_email,
                    record.order_type,
                    record.delivery_address,
                    record.notes,
                    record.pickup_time,
                    record.status,
                    record.subtotal_cents,
                    record.tax_cents,
                    record.delivery_fee_cents,
                    record.total_cents,
                    record.payment_reference,
                    record.payment_status,
                    record.created_at,
                    record.updated_at,
                ),
            )
            cur = conn.cursor()
            cur.executemany(
                f"""
                INSERT INTO order_lines (
                    order_id, line_no, menu_item_id, item_name, quantity,
                    unit_price_cents, customization
                ) VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder},
                          {placeholder}, {placeholder}, {placeholder});
                """,
                [
                    (
                        record.id,
                        line.line_no,
                        line.menu_item_id,
                        line.item_name,
                        line.quantity,
                        line.unit_price_cents,
                        line.customization,
                    )
                    for line in record.lines
                ],
            )
            self._append_event(conn, record.id, record.order_number, "created", record.status)

    def get_order(self, order_id: str) -> OrderRecord | None:
        return self._get_one("id", order_id)

    def get_order_by_number(self, order_number: str) -> OrderRecord | None:
        return self._get_one("order_number", order_number)

    def get_order_by_payment_reference(self, reference: str) -> OrderRecord | None:
        return self._get_one("payment_reference", reference)

    def list_by_status(self, statuses: Sequence[str]) -> list[OrderRecord]:
        """Orders in any of ``statuses``, oldest first."""
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            marks = ",".join(placeholder for _ in statuses)
            rows = conn.execute(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders
                WHERE status IN ({marks})
                ORDER BY created_at ASC, order_number ASC;
                """,
                tuple(statuses),
            ).fetchall()
            return self._with_lines(conn, rows)

    def list_orders(
        self, status: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[OrderRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            where = ""
            params: list = []
            if status:
                where = f"WHERE status = {placeholder}"
                params.append(status)
            rows = conn.execute(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders
                {where}
                ORDER BY created_at DESC, order_number DESC
                LIMIT {placeholder} OFFSET {placeholder};
                """,
                (*params, limit, offset),
            ).fetchall()
            return self._with_lines(conn, rows)

    def compare_and_set_status(
        self,
        order_id: str,
        expected_status: str,
        new_status: str,
        *,
        payment_reference: str | None = None,
        payment_status: str | None = None,
    ) -> bool:
        """Move the order to ``new_status`` only if it is still ``expected_status``.

        Returns False when another writer got there first; nothing is written
        in that case.
        """
        now = utcnow()
        with self._connection() as conn, transaction(conn):
            placeholder = placeholder_for(conn)
            cursor = conn.execute(
                f"""
                UPDATE orders
                SET status = {placeholder},
                    payment_reference = COALESCE({placeholder}, payment_reference),
                    payment_status = COALESCE({placeholder}, payment_status),
                    updated_at = {placeholder}
                WHERE id = {placeholder} AND status = {placeholder};
                """,
                (new_status, payment_reference, payment_status, now, order_id, expected_status),
            )
            if cursor.rowcount != 1:
                return False
            row = conn.execute(
                f"SELECT order_number FROM orders WHERE id = {placeholder};", (order_id,)
            ).fetchone()
            self._append_event(conn, order_id, row["order_number"], "status_changed", new_status)
            return True

    def set_payment_reference(
        self,
        order_id: str,
        reference: str,
        payment_status: str | None,
        *,
        only_if_status: str | None = None,
    ) -> bool:
        now = utcnow()
        with self._connection() as conn, transaction(conn):
            placeholder = placeholder_for(conn)
            condition = ""
            params: list = [reference, payment_status, now, order_id]
            if only_if_status is not None:
                condition = f" AND status = {placeholder}"
                params.append(only_if_status)
            cursor = conn.execute(
                f"""
                UPDATE orders
                SET payment_reference = {placeholder},
                    payment_status = COALESCE({placeholder}, payment_status),
                    updated_at = {placeholder}
                WHERE id = {placeholder}{condition};
                """,
                tuple(params),
            )
            return cursor.rowcount == 1

    def update_details(self, order_id: str, fields: dict) -> bool:
        changes = {key: value for key, value in fields.items() if key in EDITABLE_FIELDS}
        if not changes:
            return self.get_order(order_id) is not None
        with self._connection() as conn, transaction(conn):
            placeholder = placeholder_for(conn)
            assignments = ", ".join(f"{column} = {placeholder}" for column in changes)
            cursor = conn.execute(
                f"""
                UPDATE orders
                SET {assignments}, updated_at = {placeholder}
                WHERE id = {placeholder};
                """,
                (*changes.values(), utcnow(), order_id),
            )
            return cursor.rowcount == 1

    def delete_order(self, order_id: str) -> bool:
        with self._connection() as conn, transaction(conn):
            placeholder = placeholder_for(conn)
            conn.execute(f"DELETE FROM order_lines WHERE order_id = {placeholder};", (order_id,))
            cursor = conn.execute(f"DELETE FROM orders WHERE id = {placeholder};", (order_id,))
            return cursor.rowcount == 1

    def list_events(self, after: int = 0, limit: int = 100) -> list[OrderEventRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT id, order_id, order_number, event_type, status, created_at
                FROM order_events
                WHERE id > {placeholder}
                ORDER BY id ASC
                LIMIT {placeholder};
                """,
                (after, limit),
            ).fetchall()
        return [
            OrderEventRecord(
                id=int(row["id"]),
                order_id=row["order_id"],
                order_number=row["order_number"],
                event_type=row["event_type"],
                status=row["status"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def insert_alert(
        self, kind: str, *, intent_id: str | None, order_number: str | None, detail: str | None
    ) -> None:
        with self._connection() as conn, transaction(conn):
            placeholder = placeholder_for(conn)
            conn.execute(
                f"""
                INSERT INTO payment_alerts (intent_id, order_number, kind, detail, created_at)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder});
                """,
                (intent_id, order_number, kind, detail, utcnow()),
            )

    def list_alerts(self, limit: int = 100) -> list[PaymentAlertRecord]:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            rows = conn.execute(
                f"""
                SELECT id, intent_id, order_number, kind, detail, created_at
                FROM payment_alerts
                ORDER BY id DESC
                LIMIT {placeholder};
                """,
                (limit,),
            ).fetchall()
        return [
            PaymentAlertRecord(
                id=int(row["id"]),
                intent_id=row["intent_id"],
                order_number=row["order_number"],
                kind=row["kind"],
                detail=row["detail"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def _get_one(self, column: str, value: str) -> OrderRecord | None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"SELECT {ORDER_COLUMNS} FROM orders WHERE {column} = {placeholder};",
                (value,),
            ).fetchone()
            if row is None:
                return None
            return self._with_lines(conn, [row])[0]

    def _with_lines(self, conn, rows: Iterable) -> list[OrderRecord]:
        rows = list(rows)
        if not rows:
            return []
        placeholder = placeholder_for(conn)
        ids = [row["id"] for row in rows]
        marks = ",".join(placeholder for _ in ids)
        line_rows = conn.execute(
            f"""
            SELECT order_id, line_no, menu_item_id, item_name, quantity,
                   unit_price_cents, customization
            FROM order_lines
            WHERE order_id IN ({marks})
            ORDER BY order_id, line_no;
            """,
            ids,
        ).fetchall()

        lines: dict[str, list[OrderLineRecord]] = {order_id: [] for order_id in ids}
        for line in line_rows:
            lines[line["order_id"]].append(
                OrderLineRecord(
                    line_no=int(line["line_no"]),
                    menu_item_id=line["menu_item_id"],
                    item_name=line["item_name"],
                    quantity=int(line["quantity"]),
                    unit_price_cents=int(line["unit_price_cents"]),
                    customization=line["customization"],
                )
            )
        return [_to_record(row, tuple(lines[row["id"]])) for row in rows]

    def _append_event(self, conn, order_id: str, order_number: str, event_type: str, status: str) -> None:
        placeholder = placeholder_for(conn)
        conn.execute(
            f"""
            INSERT INTO order_events (order_id, order_number, event_type, status, created_at)
            VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder});
            """,
            (order_id, order_number, event_type, status, utcnow()),
        )


def _to_record(row, lines: tuple[OrderLineRecord, ...]) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        order_number=row["order_number"],
        customer_name=row["customer_name"],
        customer_phone=row["customer_phone"],
        customer_email=row["customer_email"],
        order_type=row["order_type"],
        delivery_address=row["delivery_address"],
        notes=row["notes"],
        pickup_time=row["pickup_time"],
        status=row["status"],
        subtotal_cents=int(row["subtotal_cents"]),
        tax_cents=int(row["tax_cents"]),
        delivery_fee_cents=int(row["delivery_fee_cents"]),
        total_cents=int(row["total_cents"]),
        payment_reference=row["payment_reference"],
        payment_status=row["payment_status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        lines=lines,
    )
