from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

import httpx

from .database import get_connection, placeholder_for
from .errors import CatalogUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MenuItem:
    id: str
    name: str
    unit_price_cents: int
    available: bool


class CatalogAccessor(Protocol):
    def get_item(self, item_id: str) -> MenuItem | None: ...


class SqlCatalog:
    """Reads menu items straight from the shared ``menu_items`` table."""

    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def get_item(self, item_id: str) -> MenuItem | None:
        with self._connection() as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"""
                SELECT id, name, price_cents, available
                FROM menu_items
                WHERE id = {placeholder};
                """,
                (item_id,),
            ).fetchone()
        if row is None:
            return None
        return MenuItem(
            id=row["id"],
            name=row["name"],
            unit_price_cents=int(row["price_cents"]),
            available=bool(row["available"]),
        )


class HTTPCatalog:
    """Looks up menu items on a remote menu service."""

    def __init__(self, base_url: str, client: httpx.Client | None = None):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=5.0)

    def get_item(self, item_id: str) -> MenuItem | None:
        try:
            response = self._client.get(f"{self._base_url}/menu-items/{item_id}")
        except httpx.HTTPError as exc:
            raise CatalogUnavailable(f"Menu service unreachable: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise CatalogUnavailable(
                f"Menu service lookup failed ({response.status_code}): {response.text}"
            )
        payload = response.json()
        return MenuItem(
            id=payload["id"],
            name=payload["name"],
            unit_price_cents=int(payload["price_cents"]),
            available=bool(payload.get("available", False)),
        )
