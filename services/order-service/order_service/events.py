"""Fan-out of order changes to kitchen displays and status pages.

Events are only a prompt to re-fetch: they carry the order id, number and the
status at the time of publishing, never the order itself. Delivery is
at-least-once; every ledger write is also appended to the ``order_events``
table inside the same transaction, so a consumer that missed a live message
can catch up through the change feed.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Literal, Protocol

import redis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EventType = Literal["created", "status_changed"]
ALL_ORDERS_CHANNEL = "orders:all"


class OrderEvent(BaseModel):
    order_id: str
    order_number: str
    event_type: EventType
    status: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[OrderEvent], None]


class Notifier(Protocol):
    def publish(self, event: OrderEvent) -> None: ...


class InMemoryNotifier:
    """In-process fan-out; each subscriber gets every event."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: OrderEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber failed for order=%s event=%s", event.order_number, event.event_type
                )


class RedisNotifier:
    """Publishes to ``orders:all`` and to ``orders:<order_id>``."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        max_attempts: int = 3,
        retry_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_url(cls, url: str) -> "RedisNotifier":
        client = redis.Redis.from_url(url, socket_timeout=2.0, socket_connect_timeout=2.0)
        return cls(client)

    def publish(self, event: OrderEvent) -> None:
        message = event.model_dump_json()
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._client.publish(ALL_ORDERS_CHANNEL, message)
                self._client.publish(f"orders:{event.order_id}", message)
                return
            except redis.RedisError as exc:
                if attempt == self._max_attempts:
                    logger.warning(
                        "Giving up publishing order=%s event=%s after %d attempts: %s",
                        event.order_number,
                        event.event_type,
                        attempt,
                        exc,
                    )
                    return
                self._sleep(self._retry_delay * attempt)


class OrderEventNotifier:
    """Builds events from ledger records and hands them to the transport."""

    def __init__(self, transport: Notifier | None = None):
        self._transport = transport or InMemoryNotifier()

    def publish(self, order_id: str, order_number: str, event_type: EventType, status: str) -> None:
        event = OrderEvent(
            order_id=order_id,
            order_number=order_number,
            event_type=event_type,
            status=status,
        )
        logger.debug("Publishing %s for order=%s status=%s", event_type, order_number, status)
        self._transport.publish(event)
