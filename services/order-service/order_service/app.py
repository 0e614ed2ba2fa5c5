from __future__ import annotations

import logging
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from . import schemas
from .catalog import CatalogAccessor, HTTPCatalog, SqlCatalog
from .config import Settings
from .database import apply_schema, get_connection, init_db
from .errors import (
    InvalidTransition,
    OrderServiceError,
    PaymentError,
    PricingError,
)
from .events import InMemoryNotifier, Notifier, OrderEventNotifier, RedisNotifier
from .ledger import OrderLedger
from .payment_provider import MockPaymentProvider, PaymentProvider, StripePaymentProvider
from .pricing import PricingEngine
from .reconciler import PaymentIntentResult, PaymentReconciler
from .repository import OrderRepository
from .saga import CreateOrderCommand, OrderSaga

logger = logging.getLogger(__name__)


def build_payment_provider(settings: Settings) -> PaymentProvider:
    if settings.payment_mode == "stripe":
        return StripePaymentProvider(
            settings.stripe_secret_key,
            publishable_key=settings.stripe_publishable_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout=settings.stripe_timeout,
        )
    if settings.payment_mode == "mock":
        return MockPaymentProvider()
    raise RuntimeError(f"Unknown PAYMENT_MODE {settings.payment_mode!r}")


def build_catalog(settings: Settings, connection_factory) -> CatalogAccessor:
    if settings.catalog_mode == "http":
        if not settings.catalog_service_url:
            raise RuntimeError("CATALOG_SERVICE_URL must be set when CATALOG_MODE=http")
        return HTTPCatalog(settings.catalog_service_url)
    return SqlCatalog(connection_factory)


def build_notifier(settings: Settings) -> Notifier:
    if settings.redis_url:
        return RedisNotifier.from_url(settings.redis_url)
    return InMemoryNotifier()


def _payment_response(result: PaymentIntentResult) -> schemas.PaymentIntentResponse:
    return schemas.PaymentIntentResponse(
        client_secret=result.client_secret,
        publishable_key=result.publishable_key,
        intent_id=result.intent_id,
        amount=result.amount_cents,
        currency=result.currency,
    )


def _error_body(exc: OrderServiceError) -> dict:
    body = {"detail": str(exc), "kind": exc.kind}
    if isinstance(exc, PricingError) and exc.item_id:
        body["item_id"] = exc.item_id
    if isinstance(exc, InvalidTransition) and exc.current_status:
        body["current_status"] = exc.current_status
    if isinstance(exc, PaymentError):
        body["fallback"] = "pickup"
    if exc.retryable:
        body["retryable"] = True
    return body


def create_app(
    settings: Settings | None = None,
    *,
    connection_factory=None,
    payment_provider: PaymentProvider | None = None,
    notifier: Notifier | None = None,
    catalog: CatalogAccessor | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if connection_factory is None:
        init_db()
        connection_factory = get_connection
    else:
        conn = connection_factory()
        try:
            apply_schema(conn)
        finally:
            conn.close()

    provider = payment_provider or build_payment_provider(settings)
    event_notifier = OrderEventNotifier(notifier or build_notifier(settings))
    catalog = catalog or build_catalog(settings, connection_factory)

    app = FastAPI(
        title="Order Service",
        version="0.2.0",
        description="Prices carts, keeps the order ledger and reconciles payments.",
    )
    app.state.settings = settings
    app.state.notifier = event_notifier
    app.state.payment_provider = provider
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_repository() -> OrderRepository:
        return OrderRepository(connection_factory=connection_factory)

    def get_pricing() -> PricingEngine:
        return PricingEngine(catalog, settings)

    def get_ledger(repo: OrderRepository = Depends(get_repository)) -> OrderLedger:
        return OrderLedger(repo, event_notifier)

    def get_reconciler(
        ledger: OrderLedger = Depends(get_ledger),
        pricing: PricingEngine = Depends(get_pricing),
        repo: OrderRepository = Depends(get_repository),
    ) -> PaymentReconciler:
        return PaymentReconciler(ledger, pricing, provider, repo, settings)

    def get_saga(
        ledger: OrderLedger = Depends(get_ledger),
        pricing: PricingEngine = Depends(get_pricing),
        reconciler: PaymentReconciler = Depends(get_reconciler),
    ) -> OrderSaga:
        return OrderSaga(ledger, pricing, reconciler)

    @app.exception_handler(OrderServiceError)
    async def order_service_error(request: Request, exc: OrderServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_errors(exc), "kind": "validation_error"},
        )

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    @app.post(
        "/orders",
        response_model=schemas.OrderCreated,
        status_code=status.HTTP_201_CREATED,
        tags=["orders"],
    )
    def create_order(
        payload: schemas.CreateOrderRequest,
        saga: OrderSaga = Depends(get_saga),
    ) -> schemas.OrderCreated:
        result = saga.place_order(
            CreateOrderCommand(
                customer=payload.customer(),
                order_type=payload.order_type,
                items=[item.to_line() for item in payload.items],
                pay_online=payload.pay_online,
            )
        )
        summary = schemas.OrderSummary.from_record(result.order)
        return schemas.OrderCreated(
            **summary.model_dump(),
            payment=_payment_response(result.payment) if result.payment else None,
            payment_error=(
                schemas.ErrorBody(**_error_body(result.payment_error)) if result.payment_error else None
            ),
        )

    @app.get(
        "/orders",
        response_model=Union[schemas.OrderSummary, List[schemas.OrderSummary]],
        tags=["orders"],
    )
    def list_orders(
        order_number: Optional[str] = Query(default=None, alias="orderNumber"),
        status_filter: Optional[str] = Query(default=None, alias="status"),
        limit: int = 50,
        offset: int = 0,
        ledger: OrderLedger = Depends(get_ledger),
    ):
        if order_number:
            return schemas.OrderSummary.from_record(ledger.get_order_by_number(order_number))
        limit = max(1, min(limit, 200))
        records = ledger.list_orders(status=status_filter, limit=limit, offset=max(offset, 0))
        return [schemas.OrderSummary.from_record(record) for record in records]

    @app.get("/orders/active", response_model=List[schemas.OrderSummary], tags=["kitchen"])
    def list_active_orders(ledger: OrderLedger = Depends(get_ledger)) -> List[schemas.OrderSummary]:
        return [schemas.OrderSummary.from_record(record) for record in ledger.list_active_orders()]

    @app.get("/orders/events", response_model=List[schemas.OrderEvent], tags=["kitchen"])
    def list_order_events(
        after: int = 0,
        limit: int = 100,
        ledger: OrderLedger = Depends(get_ledger),
    ) -> List[schemas.OrderEvent]:
        limit = max(1, min(limit, 500))
        return [schemas.OrderEvent.from_record(event) for event in ledger.list_events(after, limit)]

    @app.get("/orders/{order_id}", response_model=schemas.OrderSummary, tags=["orders"])
    def get_order(order_id: str, ledger: OrderLedger = Depends(get_ledger)) -> schemas.OrderSummary:
        return schemas.OrderSummary.from_record(ledger.get_order(order_id))

    @app.patch("/orders/{order_id}/status", response_model=schemas.OrderSummary, tags=["kitchen"])
    def update_order_status(
        order_id: str,
        payload: schemas.StatusUpdateRequest,
        ledger: OrderLedger = Depends(get_ledger),
    ) -> schemas.OrderSummary:
        record = ledger.transition_status(
            order_id,
            payload.status,
            payload.actor,
            expected_status=payload.expected_status,
        )
        return schemas.OrderSummary.from_record(record)

    @app.put("/orders/{order_id}", response_model=schemas.OrderSummary, tags=["admin"])
    def update_order(
        order_id: str,
        payload: schemas.UpdateOrderRequest,
        ledger: OrderLedger = Depends(get_ledger),
    ) -> schemas.OrderSummary:
        fields = payload.model_dump(exclude_unset=True)
        return schemas.OrderSummary.from_record(ledger.update_details(order_id, **fields))

    @app.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["admin"])
    def delete_order(order_id: str, actor: str = "admin", ledger: OrderLedger = Depends(get_ledger)) -> None:
        ledger.delete_order(order_id, actor)

    @app.post("/payment-intents", response_model=schemas.PaymentIntentResponse, tags=["payments"])
    def create_payment_intent(
        payload: schemas.PaymentIntentRequest,
        reconciler: PaymentReconciler = Depends(get_reconciler),
    ) -> schemas.PaymentIntentResponse:
        result = reconciler.create_payment_intent(
            [item.to_line() for item in payload.items],
            payload.order_type,
            payload.customer(),
            payload.order_number,
            client_amount_cents=payload.amount,
        )
        return _payment_response(result)

    @app.get(
        "/payment-intents/{intent_id}",
        response_model=schemas.PaymentStatusResponse,
        tags=["payments"],
    )
    def get_payment_status(
        intent_id: str,
        reconciler: PaymentReconciler = Depends(get_reconciler),
    ) -> schemas.PaymentStatusResponse:
        return schemas.PaymentStatusResponse(
            intent_id=intent_id, status=reconciler.confirm_payment(intent_id).value
        )

    @app.post("/payments/webhook", response_model=schemas.WebhookAck, tags=["payments"])
    async def payment_webhook(
        request: Request,
        reconciler: PaymentReconciler = Depends(get_reconciler),
    ) -> schemas.WebhookAck:
        payload = await request.body()
        signature = request.headers.get("Stripe-Signature")
        outcome = await run_in_threadpool(reconciler.handle_webhook, payload, signature)
        return schemas.WebhookAck(outcome=outcome.value)

    @app.get("/payments/alerts", response_model=List[schemas.PaymentAlert], tags=["admin"])
    def list_payment_alerts(
        limit: int = 100,
        reconciler: PaymentReconciler = Depends(get_reconciler),
    ) -> List[schemas.PaymentAlert]:
        return [schemas.PaymentAlert.from_record(alert) for alert in reconciler.list_alerts(limit)]

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
