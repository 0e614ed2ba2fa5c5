from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .ledger import CustomerInfo
from .pricing import OrderLineRequest
from .repository import OrderEventRecord, OrderRecord, PaymentAlertRecord


class HealthResponse(BaseModel):
    status: Literal["ok"]


class OrderItem(BaseModel):
    menu_item_id: str
    quantity: int
    customization: Optional[str] = None
    price: Optional[float] = Field(
        default=None, description="Accepted for client compatibility and ignored; prices come from the menu."
    )

    def to_line(self) -> OrderLineRequest:
        return OrderLineRequest(
            item_id=self.menu_item_id,
            quantity=self.quantity,
            customization=self.customization,
        )


class CustomerDetails(BaseModel):
    name: str = ""
    phone: str = ""
    email: Optional[str] = None
    address: Optional[str] = None


class CreateOrderRequest(BaseModel):
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: Optional[str] = None
    order_type: str = "pickup"
    delivery_address: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    pickup_time: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    pay_online: bool = False

    def customer(self) -> CustomerInfo:
        return CustomerInfo(
            name=self.customer_name,
            phone=self.customer_phone,
            email=self.customer_email,
            delivery_address=self.delivery_address,
            notes=self.notes,
            pickup_time=self.pickup_time,
        )


class StatusUpdateRequest(BaseModel):
    status: str
    expected_status: Optional[str] = Field(
        default=None, description="Status the caller last saw; the update fails if it changed."
    )
    actor: str = "kitchen"


class UpdateOrderRequest(BaseModel):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    pickup_time: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: List[OrderItem] = Field(default_factory=list)
    order_type: str = "pickup"
    customer_info: CustomerDetails = Field(default_factory=CustomerDetails)
    order_number: Optional[str] = None
    amount: Optional[int] = Field(default=None, description="Client hint in minor units; never charged.")

    def customer(self) -> CustomerInfo:
        return CustomerInfo(
            name=self.customer_info.name,
            phone=self.customer_info.phone,
            email=self.customer_info.email,
            delivery_address=self.customer_info.address,
        )


class PaymentIntentResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    client_secret: Optional[str]
    publishable_key: Optional[str]
    intent_id: str
    amount: int
    currency: str


class PaymentStatusResponse(BaseModel):
    intent_id: str
    status: Literal["succeeded", "processing", "failed", "requires_action"]


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str


class ErrorBody(BaseModel):
    detail: str
    kind: str
    fallback: Optional[str] = None


class OrderLine(BaseModel):
    line_no: int
    menu_item_id: str
    item_name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    customization: Optional[str]


class OrderSummary(BaseModel):
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
    lines: List[OrderLine]

    @classmethod
    def from_record(cls, record: OrderRecord) -> "OrderSummary":
        return cls(
            **{key: value for key, value in record.__dict__.items() if key != "lines"},
            lines=[
                OrderLine(
                    line_no=line.line_no,
                    menu_item_id=line.menu_item_id,
                    item_name=line.item_name,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    line_total_cents=line.line_total_cents,
                    customization=line.customization,
                )
                for line in record.lines
            ],
        )


class OrderCreated(OrderSummary):
    payment: Optional[PaymentIntentResponse] = None
    payment_error: Optional[ErrorBody] = None


class OrderEvent(BaseModel):
    id: int
    order_id: str
    order_number: str
    event_type: str
    status: str
    created_at: str

    @classmethod
    def from_record(cls, record: OrderEventRecord) -> "OrderEvent":
        return cls(**record.__dict__)


class PaymentAlert(BaseModel):
    id: int
    intent_id: Optional[str]
    order_number: Optional[str]
    kind: str
    detail: Optional[str]
    created_at: str

    @classmethod
    def from_record(cls, record: PaymentAlertRecord) -> "PaymentAlert":
        return cls(**record.__dict__)
