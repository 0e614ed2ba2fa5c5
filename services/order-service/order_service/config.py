from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal


def _allowed_origins() -> list[str]:
    return [origin.strip() for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")]


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment."""

    tax_rate: Decimal = Decimal("0.08875")
    delivery_fee_cents: int = 500
    currency: str = "usd"
    max_quantity_per_line: int = 100
    max_lines_per_order: int = 50
    max_unit_price_cents: int = 100_000
    max_customization_length: int = 200
    payment_mode: str = "mock"
    payment_success_policy: str = "auto_accept"
    stripe_secret_key: str | None = None
    stripe_publishable_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_timeout: float = 10.0
    catalog_mode: str = "sql"
    catalog_service_url: str | None = None
    redis_url: str | None = None
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            tax_rate=Decimal(os.environ.get("TAX_RATE", "0.08875")),
            delivery_fee_cents=int(os.environ.get("DELIVERY_FEE_CENTS", "500")),
            currency=os.environ.get("CURRENCY", "usd").lower(),
            max_quantity_per_line=int(os.environ.get("MAX_QUANTITY_PER_LINE", "100")),
            max_lines_per_order=int(os.environ.get("MAX_LINES_PER_ORDER", "50")),
            max_unit_price_cents=int(os.environ.get("MAX_UNIT_PRICE_CENTS", "100000")),
            max_customization_length=int(os.environ.get("MAX_CUSTOMIZATION_LENGTH", "200")),
            payment_mode=os.environ.get("PAYMENT_MODE", "mock").lower(),
            payment_success_policy=os.environ.get("PAYMENT_SUCCESS_POLICY", "auto_accept").lower(),
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY") or None,
            stripe_publishable_key=os.environ.get("STRIPE_PUBLISHABLE_KEY") or None,
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET") or None,
            stripe_timeout=float(os.environ.get("STRIPE_TIMEOUT", "10")),
            catalog_mode=os.environ.get("CATALOG_MODE", "sql").lower(),
            catalog_service_url=os.environ.get("CATALOG_SERVICE_URL") or None,
            redis_url=os.environ.get("REDIS_URL") or None,
            allowed_origins=_allowed_origins(),
        )
