from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Protocol

import stripe

from .errors import InvalidWebhook, PaymentNotConfigured, PaymentProviderError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


PROVIDER_STATUS_MAP = {
    "succeeded": PaymentStatus.SUCCEEDED,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.REQUIRES_ACTION,
    "requires_confirmation": PaymentStatus.REQUIRES_ACTION,
    "requires_payment_method": PaymentStatus.REQUIRES_ACTION,
    "canceled": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
}


def map_provider_status(status: str | None) -> PaymentStatus:
    return PROVIDER_STATUS_MAP.get(status or "", PaymentStatus.FAILED)


@dataclass(frozen=True)
class IntentResult:
    id: str
    client_secret: str | None
    status: str
    amount: int
    currency: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    intent_id: str | None
    status: str | None
    metadata: dict = field(default_factory=dict)


class PaymentProvider(Protocol):
    publishable_key: str | None

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        *,
        receipt_email: str | None = None,
        description: str | None = None,
    ) -> IntentResult: ...

    def get_intent(self, intent_id: str) -> IntentResult: ...

    def cancel_intent(self, intent_id: str) -> IntentResult: ...

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent: ...


class StripePaymentProvider:
    def __init__(
        self,
        secret_key: str | None,
        publishable_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = 10.0,
    ):
        if not secret_key:
            raise PaymentNotConfigured("STRIPE_SECRET_KEY must be set when PAYMENT_MODE=stripe")
        self._secret_key = secret_key
        self.publishable_key = publishable_key
        self._webhook_secret = webhook_secret
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = 2

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        *,
        receipt_email: str | None = None,
        description: str | None = None,
    ) -> IntentResult:
        params = {
            "amount": amount_cents,
            "currency": currency,
            "payment_method_types": ["card"],
            "metadata": metadata,
            "description": description,
        }
        if receipt_email:
            params["receipt_email"] = receipt_email
        try:
            intent = stripe.PaymentIntent.create(api_key=self._secret_key, **params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Stripe rejected payment intent: {exc}") from exc
        return _from_stripe(intent)

    def get_intent(self, intent_id: str) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self._secret_key)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Could not load payment intent {intent_id}: {exc}") from exc
        return _from_stripe(intent)

    def cancel_intent(self, intent_id: str) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, api_key=self._secret_key)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Could not cancel payment intent {intent_id}: {exc}") from exc
        return _from_stripe(intent)

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        if not self._webhook_secret:
            raise PaymentNotConfigured("STRIPE_WEBHOOK_SECRET must be set to accept webhooks")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except ValueError as exc:
            raise InvalidWebhook(f"Malformed webhook payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhook("Webhook signature verification failed") from exc
        obj = event.data.object
        return WebhookEvent(
            type=event.type,
            intent_id=getattr(obj, "id", None),
            status=getattr(obj, "status", None),
            metadata=_metadata(obj),
        )


def _metadata(obj) -> dict:
    metadata = getattr(obj, "metadata", None) or {}
    return {key: metadata[key] for key in metadata.keys()}


def _from_stripe(intent) -> IntentResult:
    return IntentResult(
        id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount=int(intent.amount),
        currency=intent.currency,
        metadata=_metadata(intent),
    )


class MockPaymentProvider:
    """Stands in for Stripe in local runs and tests."""

    publishable_key = "pk_test_mock"

    def __init__(self):
        self._intents: dict[str, IntentResult] = {}

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict,
        *,
        receipt_email: str | None = None,
        description: str | None = None,
    ) -> IntentResult:
        intent_id = f"pi_mock_{uuid.uuid4().hex[:16]}"
        intent = IntentResult(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
            status="requires_payment_method",
            amount=amount_cents,
            currency=currency,
            metadata=dict(metadata),
        )
        self._intents[intent_id] = intent
        return intent

    def get_intent(self, intent_id: str) -> IntentResult:
        try:
            return self._intents[intent_id]
        except KeyError:
            raise PaymentProviderError(f"Unknown payment intent {intent_id}") from None

    def cancel_intent(self, intent_id: str) -> IntentResult:
        return self._set_status(intent_id, "canceled")

    def mark_succeeded(self, intent_id: str) -> IntentResult:
        return self._set_status(intent_id, "succeeded")

    def mark_processing(self, intent_id: str) -> IntentResult:
        return self._set_status(intent_id, "processing")

    def mark_failed(self, intent_id: str) -> IntentResult:
        return self._set_status(intent_id, "requires_payment_method")

    def parse_webhook(self, payload: bytes, signature: str | None) -> WebhookEvent:
        try:
            event = json.loads(payload)
            obj = event["data"]["object"]
            return WebhookEvent(
                type=event["type"],
                intent_id=obj.get("id"),
                status=obj.get("status"),
                metadata=dict(obj.get("metadata") or {}),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise InvalidWebhook(f"Malformed webhook payload: {exc}") from exc

    def _set_status(self, intent_id: str, status: str) -> IntentResult:
        intent = replace(self.get_intent(intent_id), status=status)
        self._intents[intent_id] = intent
        return intent
