from __future__ import annotations


class OrderServiceError(Exception):
    """Base class for every error the order core raises.

    ``kind`` is the machine-readable code returned to clients and
    ``status_code`` is the HTTP status the API layer maps it to.
    """

    kind = "error"
    status_code = 500
    retryable = False


class ValidationError(OrderServiceError):
    """Raised when request data is missing or malformed."""

    kind = "validation_error"
    status_code = 400


class PricingError(OrderServiceError):
    kind = "pricing_error"
    status_code = 409

    def __init__(self, message: str, item_id: str | None = None):
        super().__init__(message)
        self.item_id = item_id


class ItemNotFound(PricingError):
    kind = "item_not_found"
    status_code = 404


class ItemUnavailable(PricingError):
    kind = "item_unavailable"


class InvalidQuantity(PricingError):
    kind = "invalid_quantity"
    status_code = 400


class PriceOutOfBounds(PricingError):
    kind = "price_out_of_bounds"


class OrderNotFound(OrderServiceError):
    kind = "not_found"
    status_code = 404


class InvalidTransition(OrderServiceError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class TransitionConflict(InvalidTransition):
    """The order changed between reading its status and writing the new one."""

    kind = "conflict"


class PaymentError(OrderServiceError):
    kind = "payment_error"
    status_code = 402


class AmountMismatch(PaymentError):
    kind = "amount_mismatch"
    status_code = 409


class PaymentAlreadyInProgress(PaymentError):
    """The order already has a payment that succeeded or is still settling."""

    kind = "payment_in_progress"
    status_code = 409


class PaymentProviderError(PaymentError):
    kind = "payment_provider_error"
    status_code = 502
    retryable = True


class PaymentNotConfigured(PaymentError):
    kind = "payment_not_configured"
    status_code = 503


class InvalidWebhook(PaymentError):
    kind = "invalid_webhook"
    status_code = 400


class CatalogUnavailable(OrderServiceError):
    kind = "catalog_unavailable"
    status_code = 503
    retryable = True


class StoreUnavailable(OrderServiceError):
    kind = "store_unavailable"
    status_code = 503
    retryable = True
