"""Domain errors for the orders engine.

Every error carries a stable ``code`` (also its ``str()``), a human
message and the HTTP status the views translate it to. They subclass
``ValueError`` so callers that only care about "the domain refused" can
keep catching ``ValueError``.
"""

from typing import Any, Optional


class OrderError(ValueError):
    """Base class for all domain errors raised by the orders engine.

    Attributes:
        code: Stable machine-readable error code.
        message: Human readable explanation.
        http_status: Status code used at the HTTP boundary.
        details: Optional JSON-serializable extra context.
    """

    code = "ORDER_ERROR"
    http_status = 400

    def __init__(self, message: str = "", details: Optional[dict[str, Any]] = None, code: str | None = None):
        super().__init__(code or self.code)
        if code:
            self.code = code
        self.message = message or self.code
        self.details = details or {}

    def __str__(self) -> str:
        return self.code

    def as_dict(self) -> dict:
        body = {"detail": self.code, "message": self.message}
        body.update(self.details)
        return body


class ValidationFailed(OrderError):
    code = "VALIDATION_ERROR"
    http_status = 400


class EmptyCart(ValidationFailed):
    code = "EMPTY_CART"


class InsufficientStock(ValidationFailed):
    code = "INSUFFICIENT_STOCK"
    http_status = 422


class ProductUnavailable(ValidationFailed):
    code = "PRODUCT_INACTIVE"
    http_status = 422


class InvalidTransition(ValidationFailed):
    code = "INVALID_STATUS_TRANSITION"
    http_status = 409


class AmountMismatch(ValidationFailed):
    code = "PAYMENT_AMOUNT_MISMATCH"
    http_status = 422


class NotFound(OrderError):
    code = "RESOURCE_NOT_FOUND"
    http_status = 404


class StagingExpired(NotFound):
    """The pending order intent is gone (expired, consumed or never staged)."""


class Forbidden(OrderError):
    code = "FORBIDDEN"
    http_status = 403


class TerminalState(OrderError):
    code = "ORDER_CANNOT_BE_CANCELLED"
    http_status = 409


class PaymentFailed(OrderError):
    code = "PAYMENT_FAILED"
    http_status = 402


class ExternalServiceError(OrderError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 503


class StagingUnavailable(ExternalServiceError):
    code = "STAGING_UNAVAILABLE"


class IdempotencyConflict(OrderError):
    code = "IDEMPOTENCY_CONFLICT"
    http_status = 409
