from __future__ import annotations


class MarketplaceError(Exception):
    """Operational error carrying a stable machine-readable code.

    Consumers match on ``code``; ``str(exc)`` is the human message and may change.
    """

    code = "MARKETPLACE_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        is_operational: bool = True,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.is_operational = is_operational

    def to_dict(self) -> dict[str, str]:
        return {"detail": self.message, "error": self.code}


class ValidationFailed(MarketplaceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotAuthorized(MarketplaceError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    status_code = 404


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_ref: str):
        super().__init__(f"order {order_ref} not found")


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        super().__init__(f"product {product_id} not found")


class VendorOrderNotFound(NotFound):
    code = "VENDOR_ORDER_NOT_FOUND"


class ReturnRequestNotFound(NotFound):
    code = "RETURN_REQUEST_NOT_FOUND"


class StateConflict(MarketplaceError):
    code = "STATE_CONFLICT"
    status_code = 400


class InvalidStatusTransition(StateConflict):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(f"cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class ProductNotAvailable(StateConflict):
    code = "PRODUCT_NOT_AVAILABLE"


class InsufficientQuantity(StateConflict):
    code = "INSUFFICIENT_QUANTITY"


class OrderCannotBeCancelled(StateConflict):
    code = "ORDER_CANNOT_BE_CANCELLED"


class OrderCannotBeReturned(StateConflict):
    code = "ORDER_CANNOT_BE_RETURNED"


class ReturnQuantityExceeded(StateConflict):
    code = "RETURN_QUANTITY_EXCEEDED"


class InvalidReturnTransition(StateConflict):
    code = "INVALID_RETURN_TRANSITION"


class OrderNotFulfillable(StateConflict):
    code = "ORDER_NOT_FULFILLABLE"


class PaymentNotCompleted(StateConflict):
    code = "PAYMENT_NOT_COMPLETED"


class RefundExceedsPayment(StateConflict):
    code = "REFUND_EXCEEDS_PAYMENT"


class RefundNotSettled(StateConflict):
    code = "REFUND_NOT_SETTLED"


class IdempotencyKeyReused(StateConflict):
    code = "IDEMPOTENCY_KEY_REUSED"


class ConcurrentUpdate(MarketplaceError):
    code = "ORDER_CONFLICT"
    status_code = 409
