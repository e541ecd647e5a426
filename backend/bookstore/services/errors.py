from typing import Any, Dict, Optional


class ServiceException(Exception):
    """Base for every business error raised by the services.

    ``code`` is a stable machine-readable identifier, ``details`` carries the
    structured context the client needs to react (e.g. requested/available).
    """

    code = "SERVICE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: str = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# --- inventory ---


class InventoryException(ServiceException):
    code = "INVENTORY_ERROR"


class InsufficientStock(InventoryException):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, variant_id: int, requested: int, available: int):
        super().__init__(
            f"Not enough stock for variant {variant_id}. Available={available}",
            {"variant_id": variant_id, "requested": requested, "available": available},
        )
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class VariantNotFound(InventoryException):
    code = "VARIANT_NOT_FOUND"

    def __init__(self, variant_id: int):
        super().__init__(f"Variant {variant_id} not found", {"variant_id": variant_id})


class ReservationLockTimeout(InventoryException):
    code = "RESERVATION_LOCK_TIMEOUT"

    def __init__(self, variant_id: int):
        super().__init__(
            "Could not acquire reservation lock; try again", {"variant_id": variant_id}
        )


class InvalidQuantity(InventoryException):
    code = "INVALID_QUANTITY"

    def __init__(self, qty):
        super().__init__("Quantity must be positive", {"qty": qty})


# --- cart ---


class CartException(ServiceException):
    code = "CART_ERROR"


class CartNotFound(CartException):
    code = "CART_NOT_FOUND"

    def __init__(self):
        super().__init__("No active cart found")


class CartEmpty(CartException):
    code = "CART_EMPTY"

    def __init__(self, cart_id: int):
        super().__init__("Cart is empty", {"cart_id": cart_id})


class CartItemNotFound(CartException):
    code = "CART_ITEM_NOT_FOUND"

    def __init__(self, item_id: int):
        super().__init__(f"Cart item {item_id} not found", {"item_id": item_id})


# --- checkout / payments ---


class CheckoutException(ServiceException):
    code = "CHECKOUT_ERROR"


class UnknownPaymentProvider(CheckoutException):
    code = "UNKNOWN_PAYMENT_PROVIDER"

    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider: {provider}", {"provider": provider})


class PaymentInitiationFailed(CheckoutException):
    """Order and transaction are kept PENDING; the client may retry payment."""

    code = "PAYMENT_INITIATION_FAILED"

    def __init__(self, order_id: int, transaction_id: str, reason: str):
        super().__init__(
            "Payment could not be initiated; the order is kept and payment can be retried",
            {"order_id": order_id, "transaction_id": transaction_id, "reason": reason},
        )


class IdempotencyKeyReused(CheckoutException):
    code = "IDEMPOTENCY_KEY_REUSED"

    def __init__(self, key: str):
        super().__init__(
            "Idempotency key belongs to a payment attempt that can no longer be replayed",
            {"idempotency_key": key},
        )


class OrderNotFound(CheckoutException):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})


class OrderNotPayable(CheckoutException):
    code = "ORDER_NOT_PAYABLE"

    def __init__(self, order_id: int, payment_status: str):
        super().__init__(
            f"Order {order_id} is {payment_status} and cannot be paid",
            {"order_id": order_id, "payment_status": payment_status},
        )


class WebhookSignatureInvalid(ServiceException):
    code = "WEBHOOK_SIGNATURE_INVALID"

    def __init__(self, provider: str):
        super().__init__("Invalid webhook signature", {"provider": provider})


class TransactionNotFound(ServiceException):
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        super().__init__(
            f"Transaction {transaction_id} not found", {"transaction_id": transaction_id}
        )


class TransactionNotRefundable(ServiceException):
    code = "TRANSACTION_NOT_REFUNDABLE"

    def __init__(self, transaction_id: str, status: str, message: str = None, **details):
        super().__init__(
            message or "Only successful transactions can be refunded",
            {"transaction_id": transaction_id, "status": status, **details},
        )


class RefundFailed(ServiceException):
    code = "REFUND_FAILED"

    def __init__(self, transaction_id: str, reason: str):
        super().__init__(
            "The payment provider rejected the refund",
            {"transaction_id": transaction_id, "reason": reason},
        )
