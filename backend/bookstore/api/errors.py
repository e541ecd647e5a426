from fastapi import HTTPException

from bookstore.services.errors import ServiceException

STATUS_BY_CODE = {
    "INSUFFICIENT_STOCK": 409,
    "VARIANT_NOT_FOUND": 404,
    "RESERVATION_LOCK_TIMEOUT": 503,
    "INVALID_QUANTITY": 400,
    "CART_NOT_FOUND": 404,
    "CART_ITEM_NOT_FOUND": 404,
    "CART_EMPTY": 409,
    "MISSING_SESSION_ID": 400,
    "INVALID_SESSION_ID": 400,
    "MISSING_USER_ID": 401,
    "UNKNOWN_PAYMENT_PROVIDER": 400,
    "PAYMENT_INITIATION_FAILED": 502,
    "IDEMPOTENCY_KEY_REUSED": 409,
    "ORDER_NOT_FOUND": 404,
    "ORDER_NOT_PAYABLE": 409,
    "WEBHOOK_SIGNATURE_INVALID": 400,
    "TRANSACTION_NOT_FOUND": 404,
    "TRANSACTION_NOT_REFUNDABLE": 409,
    "REFUND_FAILED": 502,
}


def http_error(exc: ServiceException, status_code: int = None) -> HTTPException:
    """Structured ``detail`` ({code, message, details}) for a service error."""
    return HTTPException(
        status_code=status_code or STATUS_BY_CODE.get(exc.code, 400),
        detail=exc.to_dict(),
    )
