import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from bookstore.adapters.payment_provider import PaymentProvider
from bookstore.api.deps import (
    get_guest_identity,
    get_order_identity,
    get_payment_providers,
    get_user_identity,
)
from bookstore.api.errors import http_error
from bookstore.db import get_db
from bookstore.schemas.checkout_schema import CheckoutIn, RetryPaymentIn
from bookstore.services.cart_service import CartIdentity
from bookstore.services.checkout_service import CheckoutService
from bookstore.services.errors import ServiceException

log = logging.getLogger(__name__)

router = APIRouter(tags=["checkout"])


def _checkout(
    identity: CartIdentity,
    payload: CheckoutIn,
    idempotency_key: Optional[str],
    db: Session,
    providers: Dict[str, PaymentProvider],
):
    svc = CheckoutService(db, providers)
    try:
        return svc.checkout(
            identity,
            provider_name=payload.payment_provider,
            shipping_address=payload.shipping_address.model_dump(),
            idempotency_key=idempotency_key,
        )
    except ServiceException as e:
        raise http_error(e)


@router.post("/api/cart/checkout", summary="Check out the user's cart")
def checkout(
    payload: CheckoutIn,
    identity: CartIdentity = Depends(get_user_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    return _checkout(identity, payload, idempotency_key, db, providers)


@router.post("/api/guest-cart/checkout", summary="Check out the guest cart")
def guest_checkout(
    payload: CheckoutIn,
    identity: CartIdentity = Depends(get_guest_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    return _checkout(identity, payload, idempotency_key, db, providers)


@router.get("/api/orders/{order_id}", summary="Order payment status (return page)")
def get_order(
    order_id: int,
    identity: CartIdentity = Depends(get_order_identity),
    db: Session = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    try:
        return CheckoutService(db, providers).get_order(identity, order_id)
    except ServiceException as e:
        raise http_error(e)


@router.post("/api/orders/{order_id}/retry-payment", summary="New payment attempt for a pending order")
def retry_payment(
    order_id: int,
    payload: RetryPaymentIn,
    identity: CartIdentity = Depends(get_order_identity),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    try:
        return CheckoutService(db, providers).retry_payment(
            identity, order_id, provider_name=payload.payment_provider, idempotency_key=idempotency_key
        )
    except ServiceException as e:
        raise http_error(e)
