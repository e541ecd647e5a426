from datetime import timedelta

import pytest
from conftest import SHIPPING

from bookstore.config import settings
from bookstore.models.order import Order, PaymentStatus
from bookstore.models.transaction import Transaction, TransactionStatus
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.checkout_service import CheckoutService
from bookstore.services.errors import PaymentInitiationFailed
from bookstore.services.payment_reconciliation_service import (
    ALREADY_PROCESSED,
    PROCESSED,
    PaymentReconciliationService,
)
from bookstore.utils.transactions import utcnow

USER = CartIdentity.for_user(42)


def _place_order(db, providers, variant_id, qty=1):
    CartService(db).add_item(USER, variant_id, qty)
    return CheckoutService(db, providers).checkout(USER, shipping_address=SHIPPING)


def _after_grace():
    return utcnow() + timedelta(seconds=settings.RECONCILIATION_GRACE_SECONDS + 1)


def test_poller_settles_a_missed_success(db, providers, mock_provider, make_variant, variant_state):
    vid = make_variant(stock=5)
    body = _place_order(db, providers, vid, qty=2)
    mock_provider.set_status(body["transaction_ref"], "SUCCESS")

    svc = PaymentReconciliationService(db, providers)
    # inside the grace window the webhook still gets its chance
    assert svc.reconcile_pending()["checked"] == 0

    summary = svc.reconcile_pending(now=_after_grace())
    assert summary["checked"] == 1
    assert summary["settled"] == 1
    assert variant_state(vid) == (3, 0)
    db.expire_all()
    assert db.get(Order, body["order_id"]).payment_status == PaymentStatus.PAID
    txn = db.get(Transaction, body["transaction_id"])
    assert txn.callback_payload["status"] == "SUCCESS"


def test_poller_leaves_pending_payments_alone(db, providers, make_variant, variant_state):
    vid = make_variant(stock=5)
    _place_order(db, providers, vid)
    summary = PaymentReconciliationService(db, providers).reconcile_pending(now=_after_grace())
    assert summary["pending"] == 1
    assert summary["settled"] == 0
    assert variant_state(vid) == (5, 1)


def test_poller_settles_failures(db, providers, mock_provider, make_variant):
    vid = make_variant(stock=5)
    body = _place_order(db, providers, vid)
    mock_provider.set_status(body["transaction_ref"], "FAILED")

    summary = PaymentReconciliationService(db, providers).reconcile_pending(now=_after_grace())
    assert summary["settled"] == 1
    db.expire_all()
    assert db.get(Order, body["order_id"]).payment_status == PaymentStatus.FAILED
    assert db.get(Transaction, body["transaction_id"]).status == TransactionStatus.FAILED


def test_poller_skips_amount_mismatch(db, providers, mock_provider, make_variant, variant_state):
    vid = make_variant(stock=5, price_cents=50000)
    body = _place_order(db, providers, vid)
    mock_provider.set_status(body["transaction_ref"], "SUCCESS", amount_cents=100)

    summary = PaymentReconciliationService(db, providers).reconcile_pending(now=_after_grace())
    assert summary["skipped"] == 1
    assert summary["settled"] == 0
    db.expire_all()
    assert db.get(Transaction, body["transaction_id"]).status == TransactionStatus.PENDING
    assert variant_state(vid) == (5, 1)


def test_poller_skips_attempts_that_never_reached_the_gateway(db, providers, mock_provider, make_variant):
    vid = make_variant(stock=5)
    mock_provider.configure(fail_initiation=True)
    with pytest.raises(PaymentInitiationFailed):
        _place_order(db, providers, vid)

    summary = PaymentReconciliationService(db, providers).reconcile_pending(now=_after_grace())
    assert summary == {"checked": 1, "settled": 0, "pending": 0, "skipped": 1, "errors": 0}
    assert not [c for c in mock_provider.calls if c["method"] == "get_status"]


def test_webhook_and_poller_race_settles_once(db, providers, mock_provider, make_variant, variant_state):
    vid = make_variant(stock=5)
    body = _place_order(db, providers, vid, qty=2)
    svc = PaymentReconciliationService(db, providers)

    assert svc.apply_outcome(body["transaction_id"], "SUCCESS", {"source": "webhook"}) == PROCESSED
    assert svc.apply_outcome(body["transaction_id"], "SUCCESS", {"source": "poller"}) == ALREADY_PROCESSED
    assert variant_state(vid) == (3, 0)

    # a stray failure after success changes nothing
    assert svc.apply_outcome(body["transaction_id"], "FAILED") == ALREADY_PROCESSED
    db.expire_all()
    assert db.get(Order, body["order_id"]).payment_status == PaymentStatus.PAID


def test_poller_continues_after_a_provider_error(db, providers, mock_provider, make_variant):
    a = make_variant(stock=5)
    first = _place_order(db, providers, a)
    # a second shopper's order
    CartService(db).add_item(CartIdentity.for_user(7), a, 1)
    second = CheckoutService(db, providers).checkout(CartIdentity.for_user(7), shipping_address=SHIPPING)
    mock_provider.payments.pop(first["transaction_ref"])
    mock_provider.set_status(second["transaction_ref"], "SUCCESS")

    summary = PaymentReconciliationService(db, providers).reconcile_pending(now=_after_grace())
    assert summary["errors"] == 1
    assert summary["settled"] == 1
