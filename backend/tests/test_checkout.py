from datetime import timedelta

from conftest import GUEST_SESSION, SHIPPING

from bookstore.config import settings
from bookstore.models.cart import Cart, CartStatus
from bookstore.models.order import Order, PaymentStatus
from bookstore.models.transaction import Transaction, TransactionStatus
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.checkout_service import CheckoutService
from bookstore.services.expiry_service import ReservationExpiryService
from bookstore.utils.transactions import utcnow

USER = {"X-User-Id": "42"}


def _checkout(client, headers=USER, key=None, path="/api/cart/checkout", **extra):
    h = dict(headers)
    if key:
        h["Idempotency-Key"] = key
    return client.post(path, json={"shipping_address": SHIPPING, **extra}, headers=h)


def test_checkout_creates_order_and_keeps_reservation(client, db, make_variant, variant_state):
    vid = make_variant(stock=10, price_cents=45000)
    ebook = make_variant(stock=0, format="ebook", price_cents=19900)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 2}, headers=USER)
    client.post("/api/cart/items", json={"variant_id": ebook, "qty": 1}, headers=USER)

    r = _checkout(client)
    assert r.status_code == 200
    body = r.json()
    assert body["provider"] == "mock"
    assert body["amount_cents"] == 2 * 45000 + 19900
    assert body["payment_url"].endswith(body["transaction_ref"])
    assert body["action_type"] == "REDIRECT"
    assert body["expires_at"]

    # stock untouched until payment is confirmed
    assert variant_state(vid) == (10, 2)

    db.expire_all()
    order = db.get(Order, body["order_id"])
    assert order.payment_status == PaymentStatus.PENDING
    assert order.shipping_address["city"] == "Bengaluru"
    assert db.get(Cart, order.cart_id).status == CartStatus.CHECKOUT
    txn = db.get(Transaction, body["transaction_id"])
    assert txn.status == TransactionStatus.PENDING
    assert txn.gateway_ref_id == body["transaction_ref"]

    # the cart is no longer the active one
    assert client.get("/api/cart", headers=USER).json()["cart_id"] is None


def test_guest_checkout(client, make_variant):
    vid = make_variant(stock=3)
    guest = {"X-Session-Id": GUEST_SESSION}
    client.post("/api/guest-cart/items", json={"variant_id": vid, "qty": 1}, headers=guest)
    r = _checkout(client, headers=guest, path="/api/guest-cart/checkout")
    assert r.status_code == 200

    order = client.get(f"/api/orders/{r.json()['order_id']}", headers=guest)
    assert order.status_code == 200
    assert order.json()["payment_status"] == "PENDING"
    assert order.json()["items"][0]["quantity"] == 1


def test_checkout_re_reserves_lapsed_lines(client, db, make_variant, variant_state):
    vid = make_variant(stock=4)
    CartService(db).add_item(CartIdentity.for_user(42), vid, 3)
    later = utcnow() + timedelta(seconds=settings.RESERVATION_TTL_SECONDS + 1)
    ReservationExpiryService(db).expire_idle_reservations(now=later)
    assert variant_state(vid) == (4, 0)

    r = _checkout(client)
    assert r.status_code == 200
    assert variant_state(vid) == (4, 3)


def test_checkout_is_all_or_nothing(client, db, make_variant, variant_state):
    plenty = make_variant(stock=10)
    scarce = make_variant(stock=2)
    carts = CartService(db)
    carts.add_item(CartIdentity.for_user(42), plenty, 2)
    carts.add_item(CartIdentity.for_user(42), scarce, 2)
    later = utcnow() + timedelta(seconds=settings.RESERVATION_TTL_SECONDS + 1)
    ReservationExpiryService(db).expire_idle_reservations(now=later)
    # another shopper takes the scarce copies while the first cart sat idle
    carts.add_item(CartIdentity.for_user(7), scarce, 1)

    r = _checkout(client)
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_STOCK"
    assert detail["details"] == {"variant_id": scarce, "requested": 2, "available": 1}

    db.expire_all()
    assert db.query(Order).count() == 0
    assert variant_state(plenty) == (10, 0)
    assert variant_state(scarce) == (2, 1)
    cart = db.query(Cart).filter(Cart.user_id == 42).one()
    assert cart.status == CartStatus.ACTIVE


def test_idempotent_checkout_replays_the_first_response(client, db, make_variant, mock_provider):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)

    first = _checkout(client, key="chk-1")
    second = _checkout(client, key="chk-1")
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == first.json()

    db.expire_all()
    assert db.query(Order).count() == 1
    assert db.query(Transaction).count() == 1
    assert len([c for c in mock_provider.calls if c["method"] == "initiate_payment"]) == 1


def test_idempotency_key_of_another_shopper_is_rejected(client, make_variant):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers={"X-User-Id": "7"})
    assert _checkout(client, key="shared").status_code == 200

    r = _checkout(client, headers={"X-User-Id": "7"}, key="shared")
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "IDEMPOTENCY_KEY_REUSED"


def test_initiation_failure_keeps_order_payable(client, db, make_variant, mock_provider, variant_state):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 2}, headers=USER)
    mock_provider.configure(fail_initiation=True)

    r = _checkout(client, key="chk-fail")
    assert r.status_code == 502
    detail = r.json()["detail"]
    assert detail["code"] == "PAYMENT_INITIATION_FAILED"
    order_id = detail["details"]["order_id"]

    db.expire_all()
    order = db.get(Order, order_id)
    assert order.payment_status == PaymentStatus.PENDING
    txn = db.query(Transaction).filter(Transaction.order_id == order_id).one()
    assert txn.status == TransactionStatus.PENDING
    assert txn.failure_reason == "Simulated gateway outage"
    assert variant_state(vid) == (5, 2)

    # gateway back up: retrying with the same key drives the same attempt
    mock_provider.configure(fail_initiation=False)
    r = _checkout(client, key="chk-fail")
    assert r.status_code == 200
    assert r.json()["order_id"] == order_id
    assert r.json()["transaction_id"] == txn.id


def test_retry_payment_starts_a_new_attempt(client, db, make_variant, mock_provider):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    mock_provider.configure(fail_initiation=True)
    order_id = _checkout(client).json()["detail"]["details"]["order_id"]
    mock_provider.configure(fail_initiation=False)

    r = client.post(f"/api/orders/{order_id}/retry-payment", json={}, headers=USER)
    assert r.status_code == 200
    assert r.json()["order_id"] == order_id

    order = client.get(f"/api/orders/{order_id}", headers=USER).json()
    assert len(order["transactions"]) == 2

    # not visible to anyone else
    r = client.post(f"/api/orders/{order_id}/retry-payment", json={}, headers={"X-User-Id": "7"})
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "ORDER_NOT_FOUND"


def test_retry_payment_on_paid_order_is_409(client, make_variant, mock_provider):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    body = _checkout(client).json()
    mock_provider.set_status(body["transaction_ref"], "SUCCESS")
    headers, raw = mock_provider.build_webhook(body["transaction_ref"], "SUCCESS")
    assert client.post("/api/payments/webhook/mock", content=raw, headers=headers).status_code == 200

    r = client.post(f"/api/orders/{body['order_id']}/retry-payment", json={}, headers=USER)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "ORDER_NOT_PAYABLE"


def test_checkout_error_mapping(client, make_variant):
    r = _checkout(client)
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "CART_NOT_FOUND"

    vid = make_variant(stock=5)
    item_id = client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER).json()["items"][0]["id"]
    client.delete(f"/api/cart/items/{item_id}", headers=USER)
    r = _checkout(client)
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "CART_EMPTY"

    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    r = _checkout(client, payment_provider="paypal")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "UNKNOWN_PAYMENT_PROVIDER"


def test_checkout_requires_shipping_address(client, make_variant):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    r = client.post("/api/cart/checkout", json={}, headers=USER)
    assert r.status_code == 422


def test_same_key_checkout_that_loses_the_cart_replays_the_winner(db, providers, make_variant, monkeypatch):
    vid = make_variant(stock=5)
    buyer = CartIdentity.for_user(42)
    CartService(db).add_item(buyer, vid, 1)

    # the winning request has committed its order but not yet reached the gateway
    order, txn = CheckoutService(db, providers)._materialize_order(
        buyer, SHIPPING, providers["mock"], "chk-race"
    )
    assert txn.idempotency_key == "chk-race"

    real_replay = CheckoutService._replay
    lookups = []

    def replay_seen_before_the_commit(self, identity, key):
        lookups.append(key)
        if len(lookups) == 1:
            return None
        return real_replay(self, identity, key)

    monkeypatch.setattr(CheckoutService, "_replay", replay_seen_before_the_commit)
    body = CheckoutService(db, providers).checkout(buyer, shipping_address=SHIPPING, idempotency_key="chk-race")

    assert len(lookups) == 2
    assert body["order_id"] == order.id
    assert body["transaction_id"] == txn.id
    db.expire_all()
    assert db.query(Order).count() == 1
    assert db.query(Transaction).count() == 1
