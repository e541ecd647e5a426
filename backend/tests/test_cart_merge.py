from datetime import timedelta

from conftest import GUEST_SESSION

from bookstore.config import settings
from bookstore.models.cart import Cart
from bookstore.models.variant import Variant
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.expiry_service import ReservationExpiryService
from bookstore.utils.transactions import unit_of_work, utcnow

GUEST = CartIdentity.for_guest(GUEST_SESSION)


def _merge(client, user_id=42, session_id=GUEST_SESSION):
    r = client.post("/api/cart/merge", json={"session_id": session_id}, headers={"X-User-Id": str(user_id)})
    assert r.status_code == 200
    return r.json()


def test_merge_moves_lines_and_holds(client, db, make_variant, variant_state):
    a = make_variant(stock=5)
    b = make_variant(stock=5)
    carts = CartService(db)
    carts.add_item(GUEST, a, 2)
    carts.add_item(GUEST, b, 1)
    carts.add_item(CartIdentity.for_user(42), a, 1)

    body = _merge(client)
    assert body["conflicts"] == []
    assert body["merged"] == {"item_count": 2, "total_added": 3}
    lines = {it["variant_id"]: it for it in body["cart"]["items"]}
    assert lines[a]["qty"] == 3
    assert lines[b]["qty"] == 1
    # holds moved, not duplicated
    assert variant_state(a) == (5, 3)
    assert variant_state(b) == (5, 1)

    db.expire_all()
    assert db.query(Cart).filter(Cart.session_id == GUEST_SESSION).count() == 0


def test_merge_succeeds_when_guest_holds_the_last_units(client, db, make_variant, variant_state):
    vid = make_variant(stock=2)
    CartService(db).add_item(GUEST, vid, 2)

    body = _merge(client)
    assert body["conflicts"] == []
    assert body["cart"]["items"][0]["qty"] == 2
    assert variant_state(vid) == (2, 2)


def test_merge_reports_out_of_stock_for_lapsed_lines(client, db, make_variant, variant_state):
    vid = make_variant(stock=2)
    CartService(db).add_item(GUEST, vid, 2)
    later = utcnow() + timedelta(seconds=settings.RESERVATION_TTL_SECONDS + 5)
    assert ReservationExpiryService(db).expire_idle_reservations(now=later)["units"] == 2
    # someone else buys them in the meantime
    CartService(db).add_item(CartIdentity.for_user(7), vid, 2)

    body = _merge(client)
    assert body["merged"]["item_count"] == 0
    conflict = body["conflicts"][0]
    assert conflict["variant_id"] == vid
    assert conflict["reason"] == "out_of_stock"
    assert conflict["available"] == 0
    assert variant_state(vid) == (2, 2)


def test_merge_flags_price_changes(client, db, make_variant):
    vid = make_variant(stock=5, price_cents=30000)
    CartService(db).add_item(GUEST, vid, 1)
    with unit_of_work(db):
        db.get(Variant, vid).price_cents = 32000

    body = _merge(client)
    conflict = body["conflicts"][0]
    assert conflict["reason"] == "price_changed"
    assert conflict["old_price_cents"] == 30000
    assert conflict["new_price_cents"] == 32000
    # merged at the current price
    assert body["cart"]["items"][0]["unit_price_cents"] == 32000


def test_second_merge_is_a_no_op(client, db, make_variant, variant_state):
    vid = make_variant(stock=5)
    CartService(db).add_item(GUEST, vid, 2)

    _merge(client)
    body = _merge(client)
    assert body["merged"] == {"item_count": 0, "total_added": 0}
    assert body["cart"]["items"][0]["qty"] == 2
    assert variant_state(vid) == (5, 2)


def test_merge_requires_a_valid_session_id(client):
    r = client.post("/api/cart/merge", json={"session_id": "abc"}, headers={"X-User-Id": "42"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_SESSION_ID"
