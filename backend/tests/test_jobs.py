import json
from datetime import timedelta
from threading import Event, Thread

from conftest import SHIPPING

from bookstore import jobs
from bookstore.config import settings
from bookstore.models.cart import Cart, CartStatus
from bookstore.models.cart_history import CartHistory
from bookstore.models.cart_item import CartItem
from bookstore.models.order import Order
from bookstore.models.variant import Variant
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.checkout_service import CheckoutService
from bookstore.services.payment_reconciliation_service import PaymentReconciliationService
from bookstore.utils.transactions import utcnow
from scripts.seed_variants import seed_from_file


def test_jobs_run_with_their_own_session(db, providers, mock_provider, make_variant, variant_state):
    idle = make_variant(stock=5)
    paid = make_variant(stock=5)
    CartService(db).add_item(CartIdentity.for_user(1), idle, 2)
    CartService(db).add_item(CartIdentity.for_user(2), paid, 1)
    body = CheckoutService(db, providers).checkout(CartIdentity.for_user(2), shipping_address=SHIPPING)
    mock_provider.set_status(body["transaction_ref"], "SUCCESS")

    later = utcnow() + timedelta(seconds=settings.RESERVATION_TTL_SECONDS + settings.RECONCILIATION_GRACE_SECONDS)
    assert jobs.run_payment_reconciliation(providers, now=later)["settled"] == 1
    assert jobs.run_reservation_expiry(now=later)["units"] == 2
    assert jobs.run_order_timeout(now=later)["orders"] == 0

    assert variant_state(idle) == (5, 0)
    assert variant_state(paid) == (4, 0)


def test_job_is_skipped_while_another_process_runs_it():
    # held from another thread the way a second worker process would hold it
    lock = jobs._job_lock("reservation_expiry")

    acquired, done = Event(), Event()

    def holder():
        with lock:
            acquired.set()
            done.wait(5)

    t = Thread(target=holder)
    t.start()
    try:
        acquired.wait(5)
        assert jobs.run_reservation_expiry() is None
    finally:
        done.set()
        t.join()
    assert jobs.run_reservation_expiry() == {"carts": 0, "items": 0, "units": 0, "errors": 0}


def test_scheduler_wiring(providers):
    scheduler = jobs.build_scheduler(providers)
    ids = {job.id for job in scheduler.get_jobs()}
    assert ids == {"expire_reservations", "cancel_stale_orders", "reconcile_payments", "archive_closed_carts"}


def test_seed_variants(tmp_path, db):
    path = tmp_path / "catalogue.json"
    path.write_text(
        json.dumps(
            {
                "items": [
                    {"sku": "BK-1", "title": "Malgudi Days", "format": "hardcover", "price": "499.00", "stock": 4},
                    {"sku": "BK-2", "name": "Wings of Fire", "format": "ebook", "price_cents": 19900},
                    {"title": "no sku, skipped"},
                ]
            }
        )
    )
    assert seed_from_file(str(path)) == 2

    v = db.query(Variant).filter(Variant.sku == "BK-1").one()
    assert (v.title, v.price_cents, v.stock_quantity, v.is_physical) == ("Malgudi Days", 49900, 4, True)
    ebook = db.query(Variant).filter(Variant.sku == "BK-2").one()
    assert ebook.title == "Wings of Fire"
    assert ebook.is_physical is False


def test_closed_carts_move_to_history(db, providers, make_variant, variant_state):
    vid = make_variant(stock=5, price_cents=49900)
    buyer = CartIdentity.for_user(1)
    CartService(db).add_item(buyer, vid, 2)
    body = CheckoutService(db, providers).checkout(buyer, shipping_address=SHIPPING)
    PaymentReconciliationService(db, providers).apply_outcome(body["transaction_id"], "SUCCESS")
    CartService(db).add_item(CartIdentity.for_user(2), vid, 1)

    # still inside the retention window
    assert jobs.run_cart_archive()["carts"] == 0

    later = utcnow() + timedelta(seconds=settings.CART_ARCHIVE_AFTER_SECONDS + 1)
    assert jobs.run_cart_archive(now=later) == {"carts": 1, "released_units": 0, "errors": 0}

    db.expire_all()
    cart_id = db.get(Order, body["order_id"]).cart_id
    assert db.get(Cart, cart_id) is None
    assert db.query(CartItem).filter(CartItem.cart_id == cart_id).count() == 0
    history = db.get(CartHistory, cart_id)
    assert (history.status, history.items_count, history.total_cents) == ("COMPLETED", 1, 2 * 49900)
    assert history.items_data[0]["qty"] == 2
    # the open cart and its hold are untouched
    assert db.query(Cart).filter(Cart.status == CartStatus.ACTIVE).count() == 1
    assert variant_state(vid) == (3, 1)


def test_archiving_an_abandoned_cart_drops_a_leftover_hold(db, make_variant, variant_state):
    vid = make_variant(stock=5)
    CartService(db).add_item(CartIdentity.for_user(3), vid, 2)
    cart = db.query(Cart).one()
    cart.status = CartStatus.ABANDONED
    db.commit()

    later = utcnow() + timedelta(seconds=settings.CART_ARCHIVE_AFTER_SECONDS + 1)
    assert jobs.run_cart_archive(now=later) == {"carts": 1, "released_units": 2, "errors": 0}
    assert variant_state(vid) == (5, 0)
