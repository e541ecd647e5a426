import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from bookstore.config import settings
from bookstore.models.cart import CartStatus
from bookstore.models.order import PaymentStatus
from bookstore.models.transaction import TransactionStatus
from bookstore.repositories.cart_repo import CartRepository
from bookstore.repositories.order_repo import OrderRepository
from bookstore.repositories.transaction_repo import TransactionRepository
from bookstore.services.event_service import EventService
from bookstore.services.inventory_service import InventoryService
from bookstore.utils.transactions import as_utc, unit_of_work, utcnow

log = logging.getLogger(__name__)


class ReservationExpiryService:
    """
    Releases the holds of ACTIVE carts idle past the reservation TTL.

    The cart stays ACTIVE with its lines flagged unreserved; checkout
    re-reserves them just in time.
    """

    def __init__(self, db: Session):
        self.db = db
        self.cart_repo = CartRepository(db)
        self.inventory = InventoryService(db)

    def expire_idle_reservations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.RESERVATION_TTL_SECONDS)
        summary = {"carts": 0, "items": 0, "units": 0, "errors": 0}

        cart_ids = [c.id for c in self.cart_repo.list_idle_active(cutoff, settings.SWEEP_BATCH_SIZE)]
        for cart_id in cart_ids:
            try:
                items, units = self._release_cart(cart_id, cutoff)
            except Exception:
                log.exception("reservation expiry failed for cart %s", cart_id)
                summary["errors"] += 1
                continue
            if items:
                summary["carts"] += 1
                summary["items"] += items
                summary["units"] += units

        if summary["carts"] or summary["errors"]:
            log.info("reservation expiry: %s", summary)
        return summary

    def _release_cart(self, cart_id: int, cutoff: datetime):
        variant_ids = [it.variant_id for it in self.cart_repo.get_items(cart_id) if it.is_stock_reserved]
        released_items = released_units = 0
        with self.inventory.hold(variant_ids), unit_of_work(self.db):
            cart = self.cart_repo.get(cart_id, lock=True)
            # touched or checked out since it was listed
            if cart is None or cart.status != CartStatus.ACTIVE or as_utc(cart.updated_at) >= cutoff:
                return 0, 0
            for item in self.cart_repo.get_items(cart_id, lock=True):
                if not item.is_stock_reserved or item.variant_id not in variant_ids:
                    continue
                variant = self.inventory.lock_variant(item.variant_id)
                self.inventory.release(variant, item.qty)
                item.is_stock_reserved = False
                released_items += 1
                released_units += item.qty
        return released_items, released_units


class OrderTimeoutService:
    """
    Compensates orders nobody paid for within the order TTL: pending
    attempts and the order become FAILED and the held stock is released.
    Stock is never decremented here.
    """

    def __init__(self, db: Session):
        self.db = db
        self.cart_repo = CartRepository(db)
        self.order_repo = OrderRepository(db)
        self.txn_repo = TransactionRepository(db)
        self.inventory = InventoryService(db)
        self.events = EventService(db)

    def cancel_stale_orders(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.ORDER_TIMEOUT_SECONDS)
        summary = {"orders": 0, "transactions": 0, "units": 0, "errors": 0}

        order_ids = [o.id for o in self.order_repo.list_pending_older_than(cutoff, settings.SWEEP_BATCH_SIZE)]
        for order_id in order_ids:
            try:
                result = self._expire_order(order_id)
            except Exception:
                log.exception("order timeout failed for order %s", order_id)
                summary["errors"] += 1
                continue
            if result is None:
                continue
            summary["orders"] += 1
            summary["transactions"] += result[0]
            summary["units"] += result[1]

        if summary["orders"] or summary["errors"]:
            log.info("order timeout: %s", summary)
        return summary

    def _expire_order(self, order_id: int):
        order = self.order_repo.get(order_id)
        cart_items = self.cart_repo.get_items(order.cart_id)
        with self.inventory.hold([it.variant_id for it in cart_items]), unit_of_work(self.db):
            order = self.order_repo.get(order_id, lock=True)
            # settled by a webhook since it was listed
            if order.payment_status != PaymentStatus.PENDING:
                return None

            failed = 0
            for txn in self.txn_repo.list_for_order(order.id, TransactionStatus.PENDING, lock=True):
                txn.status = TransactionStatus.FAILED
                txn.failure_reason = "Payment window expired"
                failed += 1
            order.payment_status = PaymentStatus.FAILED

            units = 0
            cart = self.cart_repo.get(order.cart_id, lock=True)
            if cart is not None and cart.status == CartStatus.CHECKOUT:
                for item in self.cart_repo.get_items(cart.id, lock=True):
                    if item.is_stock_reserved:
                        variant = self.inventory.lock_variant(item.variant_id)
                        self.inventory.release(variant, item.qty)
                        item.is_stock_reserved = False
                        units += item.qty
                cart.status = CartStatus.ABANDONED

            self.events.emit(
                EventService.ORDER_EXPIRED,
                order.id,
                {"order_number": order.order_number, "failed_transactions": failed, "released_units": units},
            )
        log.info("order %s expired, released %s units", order.order_number, units)
        return failed, units
