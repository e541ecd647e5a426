import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from bookstore.config import settings
from bookstore.models.cart import CartStatus
from bookstore.repositories.cart_repo import CartRepository
from bookstore.services.inventory_service import InventoryService
from bookstore.utils.transactions import as_utc, unit_of_work, utcnow

log = logging.getLogger(__name__)


class CartArchiveService:
    """
    Moves COMPLETED and ABANDONED carts into cart_history once they have
    been closed for CART_ARCHIVE_AFTER_SECONDS, one cart per transaction.
    """

    def __init__(self, db: Session):
        self.db = db
        self.cart_repo = CartRepository(db)
        self.inventory = InventoryService(db)

    def archive_closed_carts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.CART_ARCHIVE_AFTER_SECONDS)
        summary = {"carts": 0, "released_units": 0, "errors": 0}

        cart_ids = [c.id for c in self.cart_repo.list_closed_older_than(cutoff, settings.SWEEP_BATCH_SIZE)]
        for cart_id in cart_ids:
            try:
                released = self._archive(cart_id, cutoff)
            except Exception:
                log.exception("archiving cart %s failed", cart_id)
                summary["errors"] += 1
                continue
            if released is None:
                continue
            summary["carts"] += 1
            summary["released_units"] += released

        if summary["carts"] or summary["errors"]:
            log.info("cart archive: %s", summary)
        return summary

    def _archive(self, cart_id: int, cutoff: datetime) -> Optional[int]:
        variant_ids = [it.variant_id for it in self.cart_repo.get_items(cart_id) if it.is_stock_reserved]
        with self.inventory.hold(variant_ids), unit_of_work(self.db):
            cart = self.cart_repo.get(cart_id, lock=True)
            if (
                cart is None
                or cart.status not in (CartStatus.COMPLETED, CartStatus.ABANDONED)
                or as_utc(cart.updated_at) >= cutoff
            ):
                return None
            items = self.cart_repo.get_items(cart_id, lock=True)
            released = 0
            for item in items:
                # closed carts normally hold nothing; never lose a stray hold
                if item.is_stock_reserved and item.variant_id in variant_ids:
                    self.inventory.release(self.inventory.lock_variant(item.variant_id), item.qty)
                    item.is_stock_reserved = False
                    released += item.qty
            status = cart.status.value
            self.cart_repo.archive(cart, items)
        log.debug("cart %s archived (%s)", cart_id, status)
        return released
