import logging
from typing import Dict

from sqlalchemy.orm import Session

from bookstore.repositories.cart_repo import CartRepository
from bookstore.repositories.variant_repo import VariantRepository
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.errors import InsufficientStock
from bookstore.services.inventory_service import InventoryService
from bookstore.utils.transactions import unit_of_work

log = logging.getLogger(__name__)


class CartMergeService:
    """
    Moves a guest cart into the user's ACTIVE cart after login.

    Each line is reserved on the user side before the guest hold is
    released, with the guest hold counted as transferable, so a nearly
    sold-out variant is never rejected because of the shopper's own hold.
    The guest cart is deleted; a second call finds nothing to merge.
    """

    def __init__(self, db: Session):
        self.db = db
        self.cart_repo = CartRepository(db)
        self.variant_repo = VariantRepository(db)
        self.inventory = InventoryService(db)
        self.carts = CartService(db)

    def merge_guest_cart(self, user_id: int, session_id: str) -> Dict:
        user = CartIdentity.for_user(user_id)
        guest = self.cart_repo.find_active(session_id=session_id)
        if guest is None:
            return {
                "cart": self.carts.get_cart(user),
                "merged": {"item_count": 0, "total_added": 0},
                "conflicts": [],
            }

        guest_id = guest.id
        variant_ids = [it.variant_id for it in self.cart_repo.get_items(guest_id)]
        conflicts = []
        item_count = total_added = 0

        with self.inventory.hold(variant_ids), unit_of_work(self.db):
            cart = self.cart_repo.get_or_create_active(user_id=user_id)
            guest = self.cart_repo.get(guest_id, lock=True)
            guest_items = self.cart_repo.get_items(guest_id, lock=True) if guest else []

            for item in guest_items:
                if item.variant_id not in variant_ids:
                    # added after the variants were locked; leave it to be deleted unmerged
                    conflicts.append(self._conflict(item.variant_id, "unavailable", "Item changed during merge"))
                    continue
                variant = self.variant_repo.get_for_update(item.variant_id)
                if variant is None:
                    conflicts.append(
                        self._conflict(item.variant_id, "unavailable", "This product is no longer available")
                    )
                    continue

                held = item.qty if item.is_stock_reserved and variant.is_physical else 0
                existing = self.cart_repo.get_item_by_variant(cart.id, variant.id)
                if existing is not None and not existing.is_stock_reserved:
                    need = existing.qty + item.qty
                else:
                    need = item.qty

                try:
                    self.inventory.reserve(variant, need, transferable=held)
                except InsufficientStock as e:
                    self.inventory.release(variant, held)
                    conflicts.append(
                        self._conflict(
                            variant.id,
                            "out_of_stock",
                            f"Only {e.available} available",
                            requested=item.qty,
                            available=e.available,
                        )
                    )
                    continue
                self.inventory.release(variant, held)

                if item.unit_price_cents != variant.price_cents:
                    conflicts.append(
                        self._conflict(
                            variant.id,
                            "price_changed",
                            "Price has changed since the item was added",
                            old_price_cents=item.unit_price_cents,
                            new_price_cents=variant.price_cents,
                        )
                    )
                if existing is not None:
                    existing.qty += item.qty
                    existing.unit_price_cents = variant.price_cents
                    existing.is_stock_reserved = variant.is_physical
                else:
                    self.cart_repo.add_item(
                        cart.id,
                        variant.id,
                        item.qty,
                        unit_price_cents=variant.price_cents,
                        title=variant.title,
                        is_stock_reserved=variant.is_physical,
                    )
                item_count += 1
                total_added += item.qty

            if guest is not None:
                self.cart_repo.delete_cart(guest)
            self.cart_repo.touch(cart)

        log.info(
            "merged guest cart %s into user %s: %s items, %s conflicts",
            guest_id,
            user_id,
            item_count,
            len(conflicts),
        )
        return {
            "cart": self.carts.get_cart(user),
            "merged": {"item_count": item_count, "total_added": total_added},
            "conflicts": conflicts,
        }

    def _conflict(self, variant_id: int, reason: str, message: str, **extra) -> Dict:
        return {"variant_id": variant_id, "reason": reason, "message": message, **extra}
