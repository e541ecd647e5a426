import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from bookstore.config import settings
from bookstore.metrics import track_cart_operation
from bookstore.models.cart import Cart
from bookstore.models.cart_item import CartItem
from bookstore.repositories.cart_repo import CartRepository
from bookstore.services.errors import CartItemNotFound, CartNotFound, InvalidQuantity
from bookstore.services.inventory_service import InventoryService
from bookstore.utils.transactions import unit_of_work

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartIdentity:
    """Cart owner: an authenticated user or a guest session, never both."""

    user_id: Optional[int] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if (self.user_id is None) == (self.session_id is None):
            raise ValueError("exactly one of user_id / session_id must be set")

    @classmethod
    def for_user(cls, user_id: int) -> "CartIdentity":
        return cls(user_id=user_id)

    @classmethod
    def for_guest(cls, session_id: str) -> "CartIdentity":
        return cls(session_id=session_id)

    def owns(self, record) -> bool:
        """True when ``record`` (a cart or an order) belongs to this identity."""
        if self.user_id is not None:
            return record.user_id == self.user_id
        return record.session_id == self.session_id

    def __str__(self):
        return f"user:{self.user_id}" if self.user_id is not None else f"guest:{self.session_id}"


class CartService:
    def __init__(self, db: Session):
        self.db = db
        self.cart_repo = CartRepository(db)
        self.inventory = InventoryService(db)

    def _find_active(self, identity: CartIdentity) -> Optional[Cart]:
        return self.cart_repo.find_active(identity.user_id, identity.session_id)

    def snapshot(self, cart: Optional[Cart], items: Optional[List[CartItem]] = None) -> Dict:
        if cart is None:
            return {
                "cart_id": None,
                "status": None,
                "items": [],
                "item_count": 0,
                "subtotal_cents": 0,
                "shipping_cents": 0,
                "discount_cents": 0,
                "total_cents": 0,
                "currency": settings.CURRENCY,
            }
        if items is None:
            items = self.cart_repo.get_items(cart.id)
        lines = [
            {
                "id": it.id,
                "variant_id": it.variant_id,
                "title": it.title,
                "qty": it.qty,
                "unit_price_cents": it.unit_price_cents,
                "subtotal_cents": it.subtotal_cents,
                "is_stock_reserved": it.is_stock_reserved,
            }
            for it in items
        ]
        subtotal = sum(line["subtotal_cents"] for line in lines)
        return {
            "cart_id": cart.id,
            "status": cart.status.value,
            "items": lines,
            "item_count": sum(line["qty"] for line in lines),
            "subtotal_cents": subtotal,
            # shipping and discounts are priced downstream
            "shipping_cents": 0,
            "discount_cents": 0,
            "total_cents": subtotal,
            "currency": settings.CURRENCY,
        }

    def get_cart(self, identity: CartIdentity) -> Dict:
        return self.snapshot(self._find_active(identity))

    @track_cart_operation("add")
    def add_item(self, identity: CartIdentity, variant_id: int, qty: int) -> Dict:
        """
        Add ``qty`` units, reserving them. An existing line grows by ``qty``;
        if its reservation had lapsed the whole new quantity is reserved.
        """
        if qty <= 0:
            raise InvalidQuantity(qty)
        with self.inventory.hold([variant_id]), unit_of_work(self.db):
            # first write of the unit of work (may roll back on a create race)
            cart = self.cart_repo.get_or_create_active(identity.user_id, identity.session_id)
            variant = self.inventory.lock_variant(variant_id)
            item = self.cart_repo.get_item_by_variant(cart.id, variant_id)
            if item:
                if item.is_stock_reserved:
                    self.inventory.reserve(variant, qty)
                else:
                    self.inventory.reserve(variant, item.qty + qty)
                item.qty += qty
                item.is_stock_reserved = variant.is_physical
            else:
                self.inventory.reserve(variant, qty)
                item = self.cart_repo.add_item(
                    cart.id,
                    variant.id,
                    qty,
                    unit_price_cents=variant.price_cents,
                    title=variant.title,
                    is_stock_reserved=variant.is_physical,
                )
            self.cart_repo.touch(cart)
        log.info("cart %s (%s): added variant=%s qty=%s", cart.id, identity, variant_id, qty)
        return self.snapshot(cart)

    def _get_owned_item(self, identity: CartIdentity, item_id: int):
        cart = self._find_active(identity)
        if not cart:
            raise CartNotFound()
        item = self.cart_repo.get_item(cart.id, item_id)
        if not item:
            # items of other carts are indistinguishable from missing ones
            raise CartItemNotFound(item_id)
        return cart, item

    @track_cart_operation("update")
    def update_item(self, identity: CartIdentity, item_id: int, qty: int) -> Dict:
        if qty <= 0:
            raise InvalidQuantity(qty)
        cart, item = self._get_owned_item(identity, item_id)
        with self.inventory.hold([item.variant_id]), unit_of_work(self.db):
            item = self.cart_repo.get_item(cart.id, item_id)
            if not item:
                raise CartItemNotFound(item_id)
            variant = self.inventory.lock_variant(item.variant_id)
            delta = qty - item.qty
            if not item.is_stock_reserved:
                self.inventory.reserve(variant, qty)
            elif delta > 0:
                self.inventory.reserve(variant, delta)
            elif delta < 0:
                self.inventory.release(variant, -delta)
            item.qty = qty
            item.is_stock_reserved = variant.is_physical
            self.cart_repo.touch(cart)
        log.info("cart %s (%s): item %s qty -> %s", cart.id, identity, item_id, qty)
        return self.snapshot(cart)

    @track_cart_operation("remove")
    def remove_item(self, identity: CartIdentity, item_id: int) -> Dict:
        cart, item = self._get_owned_item(identity, item_id)
        with self.inventory.hold([item.variant_id]), unit_of_work(self.db):
            item = self.cart_repo.get_item(cart.id, item_id)
            if not item:
                raise CartItemNotFound(item_id)
            if item.is_stock_reserved:
                variant = self.inventory.lock_variant(item.variant_id)
                self.inventory.release(variant, item.qty)
            self.cart_repo.delete_item(item)
            self.cart_repo.touch(cart)
        log.info("cart %s (%s): removed item %s", cart.id, identity, item_id)
        return self.snapshot(cart)

    @track_cart_operation("clear")
    def clear_cart(self, identity: CartIdentity) -> Dict:
        cart = self._find_active(identity)
        if not cart:
            return self.snapshot(None)
        items = self.cart_repo.get_items(cart.id)
        with self.inventory.hold([it.variant_id for it in items]), unit_of_work(self.db):
            released = 0
            for item in self.cart_repo.get_items(cart.id, lock=True):
                if item.is_stock_reserved:
                    variant = self.inventory.lock_variant(item.variant_id)
                    self.inventory.release(variant, item.qty)
                    released += item.qty
                self.cart_repo.delete_item(item)
            self.cart_repo.touch(cart)
        log.info("cart %s (%s): cleared, released %s units", cart.id, identity, released)
        return self.snapshot(cart, [])
