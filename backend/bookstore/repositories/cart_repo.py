import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookstore.models.cart import Cart, CartStatus
from bookstore.models.cart_history import CartHistory
from bookstore.models.cart_item import CartItem

log = logging.getLogger(__name__)


class CartRepository:
    def __init__(self, db: Session):
        self.db = db

    def _identity_filter(self, query, user_id: Optional[int], session_id: Optional[str]):
        if user_id is not None:
            return query.filter(Cart.user_id == user_id)
        return query.filter(Cart.session_id == session_id)

    def find_active(
        self, user_id: Optional[int] = None, session_id: Optional[str] = None, lock: bool = False
    ) -> Optional[Cart]:
        q = self._identity_filter(
            self.db.query(Cart).filter(Cart.status == CartStatus.ACTIVE), user_id, session_id
        )
        if lock:
            q = q.with_for_update().populate_existing()
        return q.first()

    def get_or_create_active(
        self, user_id: Optional[int] = None, session_id: Optional[str] = None
    ) -> Cart:
        """
        Find the identity's ACTIVE cart or create it.

        Must be the first write of the unit of work: a concurrent creator makes
        our INSERT hit the partial unique index, the session is rolled back and
        the winner's cart is returned instead.
        """
        cart = self.find_active(user_id, session_id)
        if cart:
            return cart
        try:
            cart = Cart(user_id=user_id, session_id=session_id, status=CartStatus.ACTIVE)
            self.db.add(cart)
            self.db.flush()
            return cart
        except IntegrityError:
            log.debug("active cart insert collision user=%s session=%s", user_id, session_id)
            self.db.rollback()
            cart = self.find_active(user_id, session_id)
            if cart is None:
                raise
            return cart

    def get(self, cart_id: int, lock: bool = False) -> Optional[Cart]:
        q = self.db.query(Cart).filter(Cart.id == cart_id)
        if lock:
            q = q.with_for_update().populate_existing()
        return q.first()

    def get_items(self, cart_id: int, lock: bool = False) -> List[CartItem]:
        q = self.db.query(CartItem).filter(CartItem.cart_id == cart_id)
        if lock:
            q = q.with_for_update().populate_existing()
        return q.order_by(CartItem.id).all()

    def get_item(self, cart_id: int, item_id: int) -> Optional[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.id == item_id, CartItem.cart_id == cart_id)
            .populate_existing()
            .first()
        )

    def get_item_by_variant(self, cart_id: int, variant_id: int) -> Optional[CartItem]:
        return (
            self.db.query(CartItem)
            .filter(CartItem.cart_id == cart_id, CartItem.variant_id == variant_id)
            .populate_existing()
            .first()
        )

    def add_item(
        self,
        cart_id: int,
        variant_id: int,
        qty: int,
        unit_price_cents: int,
        title: Optional[str],
        is_stock_reserved: bool,
    ) -> CartItem:
        item = CartItem(
            cart_id=cart_id,
            variant_id=variant_id,
            qty=qty,
            unit_price_cents=unit_price_cents,
            title=title,
            is_stock_reserved=is_stock_reserved,
        )
        self.db.add(item)
        self.db.flush()
        return item

    def delete_item(self, item: CartItem):
        self.db.delete(item)
        self.db.flush()

    def delete_cart(self, cart: Cart):
        self.db.query(CartItem).filter(CartItem.cart_id == cart.id).delete(
            synchronize_session=False
        )
        self.db.delete(cart)
        self.db.flush()

    def touch(self, cart: Cart, now: Optional[datetime] = None):
        """Restart the cart's idle clock."""
        cart.updated_at = now or datetime.now(timezone.utc)
        self.db.flush()

    def list_idle_active(self, cutoff: datetime, limit: int) -> List[Cart]:
        """ACTIVE carts untouched since ``cutoff`` that still hold a reservation."""
        reserved = (
            self.db.query(CartItem.cart_id)
            .filter(CartItem.is_stock_reserved == True)  # noqa: E712
            .distinct()
        )
        return (
            self.db.query(Cart)
            .filter(
                Cart.status == CartStatus.ACTIVE,
                Cart.updated_at < cutoff,
                Cart.id.in_(reserved),
            )
            .order_by(Cart.updated_at)
            .limit(limit)
            .all()
        )

    def list_closed_older_than(self, cutoff: datetime, limit: int) -> List[Cart]:
        return (
            self.db.query(Cart)
            .filter(
                Cart.status.in_([CartStatus.COMPLETED, CartStatus.ABANDONED]),
                Cart.updated_at < cutoff,
            )
            .order_by(Cart.updated_at)
            .limit(limit)
            .all()
        )

    def archive(self, cart: Cart, items: List[CartItem]) -> CartHistory:
        """Copy ``cart`` and its lines into cart_history, then delete them."""
        history = CartHistory(
            id=cart.id,
            user_id=cart.user_id,
            session_id=cart.session_id,
            status=cart.status.value,
            total_cents=sum(it.qty * it.unit_price_cents for it in items),
            items_count=len(items),
            items_data=[
                {
                    "variant_id": it.variant_id,
                    "title": it.title,
                    "qty": it.qty,
                    "unit_price_cents": it.unit_price_cents,
                }
                for it in items
            ],
            checkout_started_at=cart.checkout_started_at,
            created_at=cart.created_at,
            updated_at=cart.updated_at,
        )
        self.db.add(history)
        self.delete_cart(cart)
        return history
