from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from bookstore.models.order import Order, OrderItem, PaymentStatus


class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def _gen_order_number(self) -> str:
        return f"ORD-{uuid4().hex[:10].upper()}"

    def create(
        self,
        cart_id: int,
        user_id: Optional[int],
        session_id: Optional[str],
        total_cents: int,
        currency: str,
        shipping_address: Optional[dict],
        lines: List[dict],
    ) -> Order:
        order = Order(
            order_number=self._gen_order_number(),
            cart_id=cart_id,
            user_id=user_id,
            session_id=session_id,
            total_cents=total_cents,
            currency=currency,
            payment_status=PaymentStatus.PENDING,
            shipping_address=shipping_address,
        )
        self.db.add(order)
        self.db.flush()
        for line in lines:
            self.db.add(OrderItem(order_id=order.id, **line))
        self.db.flush()
        return order

    def get(self, order_id: int, lock: bool = False) -> Optional[Order]:
        q = self.db.query(Order).filter(Order.id == order_id)
        if lock:
            q = q.with_for_update().populate_existing()
        return q.first()

    def get_items(self, order_id: int) -> List[OrderItem]:
        return (
            self.db.query(OrderItem)
            .filter(OrderItem.order_id == order_id)
            .order_by(OrderItem.id)
            .all()
        )

    def list_pending_older_than(self, cutoff: datetime, limit: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.payment_status == PaymentStatus.PENDING, Order.created_at < cutoff)
            .order_by(Order.created_at)
            .limit(limit)
            .all()
        )

    def has_other_pending_for_cart(self, cart_id: int, exclude_id: int) -> bool:
        return (
            self.db.query(Order.id)
            .filter(
                Order.cart_id == cart_id,
                Order.payment_status == PaymentStatus.PENDING,
                Order.id != exclude_id,
            )
            .first()
            is not None
        )
