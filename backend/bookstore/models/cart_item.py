from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from bookstore.db import Base


class CartItem(Base):
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "variant_id", name="uq_cart_items_cart_variant"),
        CheckConstraint("qty > 0", name="ck_cart_items_qty_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(
        Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id = Column(Integer, ForeignKey("variants.id"), nullable=False, index=True)
    qty = Column(Integer, nullable=False, default=1)
    unit_price_cents = Column(
        Integer, nullable=False, default=0
    )  # price at time of add, in cents
    title = Column(String(256), nullable=True)
    # false once an expiry sweep released the hold while the cart stayed ACTIVE
    is_stock_reserved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def subtotal_cents(self) -> int:
        return self.qty * self.unit_price_cents
