from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String

from bookstore.db import Base


class CartHistory(Base):
    """Closed cart moved out of ``carts``; keeps the cart's id so orders still resolve."""

    __tablename__ = "cart_history"
    id = Column(Integer, primary_key=True, autoincrement=False)
    user_id = Column(Integer, nullable=True, index=True)
    session_id = Column(String(64), nullable=True, index=True)
    status = Column(String(16), nullable=False)
    total_cents = Column(Integer, nullable=False, default=0)
    items_count = Column(Integer, nullable=False, default=0)
    items_data = Column(JSON, nullable=False, default=list)
    checkout_started_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
