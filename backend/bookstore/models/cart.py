import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, Index, Integer, String, text

from bookstore.db import Base


class CartStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CHECKOUT = "CHECKOUT"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class Cart(Base):
    __tablename__ = "carts"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)", name="ck_carts_single_identity"
        ),
        # one ACTIVE cart per identity
        Index(
            "uq_carts_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE' AND user_id IS NOT NULL"),
            postgresql_where=text("status = 'ACTIVE' AND user_id IS NOT NULL"),
        ),
        Index(
            "uq_carts_active_session",
            "session_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE' AND session_id IS NOT NULL"),
            postgresql_where=text("status = 'ACTIVE' AND session_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    session_id = Column(String(64), nullable=True, index=True)  # guest identifier
    status = Column(
        Enum(CartStatus, native_enum=False, length=16),
        nullable=False,
        default=CartStatus.ACTIVE,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    # idle clock for reservation expiry
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    checkout_started_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        owner = f"user={self.user_id}" if self.user_id is not None else f"session={self.session_id}"
        return f"<Cart id={self.id} {owner} status={self.status}>"
