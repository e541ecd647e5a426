import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String

from bookstore.db import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Transaction(Base):
    """One payment attempt against an order."""

    __tablename__ = "transactions"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    provider = Column(String(32), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="INR")
    status = Column(
        Enum(TransactionStatus, native_enum=False, length=16),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    idempotency_key = Column(String(128), unique=True, nullable=True, index=True)
    # provider's own id, used to correlate webhooks and status lookups
    gateway_ref_id = Column(String(128), nullable=True, index=True)
    # response handed back to the client; replayed for a repeated idempotency key
    raw_response = Column(JSON, nullable=True)
    # last webhook / status payload received from the provider
    callback_payload = Column(JSON, nullable=True)
    failure_reason = Column(String(1024), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class Refund(Base):
    __tablename__ = "refunds"
    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(
        String(36), ForeignKey("transactions.id"), nullable=False, index=True
    )
    refund_ref = Column(String(128), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    reason = Column(String(512), nullable=True)
    status = Column(String(32), nullable=False, default="INITIATED")  # INITIATED, SUCCESS, FAILED
    raw_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
