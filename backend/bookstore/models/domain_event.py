from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String

from bookstore.db import Base


class DomainEvent(Base):
    """Outbox row written in the same DB transaction as the change it describes."""

    __tablename__ = "domain_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False, index=True)  # order.paid, payment.failed, ...
    aggregate_id = Column(String(64), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
