import logging
from typing import Optional

from sqlalchemy.orm import Session

from bookstore.models.domain_event import DomainEvent

log = logging.getLogger(__name__)


class EventService:
    """Writes outbox rows; they commit or roll back with the caller's unit of work."""

    ORDER_PAID = "order.paid"
    ORDER_EXPIRED = "order.expired"
    ORDER_STOCK_SHORTFALL = "order.stock_shortfall"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_DUPLICATE_CAPTURE = "payment.duplicate_capture"
    PAYMENT_REFUNDED = "payment.refunded"

    def __init__(self, db: Session):
        self.db = db

    def emit(self, event_type: str, aggregate_id, payload: Optional[dict] = None) -> DomainEvent:
        ev = DomainEvent(
            event_type=event_type,
            aggregate_id=str(aggregate_id) if aggregate_id is not None else None,
            payload=payload or {},
        )
        self.db.add(ev)
        self.db.flush()
        log.info("event %s aggregate=%s", event_type, ev.aggregate_id)
        return ev
