import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookstore.models.transaction import Refund, Transaction, TransactionStatus

log = logging.getLogger(__name__)


class TransactionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, transaction_id: str, lock: bool = False) -> Optional[Transaction]:
        q = self.db.query(Transaction).filter(Transaction.id == transaction_id)
        if lock:
            q = q.with_for_update().populate_existing()
        return q.first()

    def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.idempotency_key == key)
            .populate_existing()
            .first()
        )

    def find_by_reference(self, ref: str) -> Optional[Transaction]:
        """Webhooks name a transaction by our id or by the provider's own id."""
        return (
            self.db.query(Transaction)
            .filter(or_(Transaction.id == ref, Transaction.gateway_ref_id == ref))
            .first()
        )

    def add(
        self,
        order_id: int,
        provider: str,
        amount_cents: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        """Stage a PENDING transaction in the caller's unit of work."""
        txn = Transaction(
            order_id=order_id,
            provider=provider,
            amount_cents=amount_cents,
            currency=currency,
            status=TransactionStatus.PENDING,
            idempotency_key=idempotency_key,
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    def create(
        self,
        order_id: int,
        provider: str,
        amount_cents: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Transaction, bool]:
        """
        Insert and commit a PENDING transaction.
        Returns (transaction, created_flag); created_flag is False when another
        request already owns ``idempotency_key``, and that request's row is returned.
        """
        txn = Transaction(
            order_id=order_id,
            provider=provider,
            amount_cents=amount_cents,
            currency=currency,
            status=TransactionStatus.PENDING,
            idempotency_key=idempotency_key,
        )
        try:
            self.db.add(txn)
            self.db.commit()
            return txn, True
        except IntegrityError:
            self.db.rollback()
            log.debug("transaction insert collision for idempotency key=%r", idempotency_key)
            existing = self.get_by_idempotency_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing, False

    def list_pending_older_than(self, cutoff: datetime, limit: int) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.status == TransactionStatus.PENDING,
                Transaction.created_at < cutoff,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
            .all()
        )

    def list_for_order(
        self, order_id: int, status: Optional[TransactionStatus] = None, lock: bool = False
    ) -> List[Transaction]:
        q = self.db.query(Transaction).filter(Transaction.order_id == order_id)
        if status is not None:
            q = q.filter(Transaction.status == status)
        if lock:
            q = q.with_for_update().populate_existing()
        return q.order_by(Transaction.created_at).all()

    def has_other_pending(self, order_id: int, exclude_id: str) -> bool:
        count = (
            self.db.query(func.count(Transaction.id))
            .filter(
                Transaction.order_id == order_id,
                Transaction.status == TransactionStatus.PENDING,
                Transaction.id != exclude_id,
            )
            .scalar()
        )
        return bool(count)

    def list(
        self,
        status: Optional[TransactionStatus] = None,
        provider: Optional[str] = None,
        order_id: Optional[int] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Transaction], int]:
        query = self.db.query(Transaction)
        if status is not None:
            query = query.filter(Transaction.status == status)
        if provider:
            query = query.filter(Transaction.provider == provider)
        if order_id is not None:
            query = query.filter(Transaction.order_id == order_id)
        total = query.count()
        items = (
            query.order_by(Transaction.created_at.desc())
            .offset((page - 1) * size)
            .limit(size)
            .all()
        )
        return items, total

    def add_refund(
        self,
        transaction_id: str,
        amount_cents: int,
        reason: Optional[str],
        refund_ref: Optional[str],
        status: str,
        raw_response: Optional[dict] = None,
    ) -> Refund:
        r = Refund(
            transaction_id=transaction_id,
            amount_cents=amount_cents,
            reason=reason,
            refund_ref=refund_ref,
            status=status,
            raw_response=raw_response,
        )
        self.db.add(r)
        self.db.flush()
        return r

    def list_refunds(self, transaction_id: str) -> List[Refund]:
        return (
            self.db.query(Refund)
            .filter(Refund.transaction_id == transaction_id)
            .order_by(Refund.id)
            .all()
        )
