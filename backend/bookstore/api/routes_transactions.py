from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from bookstore.adapters.payment_provider import PaymentProvider
from bookstore.api.deps import get_payment_providers
from bookstore.api.errors import http_error
from bookstore.db import get_db
from bookstore.models.transaction import TransactionStatus
from bookstore.repositories.transaction_repo import TransactionRepository
from bookstore.schemas.checkout_schema import RefundIn
from bookstore.schemas.transaction_schema import RefundOut, TransactionOut
from bookstore.services.errors import ServiceException, TransactionNotFound
from bookstore.services.payment_reconciliation_service import PaymentReconciliationService

# back-office view of payment attempts; access control sits in the gateway in front
router = APIRouter(prefix="/api/transactions", tags=["transactions"])


@router.get("", summary="List transactions")
def list_transactions(
    status: Optional[TransactionStatus] = Query(None),
    provider: Optional[str] = Query(None),
    order_id: Optional[int] = Query(None),
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    items, total = TransactionRepository(db).list(
        status=status, provider=provider, order_id=order_id, page=page, size=size
    )
    return {
        "items": [TransactionOut.model_validate(t).model_dump(mode="json") for t in items],
        "total": total,
        "page": page,
        "size": size,
    }


@router.get("/{transaction_id}", summary="Get transaction with its refunds")
def get_transaction(transaction_id: str, db: Session = Depends(get_db)):
    repo = TransactionRepository(db)
    txn = repo.get(transaction_id)
    if not txn:
        raise http_error(TransactionNotFound(transaction_id))
    body = TransactionOut.model_validate(txn).model_dump(mode="json")
    body["refunds"] = [RefundOut.model_validate(r).model_dump(mode="json") for r in repo.list_refunds(txn.id)]
    return body


@router.post("/{transaction_id}/refund", summary="Refund a successful transaction")
def refund_transaction(
    transaction_id: str,
    payload: RefundIn,
    db: Session = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    svc = PaymentReconciliationService(db, providers)
    try:
        return svc.refund_transaction(transaction_id, payload.amount_cents, payload.reason)
    except ServiceException as e:
        raise http_error(e)
