from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from bookstore.models.transaction import TransactionStatus


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    order_id: int
    provider: str
    amount_cents: int
    currency: str
    status: TransactionStatus
    gateway_ref_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    refund_ref: Optional[str] = None
    amount_cents: int
    reason: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
