from typing import Optional

from pydantic import BaseModel, Field


class ShippingAddressIn(BaseModel):
    name: str
    phone: str = Field(..., min_length=6, max_length=20)
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "IN"


class CheckoutIn(BaseModel):
    payment_provider: Optional[str] = Field(None, description="defaults to the configured provider")
    shipping_address: ShippingAddressIn


class RetryPaymentIn(BaseModel):
    payment_provider: Optional[str] = None


class RefundIn(BaseModel):
    amount_cents: Optional[int] = Field(None, gt=0, description="defaults to the refundable balance")
    reason: Optional[str] = Field(None, max_length=512)
