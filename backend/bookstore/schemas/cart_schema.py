from pydantic import BaseModel, Field


class AddItemIn(BaseModel):
    variant_id: int
    qty: int = Field(1, gt=0)


class UpdateItemIn(BaseModel):
    qty: int = Field(..., gt=0)


class MergeCartIn(BaseModel):
    session_id: str = Field(..., description="guest session whose cart is merged")
