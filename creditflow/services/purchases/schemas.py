"""API request/response schemas for purchase intake."""

from datetime import datetime

from pydantic import BaseModel, Field


class PurchaseCreateRequest(BaseModel):
    """Checkout intent: credits the account will receive once the payment is approved."""

    account_id: str = Field(min_length=1)
    amount_credits: int = Field(gt=0)


class PurchaseResponse(BaseModel):
    purchase_id: str
    account_id: str
    amount_credits: int
    status: str
    provider_payment_id: str | None = None
    applied_at: datetime | None = None
