import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.payout import PayoutStatus


class PayoutCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    bank_name: str = Field(..., min_length=1, max_length=128)
    account_number: str = Field(..., min_length=1, max_length=64)
    account_name: str = Field(..., min_length=1, max_length=128)


class PayoutStatusUpdate(BaseModel):
    status: PayoutStatus
    notes: str | None = None


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payout_id: uuid.UUID
    provider_id: uuid.UUID
    amount: Decimal
    bank_name: str
    account_name: str
    status: PayoutStatus
    notes: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class BalanceResponse(BaseModel):
    available: Decimal
