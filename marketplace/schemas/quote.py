import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.quote import QuoteStatus


class QuoteCreate(BaseModel):
    proposed_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    timeline: str = Field("", max_length=128)
    message: str = ""


class QuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    quote_id: uuid.UUID
    job_id: uuid.UUID
    provider_id: uuid.UUID
    proposed_amount: Decimal
    timeline: str
    message: str
    status: QuoteStatus
    created_at: datetime
