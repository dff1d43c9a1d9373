import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.dispute import DisputeAction, DisputeStatus


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class DisputeResolve(BaseModel):
    action: DisputeAction
    notes: str = Field("", max_length=2000)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    job_id: uuid.UUID
    raised_by: uuid.UUID
    reason: str
    status: DisputeStatus
    resolution_notes: str | None = None
    created_at: datetime
