"""Pydantic v2 schemas for job and escrow endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.dispute import DisputeAction
from marketplace.models.job import EscrowStatus, JobStatus
from marketplace.models.payment import PaymentStatus


class JobCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    budget: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = Field("general", max_length=64)
    description: str = ""
    schedule_date: datetime | None = None
    invited_provider_id: uuid.UUID | None = None


class JobApprove(BaseModel):
    risk_score: int | None = Field(None, ge=0, le=100)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    client_id: uuid.UUID
    provider_id: uuid.UUID | None
    title: str
    category: str
    budget: Decimal
    status: JobStatus
    escrow_status: EscrowStatus
    risk_score: int
    partial_release_amount: Decimal | None = None
    schedule_date: datetime | None = None
    created_at: datetime
    updated_at: datetime


class FundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    simulated: bool
    amount: Decimal
    message: str = ""
    checkout_session_id: str | None = None
    checkout_url: str | None = None
    reference_number: str | None = None


class PaymentStatusResponse(BaseModel):
    session_id: str
    status: PaymentStatus


class PartialRelease(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)


class EscrowOverride(BaseModel):
    action: DisputeAction
    reason: str = Field(..., min_length=5, max_length=1000)
