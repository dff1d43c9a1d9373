"""Job lifecycle and escrow endpoints."""

import uuid

from fastapi import APIRouter, Depends

from marketplace.auth import Actor, get_current_actor
from marketplace.dependencies import get_escrow_service, get_job_service, get_payment_service
from marketplace.schemas.job import (
    EscrowOverride,
    FundResponse,
    JobApprove,
    JobCreate,
    JobResponse,
    PartialRelease,
)
from marketplace.services.escrow import EscrowService
from marketplace.services.job import JobService
from marketplace.services.payment import PaymentService

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    data: JobCreate,
    actor: Actor = Depends(get_current_actor),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    """Client posts a job; it waits for admin approval."""
    job = await jobs.create_job(
        actor,
        title=data.title,
        budget=data.budget,
        category=data.category,
        description=data.description,
        schedule_date=data.schedule_date,
        invited_provider_id=data.invited_provider_id,
    )
    return JobResponse.model_validate(job)


@router.post("/{job_id}/approve", response_model=JobResponse)
async def approve_job(
    job_id: uuid.UUID,
    data: JobApprove | None = None,
    actor: Actor = Depends(get_current_actor),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    job = await jobs.approve_job(actor, job_id, risk_score=data.risk_score if data else None)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/reject", response_model=JobResponse)
async def reject_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    job = await jobs.reject_job(actor, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/fund", response_model=FundResponse)
async def fund_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    payments: PaymentService = Depends(get_payment_service),
) -> FundResponse:
    """Client funds escrow. Returns a checkout URL unless running in simulation mode."""
    result = await payments.initiate_escrow_payment(actor, job_id)
    return FundResponse.model_validate(result)


@router.post("/{job_id}/start", response_model=JobResponse)
async def start_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    escrow: EscrowService = Depends(get_escrow_service),
) -> JobResponse:
    """Provider begins work. Escrow must be funded."""
    job = await escrow.start_job(actor, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/mark-complete", response_model=JobResponse)
async def mark_complete(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    escrow: EscrowService = Depends(get_escrow_service),
) -> JobResponse:
    job = await escrow.mark_job_complete(actor, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/release", response_model=JobResponse)
async def release_escrow(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    escrow: EscrowService = Depends(get_escrow_service),
) -> JobResponse:
    """Client releases the full escrow to the provider."""
    job = await escrow.release_escrow(actor, job_id)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/partial-release", response_model=JobResponse)
async def partial_release(
    job_id: uuid.UUID,
    data: PartialRelease,
    actor: Actor = Depends(get_current_actor),
    escrow: EscrowService = Depends(get_escrow_service),
) -> JobResponse:
    job = await escrow.partial_release(actor, job_id, data.amount)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/escrow-override", response_model=JobResponse)
async def escrow_override(
    job_id: uuid.UUID,
    data: EscrowOverride,
    actor: Actor = Depends(get_current_actor),
    escrow: EscrowService = Depends(get_escrow_service),
) -> JobResponse:
    """Admin forces a release or refund of funded escrow."""
    job = await escrow.admin_override(actor, job_id, data.action, data.reason)
    return JobResponse.model_validate(job)
