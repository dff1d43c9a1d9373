"""Dispute endpoints: parties open, admins resolve."""

import uuid

from fastapi import APIRouter, Depends

from marketplace.auth import Actor, get_current_actor
from marketplace.dependencies import get_dispute_service
from marketplace.schemas.dispute import DisputeCreate, DisputeResolve, DisputeResponse
from marketplace.services.dispute import DisputeService

router = APIRouter(tags=["disputes"])


@router.post("/jobs/{job_id}/disputes", response_model=DisputeResponse, status_code=201)
async def open_dispute(
    job_id: uuid.UUID,
    data: DisputeCreate,
    actor: Actor = Depends(get_current_actor),
    disputes: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await disputes.open_dispute(actor, job_id, data.reason)
    return DisputeResponse.model_validate(dispute)


@router.post("/disputes/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: DisputeResolve,
    actor: Actor = Depends(get_current_actor),
    disputes: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Admin releases the escrow to the provider or refunds the client."""
    dispute = await disputes.resolve_dispute(actor, dispute_id, data.action, data.notes)
    return DisputeResponse.model_validate(dispute)
