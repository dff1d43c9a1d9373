"""Checkout polling for clients returning from the hosted payment page."""

import uuid

from fastapi import APIRouter, Depends

from marketplace.auth import Actor, get_current_actor
from marketplace.dependencies import get_payment_service
from marketplace.schemas.job import PaymentStatusResponse
from marketplace.services.payment import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/{session_id}", response_model=PaymentStatusResponse)
async def poll_payment(
    session_id: str,
    job_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentStatusResponse:
    status = await payments.poll_checkout_session(actor, session_id, job_id)
    return PaymentStatusResponse(session_id=session_id, status=status)
