"""Provider payout requests and admin processing."""

import uuid

from fastapi import APIRouter, Depends

from marketplace.auth import Actor, get_current_actor
from marketplace.dependencies import get_payout_service
from marketplace.schemas.payout import BalanceResponse, PayoutCreate, PayoutResponse, PayoutStatusUpdate
from marketplace.services.payout import PayoutService

router = APIRouter(prefix="/payouts", tags=["payouts"])


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutService = Depends(get_payout_service),
) -> BalanceResponse:
    return BalanceResponse(available=await payouts.available_balance(actor.user_id))


@router.post("", response_model=PayoutResponse, status_code=201)
async def request_payout(
    data: PayoutCreate,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutService = Depends(get_payout_service),
) -> PayoutResponse:
    payout = await payouts.request_payout(
        actor, data.amount, data.bank_name, data.account_number, data.account_name
    )
    return PayoutResponse.model_validate(payout)


@router.patch("/{payout_id}", response_model=PayoutResponse)
async def update_payout(
    payout_id: uuid.UUID,
    data: PayoutStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    payouts: PayoutService = Depends(get_payout_service),
) -> PayoutResponse:
    """Admin moves a payout through processing to completed or rejected."""
    payout = await payouts.update_payout_status(actor, payout_id, data.status, data.notes)
    return PayoutResponse.model_validate(payout)
