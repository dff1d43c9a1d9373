"""Provider quotes on open jobs."""

import uuid

from fastapi import APIRouter, Depends

from marketplace.auth import Actor, get_current_actor
from marketplace.dependencies import get_quote_service
from marketplace.schemas.quote import QuoteCreate, QuoteResponse
from marketplace.services.quote import QuoteService

router = APIRouter(tags=["quotes"])


@router.post("/jobs/{job_id}/quotes", response_model=QuoteResponse, status_code=201)
async def submit_quote(
    job_id: uuid.UUID,
    data: QuoteCreate,
    actor: Actor = Depends(get_current_actor),
    quotes: QuoteService = Depends(get_quote_service),
) -> QuoteResponse:
    quote = await quotes.submit_quote(
        actor, job_id, data.proposed_amount, timeline=data.timeline, message=data.message
    )
    return QuoteResponse.model_validate(quote)


@router.post("/quotes/{quote_id}/accept", response_model=QuoteResponse)
async def accept_quote(
    quote_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    quotes: QuoteService = Depends(get_quote_service),
) -> QuoteResponse:
    """Client accepts a quote; the job is assigned to its provider."""
    quote, _ = await quotes.accept_quote(actor, quote_id)
    return QuoteResponse.model_validate(quote)


@router.post("/quotes/{quote_id}/reject", response_model=QuoteResponse)
async def reject_quote(
    quote_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    quotes: QuoteService = Depends(get_quote_service),
) -> QuoteResponse:
    quote = await quotes.reject_quote(actor, quote_id)
    return QuoteResponse.model_validate(quote)
