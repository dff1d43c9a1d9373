"""PayMongo webhook receiver."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from marketplace.config import settings
from marketplace.dependencies import get_payment_service
from marketplace.schemas.webhook import (
    CHECKOUT_SESSION_PAID,
    PAYMENT_INTENT_SUCCEEDED,
    WebhookAck,
    WebhookEvent,
)
from marketplace.services.gateway import verify_webhook_signature
from marketplace.services.payment import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/paymongo", response_model=WebhookAck)
async def paymongo_webhook(
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
) -> WebhookAck | JSONResponse:
    """Fund escrow when PayMongo reports a paid checkout session.

    Handles ``checkout_session.payment.paid`` and the legacy
    ``payment_intent.succeeded``. Other event types are acknowledged and
    ignored. Processing errors return 500 so PayMongo redelivers.
    """
    raw_body = await request.body()
    signature = request.headers.get("Paymongo-Signature", "")

    secret = settings.paymongo_webhook_secret
    if not secret and settings.is_production:
        logger.error("PayMongo webhook secret is not configured in production")
        raise HTTPException(status_code=500, detail="Webhook not configured")
    if secret and not verify_webhook_signature(raw_body, signature, secret, live=settings.is_production):
        logger.warning("Rejected PayMongo webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = WebhookEvent.model_validate(json.loads(raw_body))
    except (ValueError, ValidationError):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    resource = event.resource
    try:
        if event.type == CHECKOUT_SESSION_PAID:
            paid = resource.paid_payment()
            intent = resource.attributes.payment_intent
            external_id = paid.id if paid else (intent.id if intent else None)
            await payments.confirm_escrow_funding(resource.id, external_id, "checkout")
        elif event.type == PAYMENT_INTENT_SUCCEEDED:
            paid = resource.paid_payment()
            method = None
            if paid is not None and paid.attributes.source is not None:
                method = paid.attributes.source.type
            await payments.confirm_escrow_funding(
                resource.id, paid.id if paid else None, method or "unknown"
            )
        else:
            logger.info("Ignoring PayMongo event %s", event.type)
    except Exception:
        logger.exception("Failed to process PayMongo event %s", event.type)
        return JSONResponse(status_code=500, content={"received": False, "error": "Processing error"})

    return WebhookAck(received=True)
