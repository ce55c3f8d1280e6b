import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_db
from app.services.pricing import UsagePricing, get_pricing
from app.services.stripe_gateway import StripeGateway, WebhookSignatureError, get_gateway
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    pricing: UsagePricing = Depends(get_pricing),
):
    """Billing lifecycle events. Acknowledged with 200 unless the signature is bad."""
    payload = await request.body()
    sig = request.headers.get("stripe-signature")
    if not sig:
        logger.error("Stripe webhook without stripe-signature header")
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        event = gateway.construct_event(payload, sig)
    except WebhookSignatureError as e:
        logger.error("Stripe webhook signature error: %s", e)
        raise HTTPException(status_code=400, detail=f"Invalid webhook: {e}")

    await run_in_threadpool(WebhookService(db, gateway, pricing).handle, event)
    return {"received": True}
