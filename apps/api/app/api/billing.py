import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.auth import get_current_user, CurrentUser
from app.api.deps import get_db
from app.core.config import settings
from app.core.exceptions import ServiceError, UpstreamError
from app.repositories.billing_repository import BillingRepository
from app.services.notifications import NotificationService
from app.services.pricing import UsageKind, UsagePricing, get_pricing
from app.services.stripe_gateway import StripeGateway, get_gateway
from app.services.usage_service import UsageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


class UsageRequest(BaseModel):
    kind: str | None = None
    quantity: int | None = None
    # Fallback idempotency token; X-Idempotency-Key header wins
    idem: str | None = None
    # Validate and quote without charging
    preview: bool = False


class CheckoutRequest(BaseModel):
    plan: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(BaseModel):
    return_url: str | None = None


def _iso(value):
    return value.isoformat() if value else None


@router.post("/usage")
def record_usage(
    body: UsageRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
    pricing: UsagePricing = Depends(get_pricing),
):
    """Account one metered usage action: trial credit first, then metered billing under the cap."""
    owner_id: str = current_user["id"]  # type: ignore
    token = request.headers.get("x-idempotency-key") or body.idem
    svc = UsageService(db, gateway, pricing)
    try:
        result = svc.record_usage(owner_id, body.kind, body.quantity, token, preview=body.preview)
    except ServiceError as e:
        logger.info("usage_failed uid=%s kind=%s reason=%s", owner_id, body.kind, e.code)
        raise
    return result.to_response()


@router.get("/summary")
def billing_summary(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Ledger snapshot for the billing page."""
    acct = BillingRepository(db).get_account(current_user["id"])  # type: ignore
    if acct is None:
        raise HTTPException(status_code=404, detail="User record not found")

    has_default_payment = False
    if acct.stripe_customer_id:
        try:
            customer = gateway.retrieve_customer(acct.stripe_customer_id)
        except UpstreamError as e:
            logger.warning("Customer lookup failed for summary: %s", e)
            customer = None
        if customer:
            has_default_payment = bool(
                (customer.get("invoice_settings") or {}).get("default_payment_method")
                or customer.get("default_source")
            )

    cap = settings.daily_cap_cents
    pending = acct.pending_local_cents or 0
    return {
        "subscription": {
            "id": acct.subscription_id,
            "status": acct.subscription_status,
            "active": acct.subscription_active,
            "plan": acct.plan,
            "renewalAt": _iso(acct.subscription_renewal_at),
            "trialing": acct.subscription_status == "trialing",
        },
        "usage": {kind.value: getattr(acct, kind.counter_column) or 0 for kind in UsageKind},
        "trialCreditCents": acct.trial_credit_cents or 0,
        "pendingCents": pending,
        "capCents": cap,
        "remainingCents": max(0, cap - pending),
        "billing": {
            "blocked": acct.billing_blocked,
            "reason": acct.billing_blocked_reason,
            "pastDueAmountCents": acct.past_due_amount_cents or 0,
        },
        "lastPaymentAt": _iso(acct.last_payment_at),
        "payment": {"hasDefaultPayment": has_default_payment},
    }


@router.get("/usage-records")
def list_usage_records(limit: int = 50, db: Session = Depends(get_db),
                       current_user: CurrentUser = Depends(get_current_user)):
    """List recent accepted usage calls for the current user."""
    lim = max(1, min(limit, 200))
    rows = BillingRepository(db).list_usage_records(current_user["id"], lim)  # type: ignore
    return [
        {
            "id": r.id,
            "kind": r.kind,
            "quantity": r.quantity,
            "freeQty": r.free_qty,
            "paidQty": r.paid_qty,
            "unitCents": r.unit_cents,
            "creditedCents": r.credited_cents,
            "chargedCents": r.charged_cents,
            "currency": r.currency,
            "usageEventId": r.usage_event_id,
            "createdAt": _iso(r.created_at),
        }
        for r in rows
    ]


@router.post("/checkout")
def create_checkout_session(
    body: CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    if not settings.stripe_price_access:
        raise HTTPException(status_code=400, detail="Access price not configured")

    owner_id: str = current_user["id"]  # type: ignore
    email = current_user.get("email")
    repo = BillingRepository(db)
    acct = repo.ensure_account(owner_id, email=email)

    # Reuse the saved customer unless it was deleted in Stripe
    customer_id = acct.stripe_customer_id
    if customer_id and gateway.retrieve_customer(customer_id) is None:
        customer_id = None
    if not customer_id:
        customer = gateway.create_customer(owner_id=owner_id, email=email)
        customer_id = customer["id"]
        repo.merge(acct, stripe_customer_id=customer_id)

    metadata = {"uid": owner_id, "plan": body.plan or "access"}
    subscription_data: dict = {"metadata": metadata}
    if settings.stripe_trial_days > 0 and not acct.trial_used:
        subscription_data["trial_period_days"] = settings.stripe_trial_days

    session = gateway.create_checkout_session(
        mode="subscription",
        customer=customer_id,
        client_reference_id=owner_id,
        line_items=[{"price": settings.stripe_price_access, "quantity": 1}],
        metadata=metadata,
        subscription_data=subscription_data,
        success_url=body.success_url or f"{settings.app_url}/dashboard?success=1",
        cancel_url=body.cancel_url or f"{settings.app_url}/dashboard?cancel=1",
        allow_promotion_codes=True,
    )
    return {"id": session["id"], "url": session["url"]}


@router.post("/portal")
def create_portal_session(
    body: PortalRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
):
    acct = BillingRepository(db).get_account(current_user["id"])  # type: ignore
    if acct is None or not acct.stripe_customer_id:
        raise HTTPException(status_code=404, detail="Customer not found")
    url = gateway.create_portal_url(acct.stripe_customer_id, body.return_url or f"{settings.app_url}/dashboard")
    return {"url": url}


@router.get("/notifications")
def list_notifications(limit: int = 50, db: Session = Depends(get_db),
                       current_user: CurrentUser = Depends(get_current_user)):
    rows = NotificationService(db).list_for(current_user["id"], max(1, min(limit, 200)))  # type: ignore
    return [
        {
            "id": n.id,
            "kind": n.kind,
            "title": n.title,
            "body": n.body,
            "data": n.data or {},
            "read": n.read,
            "createdAt": _iso(n.created_at),
        }
        for n in rows
    ]
