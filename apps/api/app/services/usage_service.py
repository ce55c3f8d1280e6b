from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from app.core.config import Settings, settings
from app.core.exceptions import (
    CapReachedError,
    NotFoundError,
    OverdueInvoiceError,
    PreconditionFailedError,
    ServiceError,
    SubscriptionInvalidError,
    UpstreamError,
    ValidationError,
)
from app.models.billing import UsageRecord, UserAccount
from app.repositories.billing_repository import BillingRepository
from app.services.pricing import PriceCatalog, UsageKind, UsagePricing, price_catalog
from app.services.stripe_gateway import MAX_IDEMPOTENCY_KEY_LENGTH, IdempotencyToken, StripeGateway
from app.services.usage_subscription import (
    UsageSubscriptionProvisioner,
    is_usage_subscription,
    subscription_price_ids,
)

logger = logging.getLogger(__name__)

ALLOWED_ACCESS_STATUSES = ("trialing", "active")


def split_quantity(quantity: int, credit_cents: int, unit_cents: int) -> tuple[int, int]:
    """Split a request into (free, paid) units given the available credit."""
    if unit_cents <= 0:
        raise ValueError("unit_cents must be positive")
    free = min(quantity, max(0, credit_cents) // unit_cents) if credit_cents > 0 else 0
    return free, quantity - free


@dataclass
class UsageResult:
    kind: str
    quantity: int
    unit_cents: int
    credited_cents: int
    charged_cents: int
    currency: Optional[str]
    free_qty: int
    paid_qty: int
    usage_event_id: Optional[str]
    cap_cents: int
    preview: bool = False
    replayed: bool = False

    @classmethod
    def from_record(cls, record: UsageRecord, cap_cents: int) -> "UsageResult":
        return cls(
            kind=record.kind,
            quantity=record.quantity,
            unit_cents=record.unit_cents,
            credited_cents=record.credited_cents,
            charged_cents=record.charged_cents,
            currency=record.currency,
            free_qty=record.free_qty,
            paid_qty=record.paid_qty,
            usage_event_id=record.usage_event_id,
            cap_cents=cap_cents,
            replayed=True,
        )

    def to_response(self) -> dict:
        body = {
            "ok": True,
            "kind": self.kind,
            "quantity": self.quantity,
            "unitCents": self.unit_cents,
            "creditedCents": self.credited_cents,
            "chargedCents": self.charged_cents,
            "currency": self.currency,
            "freeQty": self.free_qty,
            "paidQty": self.paid_qty,
            "usageEventId": self.usage_event_id,
            "capCents": self.cap_cents,
        }
        if self.preview:
            body["preview"] = True
        if self.replayed:
            body["replayed"] = True
        return body


class UsageService:
    """Credit/cap accounting for one metered usage request.

    Steps are separate reads and writes against the ledger and Stripe, not one
    transaction. All checks run before the first mutation. Two concurrent calls
    for the same user can both pass the cap check; the cap is a soft limit and
    Stripe's own collection is the authoritative control.
    """

    def __init__(
        self,
        db: Session,
        gateway: StripeGateway,
        pricing: UsagePricing,
        *,
        catalog: PriceCatalog = price_catalog,
        cfg: Settings = settings,
    ):
        self.db = db
        self.repo = BillingRepository(db)
        self.gateway = gateway
        self.pricing = pricing
        self.catalog = catalog
        self.cfg = cfg
        self.provisioner = UsageSubscriptionProvisioner(gateway, pricing)

    # ---- checks -----------------------------------------------------------------

    def resolve_access_status(self, account: UserAccount) -> str | None:
        """Live access-subscription status, degrading to the cached mirror on lookup failure."""
        try:
            subs = self.gateway.list_subscriptions(account.stripe_customer_id)  # type: ignore[arg-type]
        except UpstreamError as e:
            logger.warning("Subscription lookup failed for %s, using cached status: %s", account.owner_id, e)
            return account.subscription_status
        access_price = self.cfg.stripe_price_access
        for sub in subs:
            if sub.get("status") == "canceled" or is_usage_subscription(sub):
                continue
            if access_price and access_price not in subscription_price_ids(sub):
                continue
            return sub.get("status")
        return None

    def portal_url(self, customer_id: str) -> str | None:
        try:
            return self.gateway.create_portal_url(customer_id, f"{self.cfg.app_url}/dashboard")
        except UpstreamError as e:
            logger.warning("Billing portal URL unavailable for %s: %s", customer_id, e)
            return None

    def check_overdue(self, customer_id: str) -> None:
        try:
            invoices = self.gateway.list_invoices(customer_id, limit=5)
        except UpstreamError as e:
            logger.warning("Overdue invoice check skipped for %s: %s", customer_id, e)
            return
        for inv in invoices:
            remaining = inv.get("amount_remaining") or 0
            if inv.get("status") in ("open", "uncollectible") and remaining > 0:
                logger.info("usage_blocked_overdue customer=%s invoice=%s", customer_id, inv.get("id"))
                raise OverdueInvoiceError(amount_remaining=remaining, portal_url=self.portal_url(customer_id))

    # ---- main flow ----------------------------------------------------------------

    def record_usage(
        self,
        owner_id: str,
        kind: Any,
        quantity: Any = None,
        token: str | None = None,
        *,
        preview: bool = False,
    ) -> UsageResult:
        usage_kind = UsageKind.parse(kind)
        if quantity is None:
            quantity = 1
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        metered = self.pricing.for_kind(usage_kind)
        idem = IdempotencyToken(owner_id, usage_kind.value, token or uuid.uuid4().hex)
        if len(idem.key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError("idempotency key too long")

        account = self.repo.get_account(owner_id)
        if account is None:
            raise NotFoundError("User record not found")
        customer_id = account.stripe_customer_id
        if not customer_id:
            raise PreconditionFailedError("no payer on file", code="no_payer")

        if not preview:
            previous = self.repo.get_usage_record(idem.key)
            if previous is not None:
                logger.info("usage_replayed uid=%s key=%s", owner_id, idem.key)
                return UsageResult.from_record(previous, self.cfg.daily_cap_cents)

        access_status = self.resolve_access_status(account)
        if access_status not in ALLOWED_ACCESS_STATUSES:
            raise SubscriptionInvalidError(access_status)
        self.check_overdue(customer_id)

        logger.info("usage_attempt uid=%s kind=%s quantity=%s preview=%s", owner_id, usage_kind.value, quantity, preview)

        quote = self.catalog.quote(self.gateway, metered.price_id)
        usage_sub = self.provisioner.get_or_create(customer_id, owner_id)
        self.provisioner.ensure_all_prices(usage_sub["id"])
        seed_trial = access_status == "trialing" and not account.trial_credit_ever_granted
        if preview:
            # Same outcome as the writes below, computed without applying them
            reset_due = self.provisioner.pending_reset_due(account, customer_id, usage_sub["id"])
            pending = 0 if reset_due is not None else (account.pending_local_cents or 0)
            credit = self.cfg.trial_credit_cents if seed_trial else (account.trial_credit_cents or 0)
        else:
            self.provisioner.maybe_reset_after_paid_invoice(self.repo, account, customer_id, usage_sub["id"])
            if seed_trial:
                self.repo.grant_trial_credit_once(owner_id, self.cfg.trial_credit_cents, customer_id)
            self.db.refresh(account)
            pending = account.pending_local_cents or 0
            credit = account.trial_credit_cents or 0

        unit = quote.unit_cents
        free_qty, paid_qty = split_quantity(quantity, credit, unit)
        credited = free_qty * unit
        charged = paid_qty * unit

        cap = self.cfg.daily_cap_cents
        if pending >= cap or pending + charged > cap:
            logger.info("usage_cap_reached uid=%s kind=%s pending=%s charge=%s", owner_id, usage_kind.value,
                        pending, charged)
            raise CapReachedError(cap_cents=cap, pending_cents=pending, portal_url=self.portal_url(customer_id))

        result = UsageResult(
            kind=usage_kind.value,
            quantity=quantity,
            unit_cents=unit,
            credited_cents=credited,
            charged_cents=charged,
            currency=quote.currency,
            free_qty=free_qty,
            paid_qty=paid_qty,
            usage_event_id=None,
            cap_cents=cap,
            preview=preview,
        )
        if preview:
            return result

        record = UsageRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            idempotency_key=idem.key,
            kind=usage_kind.value,
            quantity=quantity,
            free_qty=free_qty,
            paid_qty=paid_qty,
            unit_cents=unit,
            credited_cents=credited,
            charged_cents=charged,
            currency=quote.currency,
            created_at=datetime.utcnow(),
        )
        if not self.repo.claim_usage_record(record):
            # Same token accepted concurrently
            winner = self.repo.get_usage_record(idem.key)
            if winner is None:
                # The concurrent call failed and released its claim
                raise UpstreamError("Concurrent request with this idempotency key failed, retry")
            return UsageResult.from_record(winner, cap)

        if paid_qty > 0:
            try:
                result.usage_event_id = self.gateway.report_meter_event(
                    event_name=metered.meter_event,
                    customer_id=customer_id,
                    value=paid_qty,
                    token=idem,
                )
            except ServiceError:
                self.repo.release_usage_record(record)
                logger.error("usage_failed uid=%s kind=%s reason=meter_event", owner_id, usage_kind.value)
                raise

        self.repo.increment(
            owner_id,
            trial_credit_cents=-credited,
            pending_local_cents=charged,
            **{usage_kind.counter_column: quantity},
        )
        if free_qty:
            logger.info("usage_trial_consumed uid=%s kind=%s free_qty=%s unit=%s", owner_id, usage_kind.value,
                        free_qty, unit)
        if paid_qty:
            logger.info("usage_paid_recorded uid=%s kind=%s paid_qty=%s charged=%s", owner_id, usage_kind.value,
                        paid_qty, charged)

        record.usage_event_id = result.usage_event_id
        self.repo.commit()

        logger.info("usage_success uid=%s kind=%s quantity=%s free=%s paid=%s", owner_id, usage_kind.value,
                    quantity, free_qty, paid_qty)
        return result
