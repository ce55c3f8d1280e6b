"""Stripe webhook reconciliation.

Events may arrive out of order or more than once. Every write is a set/merge
keyed by content (reset by invoice period end, trial credit by the granted
flag, notifications by event id), so redelivery converges instead of
double-applying.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, settings
from app.core.exceptions import UpstreamError
from app.models.billing import UserAccount
from app.repositories.billing_repository import BillingRepository
from app.services.notifications import NotificationService
from app.services.pricing import UsagePricing
from app.services.stripe_gateway import StripeGateway, from_timestamp
from app.services.usage_subscription import USAGE_PLAN, ensure_usage_subscription, is_usage_subscription

logger = logging.getLogger(__name__)

BLOCKING_STATUSES = ("past_due", "unpaid", "incomplete", "incomplete_expired")

Event = Mapping[str, Any]


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _id_of(value: Any) -> str | None:
    """Stripe references arrive either as an id string or an expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value or None


def current_period_end(sub: Mapping[str, Any]) -> int | None:
    raw = sub.get("current_period_end")
    if isinstance(raw, int):
        return raw
    # Newer API versions moved the period onto subscription items
    items = _get(sub, "items", "data") or []
    if items:
        raw = items[0].get("current_period_end")
        if isinstance(raw, int):
            return raw
    return None


def plan_from_subscription(sub: Mapping[str, Any]) -> str | None:
    plan = _get(sub, "metadata", "plan")
    if plan:
        return plan
    items = _get(sub, "items", "data") or []
    if items:
        return _get(items[0], "price", "lookup_key")
    return None


def email_from_invoice(inv: Mapping[str, Any]) -> str | None:
    return inv.get("customer_email") or _get(inv, "customer_details", "email")


def uid_from_invoice(inv: Mapping[str, Any]) -> str | None:
    uid = (
        _get(inv, "metadata", "uid")
        or _get(inv, "subscription_details", "metadata", "uid")
        or _get(inv, "parent", "subscription_details", "metadata", "uid")
    )
    if uid:
        return uid
    lines = _get(inv, "lines", "data") or []
    if lines:
        return _get(lines[0], "subscription_details", "metadata", "uid") or _get(lines[0], "metadata", "uid")
    return None


def subscription_id_from_invoice(inv: Mapping[str, Any]) -> str | None:
    return _id_of(inv.get("subscription")) or _id_of(_get(inv, "parent", "subscription_details", "subscription"))


def subscription_metadata_from_invoice(inv: Mapping[str, Any]) -> Mapping[str, Any]:
    return (
        _get(inv, "subscription_details", "metadata")
        or _get(inv, "parent", "subscription_details", "metadata")
        or {}
    )


class WebhookService:
    def __init__(self, db: Session, gateway: StripeGateway, pricing: UsagePricing, *, cfg: Settings = settings):
        self.db = db
        self.repo = BillingRepository(db)
        self.gateway = gateway
        self.pricing = pricing
        self.cfg = cfg
        self.notifier = NotificationService(db)
        self.handlers: dict[str, Callable[[Event], None]] = {
            "customer.created": self.on_customer,
            "customer.updated": self.on_customer,
            "checkout.session.completed": self.on_checkout_completed,
            "customer.subscription.created": self.on_subscription_changed,
            "customer.subscription.updated": self.on_subscription_changed,
            "customer.subscription.deleted": self.on_subscription_deleted,
            "invoice.paid": self.on_invoice_paid,
            "invoice.payment_failed": self.on_invoice_payment_failed,
        }

    def handle(self, event: Event) -> bool:
        """Reconcile one event. Returns False for ignored event types.

        Reconciliation failures are logged, not raised: Stripe cannot fix a
        local problem by retrying, so the delivery is still acknowledged.
        """
        event_type = event.get("type")
        handler = self.handlers.get(event_type)  # type: ignore[arg-type]
        if handler is None:
            logger.debug("Ignoring Stripe event %s", event_type)
            return False
        logger.info("Stripe event %s (%s)", event_type, event.get("id"))
        try:
            handler(event)
        except Exception:
            self.db.rollback()
            logger.exception("Webhook reconciliation failed for %s (%s)", event_type, event.get("id"))
        return True

    # ---- helpers --------------------------------------------------------------

    def _upsert_account(
        self,
        *,
        uid: str | None = None,
        email: str | None = None,
        customer_id: str | None = None,
        **fields: Any,
    ) -> UserAccount | None:
        acct = self.repo.find_account(uid=uid, email=email, customer_id=customer_id)
        if acct is None:
            logger.warning("Webhook: no user ledger for uid=%s email=%s customer=%s", uid, email, customer_id)
            return None
        if email:
            fields["email"] = email
        if customer_id:
            fields["stripe_customer_id"] = customer_id
        return self.repo.merge(acct, **fields)

    def _subscription_fields(self, subscription_id: str | None, plan: str | None, status: str | None,
                             renewal: int | None) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if subscription_id:
            fields["subscription_id"] = subscription_id
        if plan:
            fields["plan"] = plan
        if status:
            fields["subscription_status"] = status
            fields["subscription_active"] = status in ("active", "trialing")
        if renewal is not None:
            fields["subscription_renewal_at"] = from_timestamp(renewal)
        return fields

    def _upsert_mapping(self, uid: str | None, customer_id: str | None, email: str | None = None) -> None:
        if not (uid and customer_id):
            return
        try:
            self.repo.upsert_customer_mapping(uid, customer_id, email)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Webhook: could not write customer mapping for %s: %s", uid, e)

    def _customer_email(self, customer_id: str | None) -> str | None:
        if not customer_id:
            return None
        try:
            customer = self.gateway.retrieve_customer(customer_id)
        except UpstreamError as e:
            logger.warning("Webhook: customer %s lookup failed: %s", customer_id, e)
            return None
        return customer.get("email") if customer else None

    def _ensure_trial_credit_once(self, acct: UserAccount, customer_id: str | None, status: str | None) -> None:
        if status != "trialing" or acct.trial_credit_ever_granted:
            return
        if not self.repo.grant_trial_credit_once(acct.owner_id, self.cfg.trial_credit_cents, customer_id):
            return
        logger.info("Granted trial credit %s to %s", self.cfg.trial_credit_cents, acct.owner_id)
        if customer_id:
            try:
                self.gateway.update_customer(customer_id, metadata={"trial_credit_granted": "1"})
            except UpstreamError as e:
                logger.warning("Webhook: could not tag customer %s: %s", customer_id, e)

    def _apply_block_state(self, acct: UserAccount, status: str | None, *, allow_clear: bool = True) -> None:
        if status in BLOCKING_STATUSES:
            self.repo.merge(acct, billing_blocked=True, billing_blocked_reason=f"subscription_{status}")
        elif allow_clear and acct.billing_blocked:
            self.repo.merge(acct, billing_blocked=False, billing_blocked_reason=None)

    # ---- customer.* -------------------------------------------------------------

    def on_customer(self, event: Event) -> None:
        customer = event["data"]["object"]
        uid = _get(customer, "metadata", "uid")
        email = customer.get("email")
        self._upsert_account(uid=uid, email=email, customer_id=customer.get("id"))
        self._upsert_mapping(uid, customer.get("id"), email)

    # ---- checkout.session.completed ---------------------------------------------

    def on_checkout_completed(self, event: Event) -> None:
        session = event["data"]["object"]
        uid = _get(session, "metadata", "uid") or session.get("client_reference_id")
        plan = _get(session, "metadata", "plan")
        customer_id = _id_of(session.get("customer"))
        subscription_id = _id_of(session.get("subscription"))
        email = _get(session, "customer_details", "email")

        sub: Mapping[str, Any] | None = None
        if subscription_id:
            sub = self.gateway.retrieve_subscription(subscription_id)
        status = sub.get("status") if sub else None

        fields = self._subscription_fields(subscription_id, plan, status, current_period_end(sub) if sub else None)
        if subscription_id:
            fields["trial_used"] = True
        acct = self._upsert_account(uid=uid, email=email, customer_id=customer_id, **fields)
        self._upsert_mapping(uid, customer_id, email)
        if acct is None or not customer_id:
            return

        self._ensure_trial_credit_once(acct, customer_id, status)

        payment_method = _id_of(sub.get("default_payment_method")) if sub else None
        if payment_method:
            try:
                self.gateway.update_customer(customer_id, invoice_settings={"default_payment_method": payment_method})
            except UpstreamError as e:
                logger.warning("Webhook: could not set default payment method for %s: %s", customer_id, e)

        try:
            ensure_usage_subscription(self.gateway, self.pricing, customer_id, acct.owner_id)
        except UpstreamError as e:
            logger.warning("Webhook: usage subscription not provisioned for %s: %s", customer_id, e)

    # ---- customer.subscription.* --------------------------------------------------

    def on_subscription_changed(self, event: Event) -> None:
        sub = event["data"]["object"]
        uid = _get(sub, "metadata", "uid")
        customer_id = _id_of(sub.get("customer"))
        status = sub.get("status")
        email = None if uid else self._customer_email(customer_id)

        if is_usage_subscription(sub):
            # The usage arrangement never overwrites the access mirror and cannot lift a block
            acct = self._upsert_account(uid=uid, email=email, customer_id=customer_id)
            if acct is not None:
                self._apply_block_state(acct, status, allow_clear=False)
            return

        fields = self._subscription_fields(sub.get("id"), plan_from_subscription(sub), status,
                                           current_period_end(sub))
        acct = self._upsert_account(uid=uid, email=email, customer_id=customer_id, **fields)
        self._upsert_mapping(uid, customer_id, email)
        if acct is None:
            return

        self._apply_block_state(acct, status)
        self._ensure_trial_credit_once(acct, customer_id, status)
        self._notify_subscription_transition(acct, event, sub)

    def _notify_subscription_transition(self, acct: UserAccount, event: Event, sub: Mapping[str, Any]) -> None:
        status = sub.get("status")
        created_event = event.get("type") == "customer.subscription.created"
        previous = _get(event, "data", "previous_attributes", "status")
        data = {"subscriptionId": sub.get("id"), "status": status}

        if status == "trialing" and (created_event or (previous and previous != "trialing")):
            self.notifier.notify(acct.owner_id, "trial_started", data, dedupe_key=f"trial_started:{sub.get('id')}")
            return

        if status != "active":
            return
        if created_event:
            self.notifier.notify(acct.owner_id, "subscription_active", data,
                                 dedupe_key=f"subscription_active:{event.get('id')}")
            return
        if not previous or previous == "active":
            return
        if previous == "trialing":
            age = time.time() - (sub.get("created") or 0)
            if age <= self.cfg.activation_notify_grace_sec:
                # Started active right away; the creation event already notified
                logger.info("Skipping activation notification for %s (created %.0fs ago)", sub.get("id"), age)
                return
        self.notifier.notify(acct.owner_id, "subscription_active", data,
                             dedupe_key=f"subscription_active:{event.get('id')}")

    def on_subscription_deleted(self, event: Event) -> None:
        sub = event["data"]["object"]
        if is_usage_subscription(sub):
            logger.info("Usage subscription %s deleted", sub.get("id"))
            return
        uid = _get(sub, "metadata", "uid")
        customer_id = _id_of(sub.get("customer"))
        email = None if uid else self._customer_email(customer_id)
        self._upsert_account(
            uid=uid,
            email=email,
            customer_id=customer_id,
            **self._subscription_fields(sub.get("id"), None, "canceled", None),
        )

    # ---- invoice.* ------------------------------------------------------------------

    def _is_usage_invoice(self, inv: Mapping[str, Any], subscription_id: str | None) -> bool:
        plan = subscription_metadata_from_invoice(inv).get("plan")
        if plan:
            return plan == USAGE_PLAN
        if not subscription_id:
            return False
        try:
            return is_usage_subscription(self.gateway.retrieve_subscription(subscription_id))
        except UpstreamError as e:
            logger.warning("Webhook: subscription %s lookup failed: %s", subscription_id, e)
            return False

    def on_invoice_paid(self, event: Event) -> None:
        inv = event["data"]["object"]
        paid_at = _get(inv, "status_transitions", "paid_at") or inv.get("created")
        customer_id = _id_of(inv.get("customer"))
        subscription_id = subscription_id_from_invoice(inv)

        acct = self._upsert_account(
            uid=uid_from_invoice(inv),
            email=email_from_invoice(inv),
            customer_id=customer_id,
            last_payment_at=from_timestamp(paid_at),
            billing_blocked=False,
            billing_blocked_reason=None,
            past_due_amount_cents=0,
        )
        if acct is None:
            return

        if self._is_usage_invoice(inv, subscription_id):
            period_end = from_timestamp(inv.get("period_end"))
            if period_end is not None and self.repo.reset_pending(acct.owner_id, period_end):
                logger.info("Reset pending usage for %s (period end %s)", acct.owner_id, period_end)
            return

        if inv.get("billing_reason") == "subscription_cycle":
            self.notifier.notify(
                acct.owner_id,
                "subscription_renewed",
                {"invoiceId": inv.get("id"), "amountPaid": inv.get("amount_paid")},
                dedupe_key=f"subscription_renewed:{inv.get('id')}",
            )

    def on_invoice_payment_failed(self, event: Event) -> None:
        inv = event["data"]["object"]
        amount_due = inv.get("amount_due")
        if amount_due is None:
            amount_due = inv.get("amount_remaining") or 0
        acct = self._upsert_account(
            uid=uid_from_invoice(inv),
            email=email_from_invoice(inv),
            customer_id=_id_of(inv.get("customer")),
            billing_blocked=True,
            billing_blocked_reason="payment_failed",
            past_due_amount_cents=int(amount_due),
        )
        if acct is None:
            return
        self.notifier.notify(
            acct.owner_id,
            "payment_failed",
            {"invoiceId": inv.get("id"), "amountDue": amount_due},
            dedupe_key=f"payment_failed:{inv.get('id')}:{inv.get('attempt_count') or 0}",
        )
