"""Thin adapter over the Stripe SDK.

All assumptions about Stripe object shapes and SDK entry points live here; the
rest of the service talks to ``StripeGateway`` and treats what it returns as
plain mappings (Stripe objects are dict subclasses).
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

import stripe

from app.core.config import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)

# Stripe rejects longer meter event identifiers
MAX_IDEMPOTENCY_KEY_LENGTH = 100


class WebhookSignatureError(Exception):
    pass


@dataclass(frozen=True)
class IdempotencyToken:
    """Dedupe token for one externally billed usage report."""

    owner_id: str
    kind: str
    token: str

    @property
    def key(self) -> str:
        return f"{self.owner_id}:{self.kind}:{self.token}"


def from_timestamp(sec) -> datetime | None:
    """Stripe epoch seconds -> naive UTC datetime, as stored in the ledger."""
    if isinstance(sec, bool) or not isinstance(sec, (int, float)):
        return None
    return datetime.fromtimestamp(sec, tz=timezone.utc).replace(tzinfo=None)


def _upstream(fn):
    """Surface Stripe failures as UpstreamError with Stripe's own message."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e) or e.__class__.__name__
            logger.error("Stripe call %s failed: %s", fn.__name__, message)
            raise UpstreamError(message) from e

    return wrapper


class StripeGateway:
    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret

    def _configure(self) -> None:
        if not self.api_key:
            raise UpstreamError("Stripe not configured")
        stripe.api_key = self.api_key

    # ---- subscriptions --------------------------------------------------------

    @_upstream
    def list_subscriptions(self, customer_id: str) -> list[Mapping[str, Any]]:
        self._configure()
        subs = stripe.Subscription.list(customer=customer_id, status="all", limit=100)
        return list(subs["data"])

    @_upstream
    def retrieve_subscription(self, subscription_id: str, *, expand_prices: bool = False) -> Mapping[str, Any]:
        self._configure()
        if expand_prices:
            return stripe.Subscription.retrieve(subscription_id, expand=["items.data.price"])
        return stripe.Subscription.retrieve(subscription_id)

    @_upstream
    def create_subscription(self, *, customer_id: str, price_ids: list[str], metadata: dict[str, str]) -> Mapping[str, Any]:
        self._configure()
        return stripe.Subscription.create(
            customer=customer_id,
            collection_method="charge_automatically",
            items=[{"price": p} for p in price_ids],
            proration_behavior="none",
            metadata=metadata,
        )

    @_upstream
    def add_subscription_item(self, subscription_id: str, price_id: str) -> Mapping[str, Any]:
        self._configure()
        return stripe.SubscriptionItem.create(subscription=subscription_id, price=price_id)

    # ---- invoices / prices --------------------------------------------------

    @_upstream
    def list_invoices(self, customer_id: str, *, subscription_id: str | None = None, limit: int = 5) -> list[Mapping[str, Any]]:
        self._configure()
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if subscription_id:
            params["subscription"] = subscription_id
        return list(stripe.Invoice.list(**params)["data"])

    @_upstream
    def retrieve_price(self, price_id: str) -> Mapping[str, Any]:
        self._configure()
        return stripe.Price.retrieve(price_id)

    # ---- customers ------------------------------------------------------------

    @_upstream
    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any] | None:
        """Return the customer, or None when it was deleted or never existed."""
        self._configure()
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                return None
            raise
        if customer.get("deleted"):
            return None
        return customer

    @_upstream
    def create_customer(self, *, owner_id: str, email: str | None = None) -> Mapping[str, Any]:
        self._configure()
        params: dict[str, Any] = {"metadata": {"uid": owner_id}}
        if email:
            params["email"] = email
        return stripe.Customer.create(**params)

    @_upstream
    def update_customer(self, customer_id: str, **params: Any) -> Mapping[str, Any]:
        self._configure()
        return stripe.Customer.modify(customer_id, **params)

    # ---- sessions ---------------------------------------------------------------

    @_upstream
    def create_checkout_session(self, **params: Any) -> Mapping[str, Any]:
        self._configure()
        return stripe.checkout.Session.create(**params)

    @_upstream
    def create_portal_url(self, customer_id: str, return_url: str | None = None) -> str:
        self._configure()
        portal = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url or settings.app_url)
        return portal["url"]

    # ---- metering -------------------------------------------------------------

    @_upstream
    def report_meter_event(self, *, event_name: str, customer_id: str, value: int, token: IdempotencyToken) -> str:
        """Report metered usage; the idempotency key is forwarded verbatim so retries are no-ops."""
        self._configure()
        meter_events = getattr(getattr(stripe, "billing", None), "MeterEvent", None)
        if meter_events is None:
            raise UpstreamError("Stripe metered billing not available")
        evt = meter_events.create(
            event_name=event_name,
            payload={"value": str(int(value)), "stripe_customer_id": customer_id},
            identifier=token.key,
            idempotency_key=token.key,
        )
        return evt.get("identifier") or evt.get("id") or token.key

    # ---- webhooks -------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str) -> Mapping[str, Any]:
        """Verify the signature over the raw body before anything parses it."""
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise WebhookSignatureError(str(e) or "Invalid signature") from e


def get_gateway() -> StripeGateway:
    """FastAPI dependency; overridden in tests."""
    return StripeGateway()
