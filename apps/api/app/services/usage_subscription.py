from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from app.models.billing import UserAccount
from app.repositories.billing_repository import BillingRepository
from app.services.pricing import UsagePricing
from app.services.stripe_gateway import StripeGateway, from_timestamp

logger = logging.getLogger(__name__)

USAGE_PLAN = "usage"


def is_usage_subscription(sub: Mapping[str, Any]) -> bool:
    return ((sub.get("metadata") or {}).get("plan")) == USAGE_PLAN


def subscription_price_ids(sub: Mapping[str, Any]) -> set[str]:
    ids = set()
    for item in (sub.get("items") or {}).get("data") or []:
        price = item.get("price")
        price_id = price.get("id") if isinstance(price, Mapping) else price
        if price_id:
            ids.add(price_id)
    return ids


class UsageSubscriptionProvisioner:
    """Keeps one recurring metered subscription per payer covering every usage price."""

    def __init__(self, gateway: StripeGateway, pricing: UsagePricing):
        self.gateway = gateway
        self.pricing = pricing

    def find(self, customer_id: str) -> Mapping[str, Any] | None:
        for sub in self.gateway.list_subscriptions(customer_id):
            if is_usage_subscription(sub) and sub.get("status") != "canceled":
                return sub
        return None

    def get_or_create(self, customer_id: str, owner_id: str | None = None) -> Mapping[str, Any]:
        existing = self.find(customer_id)
        if existing is not None:
            return existing
        metadata = {"plan": USAGE_PLAN}
        if owner_id:
            metadata["uid"] = owner_id
        sub = self.gateway.create_subscription(
            customer_id=customer_id,
            price_ids=self.pricing.price_ids,
            metadata=metadata,
        )
        logger.info("Created usage subscription %s for customer %s", sub.get("id"), customer_id)
        return sub

    def ensure_all_prices(self, subscription_id: str) -> list[str]:
        """Add an item for every configured price missing from the subscription; returns the added ids."""
        sub = self.gateway.retrieve_subscription(subscription_id, expand_prices=True)
        existing = subscription_price_ids(sub)

        added = []
        for price_id in self.pricing.price_ids:
            if price_id not in existing:
                self.gateway.add_subscription_item(subscription_id, price_id)
                added.append(price_id)
        if added:
            logger.info("Added usage prices %s to subscription %s", added, subscription_id)
        return added

    def pending_reset_due(self, account: UserAccount, customer_id: str, subscription_id: str) -> datetime | None:
        """Period end of the latest paid invoice when it has not reset pending usage yet."""
        invoices = self.gateway.list_invoices(customer_id, subscription_id=subscription_id, limit=5)
        paid = next((inv for inv in invoices if inv.get("status") == "paid"), None)
        if paid is None:
            return None
        period_end = from_timestamp(paid.get("period_end"))
        if period_end is None or account.pending_local_reset_at == period_end:
            return None
        return period_end

    def maybe_reset_after_paid_invoice(
        self,
        repo: BillingRepository,
        account: UserAccount,
        customer_id: str,
        subscription_id: str,
    ) -> bool:
        """Zero pending usage when a paid invoice newer than the last reset exists.

        Keyed by the invoice period end, so several paid invoices sharing one
        period end reset only once.
        """
        period_end = self.pending_reset_due(account, customer_id, subscription_id)
        if period_end is None:
            return False
        applied = repo.reset_pending(account.owner_id, period_end)
        if applied:
            logger.info("Reset pending usage for %s (paid period end %s)", account.owner_id, period_end.isoformat())
        return applied


def ensure_usage_subscription(gateway: StripeGateway, pricing: UsagePricing, customer_id: str,
                              owner_id: str | None = None) -> Mapping[str, Any] | None:
    if not pricing.price_ids:
        return None
    provisioner = UsageSubscriptionProvisioner(gateway, pricing)
    sub = provisioner.get_or_create(customer_id, owner_id)
    provisioner.ensure_all_prices(sub["id"])
    return sub
