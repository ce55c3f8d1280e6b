from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Mapping

from app.core.config import Settings, settings
from app.core.exceptions import PreconditionFailedError, UpstreamError, ValidationError
from app.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class UsageKind(str, enum.Enum):
    script = "script"
    voice = "voice"
    lipsync = "lipsync"
    edit = "edit"

    @classmethod
    def parse(cls, raw) -> "UsageKind":
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError("Invalid kind") from None

    @property
    def counter_column(self) -> str:
        return f"usage_{self.value}"


@dataclass(frozen=True)
class MeteredPrice:
    price_id: str
    meter_event: str


@dataclass(frozen=True)
class UsagePricing:
    """Usage kind -> Stripe metered price and Billing Meter event name."""

    prices: Mapping[UsageKind, MeteredPrice]

    @classmethod
    def from_settings(cls, cfg: Settings) -> "UsagePricing":
        return cls(prices={
            kind: MeteredPrice(
                price_id=getattr(cfg, f"stripe_price_usage_{kind.value}") or "",
                meter_event=getattr(cfg, f"stripe_meter_event_{kind.value}") or "",
            )
            for kind in UsageKind
        })

    def missing(self) -> list[str]:
        gaps = []
        for kind in UsageKind:
            entry = self.prices.get(kind)
            if entry is None or not entry.price_id:
                gaps.append(f"STRIPE_PRICE_USAGE_{kind.value.upper()}")
            if entry is None or not entry.meter_event:
                gaps.append(f"STRIPE_METER_EVENT_{kind.value.upper()}")
        return gaps

    def validate(self) -> "UsagePricing":
        gaps = self.missing()
        if gaps:
            raise RuntimeError(f"Usage pricing not configured: {', '.join(gaps)}")
        return self

    def for_kind(self, kind: UsageKind) -> MeteredPrice:
        entry = self.prices.get(kind)
        if entry is None or not entry.price_id:
            raise PreconditionFailedError("Price ID not configured for this kind", code="missing_config")
        if not entry.meter_event:
            raise PreconditionFailedError("Meter event not configured for this kind", code="missing_config")
        return entry

    @property
    def price_ids(self) -> list[str]:
        return [p.price_id for p in self.prices.values() if p.price_id]


@dataclass(frozen=True)
class PriceQuote:
    unit_cents: int
    currency: str | None


class PriceCatalog:
    """Read-through cache of Stripe unit prices.

    Process-local and without TTL: an out-of-band price change is only seen
    after a restart, and separate instances may disagree until then.
    """

    def __init__(self):
        self._cache: dict[str, PriceQuote] = {}
        self._lock = threading.Lock()

    def quote(self, gateway: StripeGateway, price_id: str) -> PriceQuote:
        if not price_id:
            raise PreconditionFailedError("Missing price id", code="missing_config")
        cached = self._cache.get(price_id)
        if cached is not None:
            return cached

        price = gateway.retrieve_price(price_id)
        unit = price.get("unit_amount")
        if not isinstance(unit, int):
            raw = price.get("unit_amount_decimal")
            try:
                unit = round(float(raw)) if raw is not None else None
            except (TypeError, ValueError):
                unit = None
        if not isinstance(unit, int) or unit <= 0:
            raise UpstreamError(f"Price {price_id} has no unit_amount")

        quote = PriceQuote(unit_cents=unit, currency=price.get("currency"))
        with self._lock:
            self._cache[price_id] = quote
        logger.debug("Cached price %s: %s %s", price_id, quote.unit_cents, quote.currency)
        return quote

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


price_catalog = PriceCatalog()


def get_pricing() -> UsagePricing:
    return UsagePricing.from_settings(settings)
