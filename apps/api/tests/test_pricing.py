import pytest

from app.core.config import settings
from app.core.exceptions import PreconditionFailedError, UpstreamError, ValidationError
from app.services.pricing import PriceCatalog, UsageKind, UsagePricing


def test_configured_table_validates(pricing):
    assert pricing.validate() is pricing
    assert pricing.for_kind(UsageKind.voice).meter_event == "voice_units"
    assert sorted(pricing.price_ids) == ["price_edit", "price_lipsync", "price_script", "price_voice"]


def test_missing_entries_fail_fast():
    cfg = settings.model_copy(update={"stripe_price_usage_lipsync": "", "stripe_meter_event_edit": ""})
    table = UsagePricing.from_settings(cfg)

    assert table.missing() == ["STRIPE_PRICE_USAGE_LIPSYNC", "STRIPE_METER_EVENT_EDIT"]
    with pytest.raises(RuntimeError, match="STRIPE_PRICE_USAGE_LIPSYNC"):
        table.validate()
    with pytest.raises(PreconditionFailedError) as exc:
        table.for_kind(UsageKind.lipsync)
    assert exc.value.code == "missing_config"


@pytest.mark.parametrize("raw", ["video", "", None, "SCRIPT"])
def test_unknown_kind(raw):
    with pytest.raises(ValidationError, match="Invalid kind"):
        UsageKind.parse(raw)


def test_counter_column():
    assert UsageKind.lipsync.counter_column == "usage_lipsync"


class TestPriceCatalog:
    def test_quote_is_cached(self, gateway):
        catalog = PriceCatalog()

        first = catalog.quote(gateway, "price_script")
        gateway.prices["price_script"] = {"id": "price_script", "unit_amount": 999, "currency": "usd"}
        second = catalog.quote(gateway, "price_script")

        assert first == second
        assert second.unit_cents == 100
        assert gateway.price_lookups == 1

    def test_clear_drops_cached_quotes(self, gateway):
        catalog = PriceCatalog()
        catalog.quote(gateway, "price_script")
        gateway.prices["price_script"] = {"id": "price_script", "unit_amount": 150, "currency": "eur"}

        catalog.clear()

        quote = catalog.quote(gateway, "price_script")
        assert (quote.unit_cents, quote.currency) == (150, "eur")

    def test_decimal_amount_fallback(self, gateway):
        gateway.prices["price_voice"] = {"id": "price_voice", "unit_amount": None,
                                         "unit_amount_decimal": "250", "currency": "usd"}

        assert PriceCatalog().quote(gateway, "price_voice").unit_cents == 250

    @pytest.mark.parametrize("amount", [None, 0])
    def test_unpriced_is_upstream_error(self, gateway, amount):
        gateway.prices["price_edit"] = {"id": "price_edit", "unit_amount": amount, "currency": "usd"}

        with pytest.raises(UpstreamError):
            PriceCatalog().quote(gateway, "price_edit")

    def test_empty_price_id(self, gateway):
        with pytest.raises(PreconditionFailedError):
            PriceCatalog().quote(gateway, "")

