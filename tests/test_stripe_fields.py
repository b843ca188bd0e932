"""Stripe payload normalization and price catalog tests."""

from datetime import datetime, timezone

import pytest

from meterproxy.config import Settings
from meterproxy.services import stripe_fields
from meterproxy.services.price_catalog import BASIC, PREMIUM, PRO, PriceCatalog

TS = 1_780_000_000
TS_DT = datetime.fromtimestamp(TS, tz=timezone.utc)


class TestSubscriptionPeriodEnd:
    @pytest.mark.parametrize("key", ["current_period_end", "currentPeriodEnd", "current_period_end_at"])
    def test_top_level_variants(self, key):
        assert stripe_fields.subscription_period_end({key: TS}) == TS_DT

    def test_numeric_string(self):
        assert stripe_fields.subscription_period_end({"current_period_end": str(TS)}) == TS_DT

    def test_falls_back_to_first_item(self):
        sub = {"items": {"data": [{"current_period_end": TS}]}}
        assert stripe_fields.subscription_period_end(sub) == TS_DT

    @pytest.mark.parametrize("value", [None, 0, -1, "soon"])
    def test_missing_or_invalid(self, value):
        assert stripe_fields.subscription_period_end({"current_period_end": value}) is None


class TestInvoiceSubscriptionId:
    def test_string(self):
        assert stripe_fields.invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"

    def test_expanded_object(self):
        assert stripe_fields.invoice_subscription_id({"subscription": {"id": "sub_2"}}) == "sub_2"

    def test_parent_subscription_details(self):
        invoice = {"parent": {"subscription_details": {"subscription": "sub_3"}}}
        assert stripe_fields.invoice_subscription_id(invoice) == "sub_3"

    @pytest.mark.parametrize("invoice", [None, {}, {"subscription": None}, {"subscription": ""}])
    def test_absent(self, invoice):
        assert stripe_fields.invoice_subscription_id(invoice) is None


class TestMisc:
    def test_invoice_period_end_takes_latest_line(self):
        invoice = {"lines": {"data": [{"period": {"end": TS - 100}}, {"period": {"end": TS}}]}}
        assert stripe_fields.invoice_period_end(invoice) == TS_DT

    def test_invoice_period_end_absent(self):
        assert stripe_fields.invoice_period_end({"lines": {"data": []}}) is None

    def test_first_price_id_string_or_object(self):
        assert stripe_fields.first_price_id({"items": {"data": [{"price": {"id": "price_pro"}}]}}) == "price_pro"
        assert stripe_fields.first_price_id({"items": {"data": [{"price": "price_basic"}]}}) == "price_basic"
        assert stripe_fields.first_price_id({"items": {"data": []}}) is None

    def test_customer_and_metadata(self):
        obj = {"customer": {"id": "cus_1"}, "metadata": {"user_id": "u1"}}
        assert stripe_fields.customer_id(obj) == "cus_1"
        assert stripe_fields.metadata_user_id(obj) == "u1"
        assert stripe_fields.metadata_user_id({"metadata": {"userId": "u2"}}) == "u2"
        assert stripe_fields.metadata_user_id({}) is None


class TestPriceCatalog:
    @pytest.fixture
    def catalog(self):
        return PriceCatalog.from_settings(Settings(_env_file=None))

    @pytest.mark.parametrize(
        "price_id,plan",
        [("price_basic", BASIC), ("price_pro", PRO), ("price_premium", PREMIUM)],
    )
    def test_known_prices(self, catalog, price_id, plan):
        assert catalog.resolve(price_id) == plan

    def test_quotas(self):
        assert (BASIC.quota, PRO.quota, PREMIUM.quota) == (10_000, 50_000, 200_000)

    @pytest.mark.parametrize("price_id", ["price_unknown", None, ""])
    def test_unknown_falls_back_to_basic(self, catalog, price_id):
        assert catalog.resolve(price_id) == BASIC

    def test_configured_price_ids(self):
        catalog = PriceCatalog.from_settings(Settings(_env_file=None, stripe_price_pro="price_1AbCdEf"))
        assert catalog.resolve("price_1AbCdEf") == PRO
        assert catalog.resolve("price_pro") == BASIC
