"""Tests for quality_filter.py — read-time public eligibility."""

from __future__ import annotations

from datetime import timedelta

import pytest

from deal_lifecycle import to_iso
from quality_filter import (
    filter_public_deals,
    is_deal_public,
    is_price_sane,
    is_source_fresh,
    meets_sponsored_quality_threshold,
)

SITE = "trendsinusa"


# =====================================================================
# is_deal_public
# =====================================================================


class TestIsDealPublic:

    def test_baseline_is_public(self, make_deal, make_product, now):
        assert is_deal_public(make_deal(), make_product(), SITE, now) is True

    def test_price_increase_never_public(self, make_deal, make_product, now):
        deal = make_deal(old_price_cents=100, current_price_cents=150, discount_percent=None)
        assert is_deal_public(deal, make_product(), SITE, now) is False

    def test_old_price_equal_is_not_a_markdown(self, make_deal, make_product, now):
        deal = make_deal(old_price_cents=5999, current_price_cents=5999)
        assert is_deal_public(deal, make_product(), SITE, now) is False

    def test_no_old_price_allowed(self, make_deal, make_product, now):
        deal = make_deal(old_price_cents=None, discount_percent=None)
        assert is_deal_public(deal, make_product(), SITE, now) is True

    @pytest.mark.parametrize("price", [0, -100, None])
    def test_non_positive_price(self, make_deal, make_product, now, price):
        deal = make_deal(current_price_cents=price, old_price_cents=None)
        assert is_deal_public(deal, make_product(), SITE, now) is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"approved": False},
            {"approved": None},
            {"suppressed": True},
            {"suppressed": None},
            {"status": "EXPIRED"},
            {"status": "SCHEDULED"},
        ],
    )
    def test_manual_and_lifecycle_gates(self, make_deal, make_product, now, overrides):
        assert is_deal_public(make_deal(**overrides), make_product(), SITE, now) is False

    def test_stale_status_loses_to_clock(self, make_deal, make_product, now):
        deal = make_deal(status="ACTIVE", expires_at=to_iso(now - timedelta(seconds=1)))
        assert is_deal_public(deal, make_product(), SITE, now) is False

    def test_expiry_equal_to_now_not_public(self, make_deal, make_product, now):
        deal = make_deal(status="EXPIRING_1H", expires_at=to_iso(now))
        assert is_deal_public(deal, make_product(), SITE, now) is False

    def test_requires_site_tag(self, make_deal, make_product, now):
        product = make_product(tags=["site:trendsincanada", "featured"])
        assert is_deal_public(make_deal(), product, SITE, now) is False

    def test_blocked_product(self, make_deal, make_product, now):
        assert is_deal_public(make_deal(), make_product(blocked=True), SITE, now) is False

    def test_blank_title(self, make_deal, make_product, now):
        assert is_deal_public(make_deal(), make_product(title="   "), SITE, now) is False

    def test_empty_product_fails_closed(self, make_deal, now):
        assert is_deal_public(make_deal(), {}, SITE, now) is False


class TestSourceFreshness:

    def test_within_window(self, make_product, now):
        product = make_product(source_fetched_at=to_iso(now - timedelta(hours=71)))
        assert is_source_fresh(product, now) is True

    def test_past_window(self, make_product, now):
        product = make_product(source_fetched_at=to_iso(now - timedelta(hours=73)))
        assert is_source_fresh(product, now) is False

    def test_missing_fails_closed(self, make_deal, make_product, now):
        product = make_product()
        product["source_fetched_at"] = None
        assert is_source_fresh(product, now) is False
        assert is_deal_public(make_deal(), product, SITE, now) is False


# =====================================================================
# Price sanity and sponsored threshold
# =====================================================================


class TestPriceSanity:

    def test_sane(self):
        assert is_price_sane({"current_price_cents": 500, "old_price_cents": 1000}) is True
        assert is_price_sane({"current_price_cents": 500, "old_price_cents": None}) is True
        assert is_price_sane({"current_price_cents": 500, "old_price_cents": 500}) is True

    def test_insane(self):
        assert is_price_sane({"current_price_cents": 150, "old_price_cents": 100}) is False
        assert is_price_sane({"current_price_cents": 0}) is False
        assert is_price_sane({}) is False


class TestSponsoredThreshold:

    @pytest.mark.parametrize(
        "discount, expected",
        [(4, False), (5, True), (40, True), (95, True), (96, False)],
    )
    def test_stored_discount_bounds(self, make_deal, discount, expected):
        deal = make_deal(discount_percent=discount)
        assert meets_sponsored_quality_threshold(deal) is expected

    def test_derived_discount(self, make_deal):
        deal = make_deal(current_price_cents=9600, old_price_cents=10000, discount_percent=None)
        assert meets_sponsored_quality_threshold(deal) is False
        deal = make_deal(current_price_cents=9500, old_price_cents=10000, discount_percent=None)
        assert meets_sponsored_quality_threshold(deal) is True

    def test_requires_real_markdown(self, make_deal):
        assert meets_sponsored_quality_threshold(make_deal(old_price_cents=None)) is False
        deal = make_deal(old_price_cents=5999, current_price_cents=5999, discount_percent=50)
        assert meets_sponsored_quality_threshold(deal) is False


# =====================================================================
# filter_public_deals
# =====================================================================


def test_filter_public_deals(make_deal, make_product, now):
    good = {**make_deal(id="good"), "product": make_product()}
    hidden = {**make_deal(id="hidden", suppressed=True), "product": make_product()}
    shallow = {**make_deal(id="shallow", discount_percent=3), "product": make_product()}
    orphan = make_deal(id="orphan")

    rows = [good, hidden, shallow, orphan]

    assert [r["id"] for r in filter_public_deals(rows, SITE, now)] == ["good", "shallow"]
    assert [r["id"] for r in filter_public_deals(rows, SITE, now, sponsored=True)] == ["good"]
