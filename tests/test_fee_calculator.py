"""
Tests for license fee pricing and revenue share validation.
"""
import pytest

from iplicensing.config import settings
from iplicensing.models.ip_asset import AssetType
from iplicensing.models.license import LicenseType
from iplicensing.services.fee_calculator import (
    calculate_fee,
    duration_multiplier,
    estimate_total_value,
    market_discount,
    scope_multiplier,
    suggested_rev_share_bps,
    territory_multiplier,
)
from iplicensing.services.revenue_share import validate_revenue_share

BASIC_SCOPE = {
    "media": {"digital": True},
    "placement": {"social": True},
    "geographic": {"territories": ["US"]},
}


class TestMultipliers:
    def test_basic_scope_is_neutral(self):
        assert scope_multiplier(BASIC_SCOPE) == pytest.approx(1.0)

    def test_broad_scope_gets_bonus(self):
        scope = {
            "media": {"digital": True, "print": True, "broadcast": True},
            "placement": {"social": True, "website": True, "paid_ads": True},
        }
        media_avg = (1.0 + 1.2 + 2.0) / 3
        placement_avg = (1.0 + 1.1 + 1.5) / 3
        assert scope_multiplier(scope) == pytest.approx((media_avg * 0.6 + placement_avg * 0.4) * 1.2)

    def test_unselected_flags_are_ignored(self):
        scope = {"media": {"digital": True, "broadcast": False}, "placement": {}}
        assert scope_multiplier(scope) == pytest.approx(1.0)

    @pytest.mark.parametrize(
        "days, expected",
        [(30, 1.0), (90, 1.8), (180, 2.5), (360, 4.0), (365, 7.0), (1080, 9.5)],
    )
    def test_duration_tiers(self, days, expected):
        assert duration_multiplier(days) == pytest.approx(expected)

    def test_duration_beyond_three_years(self):
        assert duration_multiplier(1200) == pytest.approx(9.5 + (40 - 36) / 12 * 0.5)

    def test_territories(self):
        assert territory_multiplier([]) == 2.0
        assert territory_multiplier(None) == 2.0
        assert territory_multiplier(["US", "GLOBAL"]) == 2.0
        assert territory_multiplier(["US", "CA", "MX"]) == 1.5
        assert territory_multiplier(["US"]) == 1.0

    def test_market_discount_tiers(self):
        assert market_discount(0) == 0.0
        assert market_discount(250_000) == 0.03
        assert market_discount(500_000) == 0.05
        assert market_discount(2_000_000) == 0.10


class TestCalculateFee:
    def test_basic_image_license(self):
        fee = calculate_fee(AssetType.IMAGE, LicenseType.NON_EXCLUSIVE, BASIC_SCOPE, 30)
        assert fee.base_fee_cents == 50000
        assert fee.subtotal_cents == 50000
        assert fee.total_fee_cents == 50000
        assert fee.platform_fee_cents == 5000
        assert fee.creator_net_cents == 45000
        assert fee.exclusivity_premium_cents == 0
        assert not fee.minimum_enforced

    def test_exclusive_license_premium(self):
        fee = calculate_fee(AssetType.IMAGE, LicenseType.EXCLUSIVE, BASIC_SCOPE, 30)
        assert fee.total_fee_cents == 150000
        assert fee.exclusivity_premium_cents == 100000
        assert any(item.type == "premium" for item in fee.breakdown)

    def test_large_brand_discount(self):
        fee = calculate_fee(
            AssetType.IMAGE,
            LicenseType.NON_EXCLUSIVE,
            BASIC_SCOPE,
            30,
            brand_total_spent_cents=1_000_000,
        )
        assert fee.market_adjustment_cents == -5000
        assert fee.total_fee_cents == 45000

    def test_minimum_fee_enforced(self, monkeypatch):
        monkeypatch.setattr(settings, "minimum_license_fee_cents", 80000)
        fee = calculate_fee(AssetType.IMAGE, LicenseType.NON_EXCLUSIVE, BASIC_SCOPE, 30)
        assert fee.total_fee_cents == 80000
        assert fee.minimum_enforced
        assert fee.breakdown[-2].type == "minimum"
        assert fee.breakdown[-2].amount_cents == 30000

    def test_breakdown_ends_with_platform_fee(self):
        fee = calculate_fee(AssetType.VIDEO, LicenseType.NON_EXCLUSIVE, BASIC_SCOPE, 30)
        assert fee.breakdown[0].amount_cents == 100000
        assert fee.breakdown[-1].type == "fee"
        assert fee.breakdown[-1].amount_cents == -fee.platform_fee_cents


class TestSuggestions:
    @pytest.mark.parametrize(
        "fee_cents, expected",
        [(0, 2000), (5000, 1500), (20000, 1000), (75000, 500), (150000, 0)],
    )
    def test_suggested_rev_share(self, fee_cents, expected):
        assert suggested_rev_share_bps(fee_cents) == expected

    def test_estimate_total_value(self):
        assert estimate_total_value(50000, 1000, 200000) == {
            "fee_cents": 50000,
            "rev_share_cents": 20000,
            "total_cents": 70000,
        }


class TestRevenueShareValidation:
    def test_flat_fee_is_valid_with_warning(self):
        result = validate_revenue_share(50000, 0, [10000])
        assert result.valid
        assert any("Flat fee" in w for w in result.warnings)

    def test_no_fee_and_no_share_is_invalid(self):
        result = validate_revenue_share(0, 0, [10000])
        assert not result.valid

    def test_share_over_full_is_invalid(self):
        result = validate_revenue_share(0, 10001, [10000])
        assert not result.valid

    def test_broken_ownership_split_is_invalid(self):
        result = validate_revenue_share(50000, 1000, [6000, 3000])
        assert not result.valid
        assert any("sum to 10000" in e for e in result.errors)

    def test_no_owners_is_invalid(self):
        assert not validate_revenue_share(50000, 1000, []).valid

    def test_hybrid_with_multiple_owners_warns(self):
        result = validate_revenue_share(150000, 6000, [5000, 5000])
        assert result.valid
        assert len(result.warnings) == 4
