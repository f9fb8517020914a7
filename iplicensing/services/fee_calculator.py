"""
License fee calculation

Pure pricing rules: base rate per asset type scaled by scope, exclusivity,
duration and territory, then adjusted for the brand's lifetime spend.
"""
from dataclasses import dataclass, field
from typing import Any

from iplicensing.config import settings
from iplicensing.models.ip_asset import AssetType
from iplicensing.models.license import LicenseType

BASE_RATES_CENTS: dict[AssetType, int] = {
    AssetType.IMAGE: 50000,
    AssetType.VIDEO: 100000,
    AssetType.AUDIO: 75000,
    AssetType.DOCUMENT: 30000,
    AssetType.MODEL_3D: 75000,
    AssetType.OTHER: 50000,
}

MEDIA_MULTIPLIERS = {
    "digital": 1.0,
    "print": 1.2,
    "broadcast": 2.0,
    "ooh": 1.8,
}

PLACEMENT_MULTIPLIERS = {
    "social": 1.0,
    "website": 1.1,
    "email": 0.9,
    "paid_ads": 1.5,
    "packaging": 1.4,
}

EXCLUSIVITY_MULTIPLIERS: dict[LicenseType, float] = {
    LicenseType.EXCLUSIVE: 3.0,
    LicenseType.EXCLUSIVE_TERRITORY: 1.8,
    LicenseType.NON_EXCLUSIVE: 1.0,
}

# (max months, multiplier); beyond 36 months add 0.5 per additional year, prorated
DURATION_TIERS = [
    (1, 1.0),
    (3, 1.8),
    (6, 2.5),
    (12, 4.0),
    (24, 7.0),
    (36, 9.5),
]

# (minimum lifetime spend in cents, discount)
MARKET_ADJUSTMENTS = [
    (1_000_000, 0.10),
    (500_000, 0.05),
    (250_000, 0.03),
]


@dataclass
class FeeBreakdownItem:
    label: str
    amount_cents: int
    type: str


@dataclass
class FeeCalculation:
    base_fee_cents: int
    scope_multiplier: float
    exclusivity_multiplier: float
    duration_multiplier: float
    territory_multiplier: float
    subtotal_cents: int
    market_adjustment_cents: int
    total_fee_cents: int
    platform_fee_cents: int
    creator_net_cents: int
    exclusivity_premium_cents: int
    minimum_enforced: bool
    breakdown: list[FeeBreakdownItem] = field(default_factory=list)


def _selected(flags: dict[str, Any] | None) -> list[str]:
    return [key for key, enabled in (flags or {}).items() if enabled]


def scope_multiplier(scope: dict[str, Any]) -> float:
    media = [m for m in _selected(scope.get("media")) if m in MEDIA_MULTIPLIERS]
    placements = [p for p in _selected(scope.get("placement")) if p in PLACEMENT_MULTIPLIERS]

    media_avg = (
        sum(MEDIA_MULTIPLIERS[m] for m in media) / len(media) if media else 1.0
    )
    placement_avg = (
        sum(PLACEMENT_MULTIPLIERS[p] for p in placements) / len(placements) if placements else 1.0
    )

    multiplier = media_avg * 0.6 + placement_avg * 0.4
    if len(media) >= 3 and len(placements) >= 3:
        return multiplier * 1.2
    return max(multiplier, 0.5)


def duration_multiplier(duration_days: int) -> float:
    months = duration_days / 30
    for max_months, multiplier in DURATION_TIERS:
        if months <= max_months:
            return multiplier
    extra_years = (months - 36) / 12
    return 9.5 + extra_years * 0.5


def territory_multiplier(territories: list[str] | None) -> float:
    if not territories or "GLOBAL" in territories:
        return 2.0
    if len(territories) >= 3:
        return 1.5
    return 1.0


def market_discount(brand_total_spent_cents: int) -> float:
    for min_spend, discount in MARKET_ADJUSTMENTS:
        if brand_total_spent_cents >= min_spend:
            return discount
    return 0.0


def calculate_fee(
    asset_type: AssetType,
    license_type: LicenseType,
    scope: dict[str, Any],
    duration_days: int,
    brand_total_spent_cents: int = 0,
) -> FeeCalculation:
    base = BASE_RATES_CENTS.get(asset_type, BASE_RATES_CENTS[AssetType.OTHER])
    territories = ((scope.get("geographic") or {}).get("territories")) or []

    scope_mult = scope_multiplier(scope)
    exclusivity_mult = EXCLUSIVITY_MULTIPLIERS[license_type]
    duration_mult = duration_multiplier(duration_days)
    territory_mult = territory_multiplier(territories)

    subtotal = round(base * scope_mult * exclusivity_mult * duration_mult * territory_mult)

    discount = market_discount(brand_total_spent_cents)
    market_adjustment = -round(subtotal * discount)
    total = subtotal + market_adjustment

    minimum_enforced = False
    if total < settings.minimum_license_fee_cents:
        total = settings.minimum_license_fee_cents
        minimum_enforced = True

    platform_fee = round(total * settings.platform_fee_bps / 10000)
    exclusivity_premium = round(base * (exclusivity_mult - 1)) if exclusivity_mult > 1 else 0

    breakdown = [
        FeeBreakdownItem("Base rate", base, "base"),
        FeeBreakdownItem(f"Scope x{scope_mult:.2f}", round(base * (scope_mult - 1)), "multiplier"),
    ]
    if exclusivity_premium:
        breakdown.append(FeeBreakdownItem("Exclusivity premium", exclusivity_premium, "premium"))
    breakdown.append(FeeBreakdownItem(f"Duration x{duration_mult:.1f}", 0, "multiplier"))
    breakdown.append(FeeBreakdownItem(f"Territory x{territory_mult:.1f}", 0, "multiplier"))
    if market_adjustment:
        breakdown.append(FeeBreakdownItem("Market adjustment", market_adjustment, "discount"))
    if minimum_enforced:
        breakdown.append(FeeBreakdownItem("Minimum fee applied", total - (subtotal + market_adjustment), "minimum"))
    breakdown.append(FeeBreakdownItem("Platform fee", -platform_fee, "fee"))

    return FeeCalculation(
        base_fee_cents=base,
        scope_multiplier=scope_mult,
        exclusivity_multiplier=exclusivity_mult,
        duration_multiplier=duration_mult,
        territory_multiplier=territory_mult,
        subtotal_cents=subtotal,
        market_adjustment_cents=market_adjustment,
        total_fee_cents=total,
        platform_fee_cents=platform_fee,
        creator_net_cents=total - platform_fee,
        exclusivity_premium_cents=exclusivity_premium,
        minimum_enforced=minimum_enforced,
        breakdown=breakdown,
    )


def suggested_rev_share_bps(fee_cents: int) -> int:
    """Lower upfront fees are balanced with a larger revenue share."""
    if fee_cents == 0:
        return 2000
    if fee_cents < 10000:
        return 1500
    if fee_cents < 50000:
        return 1000
    if fee_cents < 100000:
        return 500
    return 0


def estimate_total_value(fee_cents: int, rev_share_bps: int, projected_revenue_cents: int) -> dict[str, int]:
    rev_share_cents = round(projected_revenue_cents * rev_share_bps / 10000)
    return {
        "fee_cents": fee_cents,
        "rev_share_cents": rev_share_cents,
        "total_cents": fee_cents + rev_share_cents,
    }
