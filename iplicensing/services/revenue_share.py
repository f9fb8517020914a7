"""
Revenue share validation for license terms
"""
from dataclasses import dataclass, field

HIGH_REV_SHARE_BPS = 5000
HIGH_HYBRID_FEE_CENTS = 100000
LOW_FEE_CENTS = 10000


@dataclass
class RevenueShareValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_revenue_share(
    fee_cents: int,
    rev_share_bps: int,
    owner_shares_bps: list[int],
) -> RevenueShareValidation:
    """
    Check license money terms against the asset's ownership split.

    Errors make the terms unusable; warnings flag terms that are legal but
    worth a second look before sending to the creator.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if rev_share_bps < 0:
        errors.append("Revenue share cannot be negative")
    if rev_share_bps > 10000:
        errors.append("Revenue share cannot exceed 100% (10000 bps)")
    if fee_cents == 0 and rev_share_bps == 0:
        errors.append("License must have an upfront fee, a revenue share, or both")

    if not owner_shares_bps:
        errors.append("Asset has no active owners to receive royalties")
    elif sum(owner_shares_bps) != 10000:
        errors.append(
            f"Asset ownership shares must sum to 10000 bps, got {sum(owner_shares_bps)}"
        )

    if rev_share_bps >= HIGH_REV_SHARE_BPS:
        warnings.append("Revenue share of 50% or more is unusually high")
    if rev_share_bps == 0 and fee_cents > 0:
        warnings.append("Flat fee only: creators will not earn from ongoing usage")
    if fee_cents > 0 and rev_share_bps > 0:
        warnings.append("Hybrid model: upfront fee plus revenue share")
        if fee_cents >= HIGH_HYBRID_FEE_CENTS:
            warnings.append("High upfront fee combined with revenue share may deter brands")
    if fee_cents == 0 and rev_share_bps > 0:
        warnings.append("Revenue share only: creator earnings depend entirely on brand revenue")
    if 0 < fee_cents < LOW_FEE_CENTS and rev_share_bps == 0:
        warnings.append("Low fee with no revenue share")
    if len(owner_shares_bps) > 1:
        warnings.append(f"Royalties will be split among {len(owner_shares_bps)} owners")

    return RevenueShareValidation(valid=not errors, errors=errors, warnings=warnings)
