"""
Integer-cent money math for royalties

All amounts are integer cents and all shares are basis points
(10000 bps = 100%). Fractional cents are resolved with banker's rounding
so that rounding bias does not accumulate across many statements.
"""
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal

BPS_DENOMINATOR = 10000


def bankers_round(value: float | Decimal) -> int:
    """Round half to even."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def calculate_royalty_share(revenue_cents: int, share_bps: int) -> int:
    if share_bps < 0 or share_bps > BPS_DENOMINATOR:
        raise ValueError(f"Invalid share basis points: {share_bps}. Must be between 0 and 10000")
    return bankers_round(Decimal(revenue_cents) * Decimal(share_bps) / Decimal(BPS_DENOMINATOR))


def prorate_revenue(total_revenue_cents: int, days_active: int, total_days: int) -> int:
    """Scale revenue by the fraction of the period the license was active."""
    if total_days <= 0 or days_active <= 0:
        return 0
    if days_active >= total_days:
        return total_revenue_cents
    return bankers_round(Decimal(total_revenue_cents) * Decimal(days_active) / Decimal(total_days))


def calculate_percentage(part: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(part / total * 100, 2)


def bps_to_percentage(bps: int) -> float:
    return bps / 100


def percentage_to_bps(percentage: float) -> int:
    return round(percentage * 100)


def format_cents_to_dollars(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:,.2f}"


def validate_ownership_split(shares_bps: list[int]) -> bool:
    return sum(shares_bps) == BPS_DENOMINATOR


@dataclass
class ReconciliationResult:
    total_difference: int
    tolerance: int
    within_tolerance: bool
    differences: list[int]


def calculate_rounding_reconciliation(expected: list[int], actual: list[int]) -> ReconciliationResult:
    """Compare two allocations line by line; the tolerance grows by 1 cent per 100 lines."""
    if len(expected) != len(actual):
        raise ValueError("Expected and actual arrays must have the same length")

    differences = [a - e for e, a in zip(expected, actual)]
    total_difference = sum(differences)
    tolerance = max(1, math.ceil(len(expected) / 100))
    return ReconciliationResult(
        total_difference=total_difference,
        tolerance=tolerance,
        within_tolerance=abs(total_difference) <= tolerance,
        differences=differences,
    )


@dataclass
class AccumulatedBalance:
    total_balance_cents: int
    should_pay_out: bool
    carry_over_cents: int


def calculate_accumulated_balance(
    current_balance_cents: int,
    new_earnings_cents: int,
    minimum_threshold_cents: int,
) -> AccumulatedBalance:
    total = current_balance_cents + new_earnings_cents
    should_pay_out = total >= minimum_threshold_cents
    return AccumulatedBalance(
        total_balance_cents=total,
        should_pay_out=should_pay_out,
        carry_over_cents=0 if should_pay_out else total,
    )


def split_amount_accurately(total_cents: int, shares_bps: list[int]) -> list[int]:
    """
    Split an amount by basis-point shares so the parts add up exactly.

    Each part is floored first, then the leftover cents go one at a time
    to the parts with the largest fractional remainders (earlier parts win
    ties).
    """
    if sum(shares_bps) != BPS_DENOMINATOR:
        raise ValueError(f"Shares must sum to 10000 bps, got {sum(shares_bps)}")
    if not shares_bps:
        return []

    raw = [total_cents * bps for bps in shares_bps]
    parts = [r // BPS_DENOMINATOR for r in raw]
    remainders = [r % BPS_DENOMINATOR for r in raw]

    leftover = total_cents - sum(parts)
    order = sorted(range(len(parts)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        parts[i] += 1
    return parts
