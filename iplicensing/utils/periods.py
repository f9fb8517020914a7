"""
Royalty period helpers

Periods are closed intervals and day counts include both ends. A period
whose start equals its end is rejected.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum


class PeriodType(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime

    @property
    def display_name(self) -> str:
        return period_display_name(self.start, self.end)


def validate_period_dates(start: datetime, end: datetime) -> None:
    if end < start:
        raise ValueError("Period end date must be after start date")
    if end == start:
        raise ValueError("Period start and end dates cannot be the same")


def periods_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a <= end_b and start_b <= end_a


def periods_are_adjacent(end_a: datetime, start_b: datetime) -> bool:
    return end_a == start_b


def _month_end(year: int, month: int) -> datetime:
    if month == 12:
        first_next = datetime(year + 1, 1, 1)
    else:
        first_next = datetime(year, month + 1, 1)
    return first_next - timedelta(milliseconds=1)


def monthly_period(year: int, month: int) -> Period:
    return Period(start=datetime(year, month, 1), end=_month_end(year, month))


def quarterly_period(year: int, quarter: int) -> Period:
    if quarter not in (1, 2, 3, 4):
        raise ValueError(f"Quarter must be 1-4, got {quarter}")
    first_month = (quarter - 1) * 3 + 1
    return Period(start=datetime(year, first_month, 1), end=_month_end(year, first_month + 2))


def fiscal_year_period(fiscal_year: int, start_month: int = 1) -> Period:
    """Fiscal year starting on `start_month` of `fiscal_year`."""
    start = datetime(fiscal_year, start_month, 1)
    if start_month == 1:
        end = _month_end(fiscal_year, 12)
    else:
        end = _month_end(fiscal_year + 1, start_month - 1)
    return Period(start=start, end=end)


def generate_monthly_periods(start: datetime, end: datetime) -> list[Period]:
    """All calendar months touching [start, end]."""
    periods = []
    year, month = start.year, start.month
    while datetime(year, month, 1) <= end:
        periods.append(monthly_period(year, month))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return periods


def generate_quarterly_periods(year: int) -> list[Period]:
    return [quarterly_period(year, q) for q in (1, 2, 3, 4)]


def detect_period_type(start: datetime, end: datetime) -> PeriodType:
    if start.day != 1:
        return PeriodType.CUSTOM
    if end.date() == _month_end(start.year, start.month).date():
        return PeriodType.MONTHLY
    if start.month in (1, 4, 7, 10):
        quarter_end_month = start.month + 2
        if end.year == start.year and end.date() == _month_end(start.year, quarter_end_month).date():
            return PeriodType.QUARTERLY
    return PeriodType.CUSTOM


def period_display_name(start: datetime, end: datetime) -> str:
    period_type = detect_period_type(start, end)
    if period_type == PeriodType.MONTHLY:
        return start.strftime("%B %Y")
    if period_type == PeriodType.QUARTERLY:
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    return f"{start.strftime('%b')} {start.day}, {start.year} - {end.strftime('%b')} {end.day}, {end.year}"


def period_days(start: datetime, end: datetime) -> int:
    """Inclusive calendar-day count of a period; end-of-day timestamps count once."""
    return (end.date() - start.date()).days + 1


def overlap_days(
    period_start: datetime,
    period_end: datetime,
    range_start: datetime,
    range_end: datetime,
) -> int:
    """Days of [range_start, range_end] that fall inside the period."""
    start = max(period_start, range_start)
    end = min(period_end, range_end)
    if start > end:
        return 0
    return period_days(start, end)
