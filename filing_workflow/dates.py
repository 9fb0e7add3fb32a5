"""
Date Calculators Module

Pure functions deriving statutory deadlines from period boundaries and
registry facts. Nothing here reads the clock; callers pass "now" in.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional, Tuple

from .exceptions import ValidationError


ACCOUNTS_DUE_MONTHS = 9
CORPORATION_TAX_DUE_MONTHS = 12

# Quarter-end months for each VAT quarter group
QUARTER_GROUPS: Dict[str, Tuple[int, ...]] = {
    "1_4_7_10": (1, 4, 7, 10),
    "2_5_8_11": (2, 5, 8, 11),
    "3_6_9_12": (3, 6, 9, 12),
}

# Months in which each group's returns are due
FILING_MONTHS: Dict[str, Tuple[int, ...]] = {
    "1_4_7_10": (2, 5, 8, 11),
    "2_5_8_11": (3, 6, 9, 12),
    "3_6_9_12": (4, 7, 10, 1),
}


def add_months(start: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def end_of_month(d: date) -> date:
    return date(d.year, d.month, calendar.monthrange(d.year, d.month)[1])


def is_month_end(d: date) -> bool:
    return d.day == calendar.monthrange(d.year, d.month)[1]


def _reference_is_month_end(accounting_reference_date: Optional[Tuple[int, int]],
                            fallback: date) -> bool:
    """True when the accounting reference day is the last day of its month.

    28 or 29 February both count as month end. Without a reference the
    year end date itself decides.
    """
    if accounting_reference_date is None:
        return is_month_end(fallback)
    day, month = accounting_reference_date
    if month == 2:
        return day >= 28
    # Non-leap year is fine here, only February varies
    return day == calendar.monthrange(2001, month)[1]


def corporation_tax_due(year_end: date,
                        accounting_reference_date: Optional[Tuple[int, int]] = None,
                        months: int = CORPORATION_TAX_DUE_MONTHS) -> date:
    """Corporation tax return due date: year end + 12 months.

    Normalized to end of month when the accounting reference date is a
    month end, so a 28 Feb year end is due on 29 Feb in a leap year.

    Args:
        year_end: Last day of the accounting period
        accounting_reference_date: Optional registry (day, month) pair
        months: Months after year end
    """
    due = add_months(year_end, months)
    if _reference_is_month_end(accounting_reference_date, year_end):
        due = end_of_month(due)
    return due


def accounts_due(year_end: date, months: int = ACCOUNTS_DUE_MONTHS) -> date:
    """Annual accounts due date: year end + 9 months, month end preserved"""
    due = add_months(year_end, months)
    if is_month_end(year_end):
        due = end_of_month(due)
    return due


def next_year_end(previous_year_end: date) -> date:
    """One year on from a year end, month end preserved"""
    result = add_months(previous_year_end, 12)
    if is_month_end(previous_year_end):
        result = end_of_month(result)
    return result


@dataclass(frozen=True)
class VatQuarter:
    """A VAT quarter and its filing deadline"""
    period: str
    start: date
    end: date
    filing_due: date
    quarter_group: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "period": self.period,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "filing_due": self.filing_due.isoformat(),
            "quarter_group": self.quarter_group,
        }


def _check_group(quarter_group: str) -> Tuple[int, ...]:
    months = QUARTER_GROUPS.get(quarter_group)
    if months is None:
        raise ValidationError(
            f"Invalid quarter group: {quarter_group!r}. "
            f"Expected one of {', '.join(QUARTER_GROUPS)}"
        )
    return months


def vat_quarter_for(quarter_group: str, reference: date) -> VatQuarter:
    """Return the quarter of the group that contains the reference month"""
    months = _check_group(quarter_group)
    end_year = reference.year
    end_month = next((m for m in months if m >= reference.month), None)
    if end_month is None:
        end_month = months[0]
        end_year += 1

    end = end_of_month(date(end_year, end_month, 1))
    start = add_months(date(end_year, end_month, 1), -2)
    filing_due = end_of_month(add_months(date(end_year, end_month, 1), 1))
    return VatQuarter(
        period=f"{start.isoformat()}_to_{end.isoformat()}",
        start=start,
        end=end,
        filing_due=filing_due,
        quarter_group=quarter_group,
    )


def next_vat_quarter(quarter_group: str, current_end: date) -> VatQuarter:
    return vat_quarter_for(quarter_group, add_months(date(current_end.year, current_end.month, 1), 3))


def next_vat_filing(quarter_group: str, now: date) -> VatQuarter:
    """Quarter whose return falls due in the nearest filing month from now.

    Scans forward from the current month (inclusive) to the first filing
    month of the group, then takes the quarter ending the month before.
    """
    _check_group(quarter_group)
    filing_months = FILING_MONTHS[quarter_group]
    month_start = date(now.year, now.month, 1)
    for _ in range(12):
        if month_start.month in filing_months:
            return vat_quarter_for(quarter_group, add_months(month_start, -1))
        month_start = add_months(month_start, 1)
    raise ValidationError(f"No filing month found for quarter group {quarter_group}")


def period_label(start: date, end: date) -> str:
    """Short display label, e.g. "Jan - Dec 2025" or "Jul 2024 - Jun 2025" """
    start_month = calendar.month_abbr[start.month]
    end_month = calendar.month_abbr[end.month]
    if start.year == end.year:
        return f"{start_month} - {end_month} {end.year}"
    return f"{start_month} {start.year} - {end_month} {end.year}"
