"""Pure budget arithmetic: grouping, summing, percentages and alert tiers.

Nothing in this module performs I/O. The service fetches cost records and
allocations and hands them here.

Rounding follows the half-up convention used by the web client
(``round_half_up(2.5) == 3``, ``round_half_up(-2.5) == -2``), not Python's
banker's rounding.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from mhg_facilities.core.interfaces import AlertLevel, CostRecord

MONTH_NAMES: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


@dataclass(frozen=True)
class AlertThresholds:
    """Utilization percentages at which each alert tier starts."""

    warning: int = 80
    danger: int = 90
    over: int = 100


DEFAULT_THRESHOLDS = AlertThresholds()


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves toward positive infinity."""
    return int(math.floor(value + 0.5))


def utilization_percentage(spent: float, budget: float) -> int:
    """Spend as a whole-number percentage of budget; 0 when budget is not positive."""
    if budget <= 0:
        return 0
    return round_half_up(spent * 100 / budget)


def alert_level_for(utilization: int, thresholds: AlertThresholds = DEFAULT_THRESHOLDS) -> AlertLevel:
    """Classify a utilization percentage. Each boundary belongs to the higher tier."""
    if utilization >= thresholds.over:
        return AlertLevel.OVER
    if utilization >= thresholds.danger:
        return AlertLevel.DANGER
    if utilization >= thresholds.warning:
        return AlertLevel.WARNING
    return AlertLevel.NONE


def percentage_change(current: float, previous: float) -> int:
    """Year-over-year change.

    0 when both are 0, 100 when only the previous period is 0, otherwise
    ``round(100 * (current - previous) / previous)``.
    """
    if previous == 0:
        return 0 if current == 0 else 100
    return round_half_up((current - previous) * 100 / previous)


def is_total_category(category: str | None, total_category: str = "total") -> bool:
    """True when ``category`` means "all categories"."""
    return not category or category.strip().lower() == total_category.lower()


def fiscal_year_bounds(fiscal_year: int) -> tuple[datetime, datetime]:
    """Half-open UTC window ``[Jan 1 fiscal_year, Jan 1 fiscal_year + 1)``."""
    return (
        datetime(fiscal_year, 1, 1, tzinfo=timezone.utc),
        datetime(fiscal_year + 1, 1, 1, tzinfo=timezone.utc),
    )


def as_utc(moment: datetime) -> datetime:
    """Normalise a timestamp to UTC; naive values are taken to already be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def group_by_category(records: Iterable[CostRecord], uncategorized_label: str = "Uncategorized") -> dict[str, float]:
    """Total spend per category name; unlabeled records share one bucket.

    Names are matched case-insensitively and reported with the first
    spelling seen.
    """
    display: dict[str, str] = {}
    totals: dict[str, float] = {}
    for record in records:
        name = record.category_name or uncategorized_label
        name = display.setdefault(name.lower(), name)
        totals[name] = totals.get(name, 0.0) + record.cost
    return totals


def group_by_location(records: Iterable[CostRecord]) -> dict[str, tuple[str, float]]:
    """Total spend per location id as ``{id: (name, spent)}``.

    Records without a location are skipped.
    """
    totals: dict[str, tuple[str, float]] = {}
    for record in records:
        if record.location_id is None:
            continue
        key = str(record.location_id)
        name, spent = totals.get(key, (record.location_name or "", 0.0))
        totals[key] = (name, spent + record.cost)
    return totals


def monthly_totals(records: Iterable[CostRecord]) -> list[float]:
    """Spend per calendar month, always 12 values ordered January to December."""
    months = [0.0] * 12
    for record in records:
        months[as_utc(record.completed_at).month - 1] += record.cost
    return months


def cumulative(values: Iterable[float]) -> list[float]:
    """Running totals of ``values``."""
    running = 0.0
    out: list[float] = []
    for value in values:
        running += value
        out.append(running)
    return out
