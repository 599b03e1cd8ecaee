"""BudgetForecaster adapter for year-end spend projection.

Projects where an allocation's spend will land at the end of its fiscal year
by extending the average monthly spend observed so far.

    monthly_average = spent / elapsed_months
    projected_total = monthly_average * 12
"""

from datetime import datetime

from mhg_facilities.core.interfaces import ForecastConfidence, ForecastResult
from mhg_facilities.observability import get_logger

logger = get_logger(__name__)

MONTHS_PER_YEAR: int = 12

# Elapsed months at which each confidence tier starts
MEDIUM_CONFIDENCE_MONTHS: int = 3
HIGH_CONFIDENCE_MONTHS: int = 6


class BudgetForecaster:
    """Linear run-rate forecast engine.

    A pure computation adapter: it receives spend that the service has already
    derived from cost records and produces ForecastResult values without
    touching the database.
    """

    def __init__(
        self,
        medium_confidence_months: int = MEDIUM_CONFIDENCE_MONTHS,
        high_confidence_months: int = HIGH_CONFIDENCE_MONTHS,
    ) -> None:
        """Initialise the BudgetForecaster.

        Args:
            medium_confidence_months: Elapsed months from which a forecast is
                reported with medium confidence.
            high_confidence_months: Elapsed months from which a forecast is
                reported with high confidence.
        """
        self._medium_months = medium_confidence_months
        self._high_months = high_confidence_months

    def elapsed_months(self, fiscal_year: int, now: datetime) -> int:
        """Months of ``fiscal_year`` counted toward the run rate.

        The current month counts as elapsed, so January of the current year
        is 1. Any year other than the current one counts as a full 12.
        """
        if fiscal_year == now.year:
            return now.month
        return MONTHS_PER_YEAR

    def confidence_for(self, elapsed_months: int) -> ForecastConfidence:
        """Map months of history to a confidence tier."""
        if elapsed_months >= self._high_months:
            return ForecastConfidence.HIGH
        if elapsed_months >= self._medium_months:
            return ForecastConfidence.MEDIUM
        return ForecastConfidence.LOW

    def forecast(
        self,
        annual_budget: float,
        spent: float,
        fiscal_year: int,
        now: datetime,
    ) -> ForecastResult:
        """Project year-end spend for one allocation.

        Args:
            annual_budget: The allocation's annual amount.
            spent: Spend so far in the fiscal year.
            fiscal_year: The allocation's fiscal (calendar) year.
            now: Reference time used to count elapsed months.

        Returns:
            ForecastResult with the monthly average, projected total, whether
            the budget will be exceeded and by how much, and a confidence tier.
        """
        elapsed = self.elapsed_months(fiscal_year, now)
        monthly_average = spent / elapsed if elapsed > 0 else 0.0
        projected_total = monthly_average * MONTHS_PER_YEAR
        will_exceed = projected_total > annual_budget
        projected_excess = projected_total - annual_budget if will_exceed else 0.0

        result = ForecastResult(
            elapsed_months=elapsed,
            monthly_average=monthly_average,
            projected_total=projected_total,
            projected_remaining=annual_budget - projected_total,
            will_exceed=will_exceed,
            projected_excess=projected_excess,
            confidence=self.confidence_for(elapsed),
        )

        logger.debug(
            "budget_forecast_computed",
            fiscal_year=fiscal_year,
            elapsed_months=elapsed,
            monthly_average=round(monthly_average, 2),
            projected_total=round(projected_total, 2),
            will_exceed=will_exceed,
        )
        return result
