"""Business logic services for the MHG Facilities budget service.

All services depend on repository and adapter interfaces (not concrete
implementations) and receive dependencies via constructor injection.
No framework code (FastAPI, SQLAlchemy) belongs here.

Key invariants:
- Actual spend is never stored. Every read recomputes it from completed
  tickets with a cost; the legacy ``spent_amount`` column is never consulted.
- At most one live budget per (location-or-null, category, fiscal_year) key.
- The tenant is fixed by the TenantScope the repositories were built from.
"""

import asyncio
import csv
import io
import uuid
from datetime import datetime, timezone
from typing import Any

from mhg_facilities.api.schemas import (
    BudgetAlertsResponse,
    BudgetForecastResponse,
    BudgetReportResponse,
    BudgetSummaryResponse,
    BudgetWithSpendResponse,
    CategoriesResponse,
    CategorySpendResponse,
    LocationUtilizationResponse,
    MonthlySpendResponse,
    YearOverYearCategory,
    YearOverYearResponse,
)
from mhg_facilities.core.aggregation import (
    MONTH_NAMES,
    AlertThresholds,
    alert_level_for,
    cumulative,
    fiscal_year_bounds,
    group_by_category,
    group_by_location,
    is_total_category,
    monthly_totals,
    percentage_change,
    utilization_percentage,
)
from mhg_facilities.core.interfaces import (
    AlertLevel,
    IBudgetForecaster,
    IBudgetRepository,
    ICostRecordRepository,
)
from mhg_facilities.core.models import Budget
from mhg_facilities.errors import ConflictError, NotFoundError
from mhg_facilities.observability import get_logger
from mhg_facilities.settings import Settings

logger = get_logger(__name__)

# Fields that identify a budget; changing any of them re-runs the conflict check
_KEY_FIELDS: tuple[str, ...] = ("location_id", "category", "fiscal_year")

# Fields a caller may change on an existing budget
_UPDATABLE_FIELDS: frozenset[str] = frozenset({*_KEY_FIELDS, "annual_budget", "notes"})

_REPORT_CSV_FIELDS: list[str] = [
    "id",
    "location_id",
    "location_name",
    "category",
    "fiscal_year",
    "annual_budget",
    "spent",
    "remaining",
    "utilization_percentage",
    "alert_level",
    "notes",
]


class BudgetService:
    """Budget allocations and everything derived from their actual spend.

    Manages the allocation lifecycle (create, update, soft delete) and
    computes spend, utilization, alert tiers, category/location/monthly
    breakdowns, year-over-year comparisons and run-rate forecasts from the
    tenant's completed tickets.
    """

    def __init__(
        self,
        budget_repo: IBudgetRepository,
        cost_repo: ICostRecordRepository,
        forecaster: IBudgetForecaster,
        settings: Settings,
    ) -> None:
        """Initialize BudgetService with required dependencies."""
        self._budget_repo = budget_repo
        self._cost_repo = cost_repo
        self._forecaster = forecaster
        self._settings = settings
        self._thresholds = AlertThresholds(
            warning=settings.warning_threshold_pct,
            danger=settings.danger_threshold_pct,
            over=settings.over_threshold_pct,
        )

    # ------------------------------------------------------------------
    # Allocation management
    # ------------------------------------------------------------------

    async def list_budgets(
        self,
        fiscal_year: int | None = None,
        location_id: uuid.UUID | None = None,
        category: str | None = None,
    ) -> list[Budget]:
        """List live budgets, optionally narrowed by fiscal year, location and category."""
        if fiscal_year is not None:
            budgets = await self._budget_repo.list_by_fiscal_year(fiscal_year)
            if location_id is not None:
                budgets = [b for b in budgets if b.location_id == location_id]
        elif location_id is not None:
            budgets = await self._budget_repo.list_by_location(location_id)
        else:
            budgets = await self._budget_repo.list_all()

        if category is not None:
            wanted = category.strip().lower()
            budgets = [b for b in budgets if b.category.lower() == wanted]
        return budgets

    async def get_budget(self, budget_id: uuid.UUID) -> Budget:
        """Retrieve a live budget.

        Raises:
            NotFoundError: If no live budget has this id.
        """
        budget = await self._budget_repo.get_by_id(budget_id)
        if budget is None:
            raise NotFoundError(f"Budget {budget_id} not found")
        return budget

    async def create_budget(
        self,
        fiscal_year: int,
        annual_budget: float,
        location_id: uuid.UUID | None = None,
        category: str | None = None,
        notes: str | None = None,
    ) -> Budget:
        """Create a budget allocation.

        Args:
            fiscal_year: Calendar year the allocation covers.
            annual_budget: Allocation amount.
            location_id: Location, or None for a tenant-wide budget.
            category: Ticket category name; None means all categories.
            notes: Free-form notes.

        Returns:
            The persisted Budget.

        Raises:
            NotFoundError: If ``location_id`` is not a live location of the tenant.
            ConflictError: If a live budget already exists for the same
                location, category and fiscal year. Raised before any write.
        """
        await self._require_location(location_id)
        normalized = self._normalize_category(category)

        existing = await self._budget_repo.find_by_location_category_year(
            location_id=location_id,
            category=normalized,
            fiscal_year=fiscal_year,
        )
        if existing is not None:
            raise ConflictError(
                f"Budget already exists for {normalized} in fiscal year {fiscal_year}",
                details={"budget_id": str(existing.id)},
            )

        budget = Budget(
            location_id=location_id,
            category=normalized,
            fiscal_year=fiscal_year,
            annual_budget=annual_budget,
            notes=notes,
        )
        persisted = await self._budget_repo.create(budget)

        logger.info(
            "budget_created",
            budget_id=str(persisted.id),
            location_id=str(location_id) if location_id else None,
            category=normalized,
            fiscal_year=fiscal_year,
            annual_budget=annual_budget,
        )
        return persisted

    async def update_budget(self, budget_id: uuid.UUID, **changes: Any) -> Budget:
        """Apply a partial update to a live budget.

        Args:
            budget_id: Budget to change.
            **changes: Any of location_id, category, fiscal_year,
                annual_budget, notes.

        Returns:
            The updated Budget.

        Raises:
            ValueError: If a change names a field that cannot be updated
                (spend in particular is derived, never written).
            NotFoundError: If no live budget has this id, or a new
                ``location_id`` is not a live location of the tenant.
            ConflictError: If the new key collides with another live budget.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update budget fields: {', '.join(sorted(unknown))}")

        current = await self.get_budget(budget_id)
        if changes.get("location_id") is not None:
            await self._require_location(changes["location_id"])

        if "category" in changes:
            changes["category"] = self._normalize_category(changes["category"])

        if any(field in changes for field in _KEY_FIELDS):
            location_id = changes.get("location_id", current.location_id)
            category = changes.get("category", current.category)
            fiscal_year = changes.get("fiscal_year", current.fiscal_year)
            if (location_id, category, fiscal_year) != (current.location_id, current.category, current.fiscal_year):
                clash = await self._budget_repo.find_by_location_category_year(
                    location_id=location_id,
                    category=category,
                    fiscal_year=fiscal_year,
                )
                if clash is not None and clash.id != budget_id:
                    raise ConflictError(
                        f"Budget already exists for {category} in fiscal year {fiscal_year}",
                        details={"budget_id": str(clash.id)},
                    )

        updated = await self._budget_repo.update(budget_id, **changes)
        if updated is None:
            raise NotFoundError(f"Budget {budget_id} not found")

        logger.info("budget_updated", budget_id=str(budget_id), fields=sorted(changes))
        return updated

    async def delete_budget(self, budget_id: uuid.UUID) -> None:
        """Soft-delete a budget.

        Raises:
            NotFoundError: If no live budget has this id.
        """
        deleted = await self._budget_repo.soft_delete(budget_id)
        if not deleted:
            raise NotFoundError(f"Budget {budget_id} not found")
        logger.info("budget_deleted", budget_id=str(budget_id))

    # ------------------------------------------------------------------
    # Spend
    # ------------------------------------------------------------------

    async def compute_spend(
        self,
        location_id: uuid.UUID | None,
        category: str | None,
        fiscal_year: int,
    ) -> float:
        """Sum completed ticket cost matching an allocation key.

        Args:
            location_id: Location, or None to sum across every location.
            category: Category name, or None/"total" for every category.
                Matched case-insensitively.
            fiscal_year: Calendar year; the window is [Jan 1, Jan 1 next year).

        Returns:
            Total cost. 0.0 when nothing matches.
        """
        period_start, period_end = fiscal_year_bounds(fiscal_year)
        category_filter = None if is_total_category(category, self._settings.total_category) else category
        return await self._cost_repo.sum_completed(
            period_start,
            period_end,
            location_id=location_id,
            category=category_filter,
        )

    async def get_budget_with_spend(self, budget_id: uuid.UUID) -> BudgetWithSpendResponse:
        """Fetch a budget and its current spend.

        Raises:
            NotFoundError: If no live budget has this id.
        """
        budget = await self.get_budget(budget_id)
        spent = await self.compute_spend(budget.location_id, budget.category, budget.fiscal_year)
        return self._with_spend(budget, spent)

    async def list_with_spend(
        self,
        fiscal_year: int,
        location_id: uuid.UUID | None = None,
        category: str | None = None,
        alert_level: AlertLevel | None = None,
    ) -> list[BudgetWithSpendResponse]:
        """Every live budget for a fiscal year with its spend.

        Spend is computed for each budget concurrently. Filters are applied
        after enrichment.

        Args:
            fiscal_year: Calendar year.
            location_id: Keep only budgets for this location.
            category: Keep only budgets for this category (case-insensitive).
            alert_level: Keep only budgets in this alert tier.

        Returns:
            Enriched budgets ordered by category, then location.
        """
        budgets = await self._budget_repo.list_by_fiscal_year(fiscal_year)
        if location_id is not None:
            budgets = [b for b in budgets if b.location_id == location_id]
        if category is not None:
            wanted = category.strip().lower()
            budgets = [b for b in budgets if b.category.lower() == wanted]

        spends = await asyncio.gather(
            *(self.compute_spend(b.location_id, b.category, b.fiscal_year) for b in budgets)
        )
        enriched = [self._with_spend(budget, spent) for budget, spent in zip(budgets, spends)]

        if alert_level is not None:
            enriched = [item for item in enriched if item.alert_level == alert_level]

        enriched.sort(key=lambda item: (item.category, item.location_name or "", str(item.location_id or "")))
        return enriched

    async def summarize(self, fiscal_year: int) -> BudgetSummaryResponse:
        """Tenant-wide totals and alert-tier counts for a fiscal year."""
        enriched = await self.list_with_spend(fiscal_year)
        return self._summarize(fiscal_year, enriched)

    async def alert_summary(self, fiscal_year: int) -> BudgetAlertsResponse:
        """Budgets in the over, danger and warning tiers for a fiscal year."""
        enriched = await self.list_with_spend(fiscal_year)
        over = [b for b in enriched if b.alert_level == AlertLevel.OVER]
        danger = [b for b in enriched if b.alert_level == AlertLevel.DANGER]
        warning = [b for b in enriched if b.alert_level == AlertLevel.WARNING]

        if over or danger:
            logger.warning(
                "budget_alerts_active",
                fiscal_year=fiscal_year,
                over_budget_count=len(over),
                danger_count=len(danger),
                warning_count=len(warning),
            )

        return BudgetAlertsResponse(
            fiscal_year=fiscal_year,
            over_budget=over,
            danger=danger,
            warning=warning,
            total_alerts=len(over) + len(danger) + len(warning),
        )

    # ------------------------------------------------------------------
    # Breakdowns
    # ------------------------------------------------------------------

    async def spend_by_category(
        self,
        fiscal_year: int,
        location_id: uuid.UUID | None = None,
    ) -> list[CategorySpendResponse]:
        """Spend per ticket category against the matching allocation.

        Every category with spend is reported, including those with no
        allocation (budget 0, percentage 0). Unlabeled tickets share the
        uncategorized bucket.

        Args:
            fiscal_year: Calendar year.
            location_id: Restrict spend, and allocation matching, to one
                location. Without it a category's tenant-wide allocation is
                used, falling back to the sum of its per-location allocations.

        Returns:
            Categories sorted by spend, highest first.
        """
        period_start, period_end = fiscal_year_bounds(fiscal_year)
        records, budgets = await asyncio.gather(
            self._cost_repo.list_completed(period_start, period_end, location_id=location_id),
            self._budget_repo.list_by_fiscal_year(fiscal_year),
        )

        totals = group_by_category(records, self._settings.uncategorized_label)
        result = []
        for name, spent in totals.items():
            allocated = self._category_allocation(budgets, name, location_id)
            result.append(
                CategorySpendResponse(
                    category=name,
                    spent=spent,
                    budget=allocated,
                    percentage=utilization_percentage(spent, allocated),
                )
            )

        result.sort(key=lambda item: (-item.spent, item.category))
        return result

    async def utilization_by_location(self, fiscal_year: int) -> list[LocationUtilizationResponse]:
        """Spend per location against the sum of all of that location's allocations.

        Tickets without a location are left out. Locations with allocations
        but no spend are reported with spent 0.
        """
        period_start, period_end = fiscal_year_bounds(fiscal_year)
        records, budgets = await asyncio.gather(
            self._cost_repo.list_completed(period_start, period_end),
            self._budget_repo.list_by_fiscal_year(fiscal_year),
        )

        spend = group_by_location(records)
        allocated: dict[str, float] = {}
        names: dict[str, str | None] = {}
        for budget in budgets:
            if budget.location_id is None:
                continue
            key = str(budget.location_id)
            allocated[key] = allocated.get(key, 0.0) + budget.annual_budget
            names.setdefault(key, budget.location_name)

        result = []
        for key in spend.keys() | allocated.keys():
            name, spent = spend.get(key, (names.get(key), 0.0))
            location_budget = allocated.get(key, 0.0)
            percentage = utilization_percentage(spent, location_budget)
            result.append(
                LocationUtilizationResponse(
                    location_id=uuid.UUID(key),
                    location_name=name or names.get(key),
                    spent=spent,
                    budget=location_budget,
                    percentage=percentage,
                    alert_level=alert_level_for(percentage, self._thresholds),
                )
            )

        result.sort(key=lambda item: (-item.spent, item.location_name or ""))
        return result

    async def monthly_spend_trend(
        self,
        fiscal_year: int,
        location_id: uuid.UUID | None = None,
    ) -> list[MonthlySpendResponse]:
        """Spend for each calendar month of a fiscal year.

        Always returns 12 entries, January first. Months without spend are 0
        and the cumulative figure carries forward through them.
        """
        period_start, period_end = fiscal_year_bounds(fiscal_year)
        records, budgets = await asyncio.gather(
            self._cost_repo.list_completed(period_start, period_end, location_id=location_id),
            self._budget_repo.list_by_fiscal_year(fiscal_year),
        )

        if location_id is not None:
            budgets = [b for b in budgets if b.location_id == location_id]
        annual = sum((b.annual_budget for b in budgets), 0.0)

        months = monthly_totals(records)
        running = cumulative(months)
        return [
            MonthlySpendResponse(
                month=index + 1,
                year=fiscal_year,
                month_name=MONTH_NAMES[index],
                spent=spent,
                cumulative_spend=running[index],
                budget_pace=round(annual * (index + 1) / 12, 2),
            )
            for index, spent in enumerate(months)
        ]

    async def year_over_year(
        self,
        current_year: int,
        location_id: uuid.UUID | None = None,
    ) -> YearOverYearResponse:
        """Per-category spend in ``current_year`` compared with the year before.

        Categories with spend in either year are reported.
        """
        previous_year = current_year - 1
        current_start, current_end = fiscal_year_bounds(current_year)
        previous_start, previous_end = fiscal_year_bounds(previous_year)
        current_records, previous_records = await asyncio.gather(
            self._cost_repo.list_completed(current_start, current_end, location_id=location_id),
            self._cost_repo.list_completed(previous_start, previous_end, location_id=location_id),
        )

        label = self._settings.uncategorized_label
        current_totals = group_by_category(current_records, label)
        previous_totals = group_by_category(previous_records, label)
        # Years are matched case-insensitively; the current year's spelling wins
        display = {name.lower(): name for name in previous_totals}
        display.update({name.lower(): name for name in current_totals})
        current = {name.lower(): spent for name, spent in current_totals.items()}
        previous = {name.lower(): spent for name, spent in previous_totals.items()}

        categories = [
            YearOverYearCategory(
                category=display[key],
                current_year_spent=current.get(key, 0.0),
                previous_year_spent=previous.get(key, 0.0),
                change_amount=current.get(key, 0.0) - previous.get(key, 0.0),
                change_percentage=percentage_change(current.get(key, 0.0), previous.get(key, 0.0)),
            )
            for key in current.keys() | previous.keys()
        ]
        categories.sort(key=lambda item: (-item.current_year_spent, item.category))

        total_current = sum(current.values(), 0.0)
        total_previous = sum(previous.values(), 0.0)
        return YearOverYearResponse(
            current_year=current_year,
            previous_year=previous_year,
            categories=categories,
            total_current=total_current,
            total_previous=total_previous,
            total_change_percentage=percentage_change(total_current, total_previous),
        )

    async def categories_with_spend(self, fiscal_year: int) -> CategoriesResponse:
        """Ticket category names with spend in a fiscal year."""
        period_start, period_end = fiscal_year_bounds(fiscal_year)
        names = await self._cost_repo.categories_with_spend(period_start, period_end)
        return CategoriesResponse(fiscal_year=fiscal_year, categories=names)

    # ------------------------------------------------------------------
    # Forecasting
    # ------------------------------------------------------------------

    async def forecast_budget(
        self,
        budget_id: uuid.UUID,
        now: datetime | None = None,
    ) -> BudgetForecastResponse:
        """Project year-end spend for one budget from its run rate so far.

        Raises:
            NotFoundError: If no live budget has this id.
        """
        budget = await self.get_budget(budget_id)
        spent = await self.compute_spend(budget.location_id, budget.category, budget.fiscal_year)
        forecast = self._forecast(budget, spent, now or datetime.now(timezone.utc))

        if forecast.will_exceed:
            logger.warning(
                "budget_forecast_exceeds",
                budget_id=str(budget_id),
                projected_total=round(forecast.projected_total, 2),
                annual_budget=budget.annual_budget,
            )
        return forecast

    async def forecasts_for_year(
        self,
        fiscal_year: int,
        now: datetime | None = None,
    ) -> list[BudgetForecastResponse]:
        """Forecast every live budget for a fiscal year."""
        reference = now or datetime.now(timezone.utc)
        budgets = await self._budget_repo.list_by_fiscal_year(fiscal_year)
        spends = await asyncio.gather(
            *(self.compute_spend(b.location_id, b.category, b.fiscal_year) for b in budgets)
        )
        return [self._forecast(budget, spent, reference) for budget, spent in zip(budgets, spends)]

    def current_fiscal_year(self, now: datetime | None = None) -> int:
        """Fiscal years follow the calendar year."""
        return (now or datetime.now(timezone.utc)).year

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def budget_report(self, fiscal_year: int, report_format: str = "json") -> BudgetReportResponse:
        """Every budget for a fiscal year with spend, plus totals.

        Args:
            fiscal_year: Calendar year.
            report_format: json | csv. CSV adds a ``csv_data`` export of the
                per-budget rows.

        Returns:
            BudgetReportResponse for the year.
        """
        enriched = await self.list_with_spend(fiscal_year)
        summary = self._summarize(fiscal_year, enriched)
        csv_data = self._generate_csv(enriched) if report_format == "csv" else None

        logger.info(
            "budget_report_generated",
            fiscal_year=fiscal_year,
            budget_count=len(enriched),
            total_spent=summary.total_spent,
            format=report_format,
        )

        return BudgetReportResponse(
            fiscal_year=fiscal_year,
            generated_at=datetime.now(timezone.utc),
            format=report_format,
            budgets=enriched,
            summary=summary,
            csv_data=csv_data,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _normalize_category(self, category: str | None) -> str:
        if category is None or not category.strip():
            return self._settings.total_category
        return category.strip().lower()

    async def _require_location(self, location_id: uuid.UUID | None) -> None:
        if location_id is not None and not await self._budget_repo.location_exists(location_id):
            raise NotFoundError(f"Location {location_id} not found")

    def _with_spend(self, budget: Budget, spent: float) -> BudgetWithSpendResponse:
        utilization = utilization_percentage(spent, budget.annual_budget)
        return BudgetWithSpendResponse(
            id=budget.id,
            tenant_id=budget.tenant_id,
            location_id=budget.location_id,
            location_name=budget.location_name,
            category=budget.category,
            fiscal_year=budget.fiscal_year,
            annual_budget=budget.annual_budget,
            notes=budget.notes,
            created_at=budget.created_at,
            updated_at=budget.updated_at,
            spent=spent,
            remaining=budget.annual_budget - spent,
            utilization_percentage=utilization,
            alert_level=alert_level_for(utilization, self._thresholds),
        )

    def _summarize(self, fiscal_year: int, enriched: list[BudgetWithSpendResponse]) -> BudgetSummaryResponse:
        total_budget = sum((b.annual_budget for b in enriched), 0.0)
        total_spent = sum((b.spent for b in enriched), 0.0)
        utilization = utilization_percentage(total_spent, total_budget)
        levels = [b.alert_level for b in enriched]
        return BudgetSummaryResponse(
            fiscal_year=fiscal_year,
            total_budget=total_budget,
            total_spent=total_spent,
            total_remaining=total_budget - total_spent,
            utilization_percentage=utilization,
            alert_level=alert_level_for(utilization, self._thresholds),
            budget_count=len(enriched),
            over_budget_count=levels.count(AlertLevel.OVER),
            danger_count=levels.count(AlertLevel.DANGER),
            warning_count=levels.count(AlertLevel.WARNING),
        )

    def _category_allocation(
        self,
        budgets: list[Budget],
        category: str,
        location_id: uuid.UUID | None,
    ) -> float:
        matching = [b for b in budgets if b.category.lower() == category.lower()]
        if location_id is not None:
            return sum((b.annual_budget for b in matching if b.location_id == location_id), 0.0)

        tenant_wide = [b for b in matching if b.location_id is None]
        if tenant_wide:
            return tenant_wide[0].annual_budget
        return sum((b.annual_budget for b in matching), 0.0)

    def _forecast(self, budget: Budget, spent: float, now: datetime) -> BudgetForecastResponse:
        result = self._forecaster.forecast(
            annual_budget=budget.annual_budget,
            spent=spent,
            fiscal_year=budget.fiscal_year,
            now=now,
        )
        return BudgetForecastResponse(
            budget_id=budget.id,
            location_id=budget.location_id,
            category=budget.category,
            fiscal_year=budget.fiscal_year,
            annual_budget=budget.annual_budget,
            spent=spent,
            elapsed_months=result.elapsed_months,
            monthly_average=result.monthly_average,
            projected_total=result.projected_total,
            projected_remaining=result.projected_remaining,
            will_exceed=result.will_exceed,
            projected_excess=result.projected_excess,
            confidence=result.confidence,
        )

    @staticmethod
    def _generate_csv(budgets: list[BudgetWithSpendResponse]) -> str:
        """Render enriched budgets as a CSV string.

        Args:
            budgets: Enriched budgets to serialize.

        Returns:
            CSV string with a header row.
        """
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=_REPORT_CSV_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for budget in budgets:
            writer.writerow(budget.model_dump(mode="json"))
        return buffer.getvalue()
