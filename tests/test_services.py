"""Unit tests for BudgetService business logic."""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from mhg_facilities.adapters.budget_forecaster import BudgetForecaster
from mhg_facilities.core.interfaces import AlertLevel, CostRecord, ForecastConfidence
from mhg_facilities.core.models import Budget, Location
from mhg_facilities.core.services import BudgetService
from mhg_facilities.errors import ConflictError, NotFoundError
from mhg_facilities.settings import Settings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_location(name: str) -> Location:
    location = Location(tenant_id="test-tenant-001", name=name)
    location.id = uuid.uuid4()
    return location


def _make_budget(
    category: str = "total",
    annual_budget: float = 10_000.0,
    fiscal_year: int = 2024,
    location: Location | None = None,
) -> Budget:
    budget = Budget(
        tenant_id="test-tenant-001",
        location_id=location.id if location is not None else None,
        category=category,
        fiscal_year=fiscal_year,
        annual_budget=annual_budget,
    )
    budget.id = uuid.uuid4()
    budget.created_at = datetime(fiscal_year, 1, 2, tzinfo=timezone.utc)
    budget.updated_at = budget.created_at
    if location is not None:
        budget.location = location
    return budget


def _make_record(
    cost: float,
    month: int,
    category: str | None = None,
    location: Location | None = None,
    year: int = 2024,
) -> CostRecord:
    return CostRecord(
        cost=cost,
        completed_at=datetime(year, month, 15, 10, 0, tzinfo=timezone.utc),
        location_id=location.id if location is not None else None,
        location_name=location.name if location is not None else None,
        category_name=category,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def budget_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.get_by_id = AsyncMock(return_value=None)
    repo.list_all = AsyncMock(return_value=[])
    repo.list_by_fiscal_year = AsyncMock(return_value=[])
    repo.list_by_location = AsyncMock(return_value=[])
    repo.find_by_location_category_year = AsyncMock(return_value=None)
    repo.location_exists = AsyncMock(return_value=True)
    repo.create = AsyncMock(side_effect=lambda budget: budget)
    repo.update = AsyncMock()
    repo.soft_delete = AsyncMock(return_value=True)
    return repo


@pytest.fixture
def cost_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.list_completed = AsyncMock(return_value=[])
    repo.sum_completed = AsyncMock(return_value=0.0)
    repo.categories_with_spend = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def service(budget_repo: AsyncMock, cost_repo: AsyncMock, settings: Settings) -> BudgetService:
    return BudgetService(
        budget_repo=budget_repo,
        cost_repo=cost_repo,
        forecaster=BudgetForecaster(),
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Allocation management
# ---------------------------------------------------------------------------


class TestBudgetLifecycle:
    """Create, update, delete and lookup of budget allocations."""

    @pytest.mark.asyncio
    async def test_create_budget_lowercases_category(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
    ) -> None:
        result = await service.create_budget(fiscal_year=2024, annual_budget=10_000.0, category="  HVAC ")

        assert result.category == "hvac"
        budget_repo.find_by_location_category_year.assert_awaited_once_with(
            location_id=None,
            category="hvac",
            fiscal_year=2024,
        )
        budget_repo.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_budget_defaults_to_total_category(
        self,
        service: BudgetService,
    ) -> None:
        result = await service.create_budget(fiscal_year=2024, annual_budget=50_000.0)
        assert result.category == "total"
        assert result.location_id is None

    @pytest.mark.asyncio
    async def test_duplicate_budget_is_rejected_before_any_write(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.find_by_location_category_year.return_value = hvac_budget

        with pytest.raises(ConflictError, match="Budget already exists for hvac in fiscal year 2024"):
            await service.create_budget(fiscal_year=2024, annual_budget=5000.0, category="HVAC")

        budget_repo.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_with_unknown_location_raises_not_found(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
    ) -> None:
        foreign_location = uuid.uuid4()
        budget_repo.location_exists.return_value = False

        with pytest.raises(NotFoundError, match=str(foreign_location)):
            await service.create_budget(fiscal_year=2024, annual_budget=5000.0, location_id=foreign_location)

        budget_repo.location_exists.assert_awaited_once_with(foreign_location)
        budget_repo.find_by_location_category_year.assert_not_awaited()
        budget_repo.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_to_unknown_location_raises_not_found(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.get_by_id.return_value = hvac_budget
        budget_repo.location_exists.return_value = False

        with pytest.raises(NotFoundError):
            await service.update_budget(hvac_budget.id, location_id=uuid.uuid4())

        budget_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tenant_wide_create_skips_location_lookup(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
    ) -> None:
        await service.create_budget(fiscal_year=2024, annual_budget=5000.0, category="hvac")
        budget_repo.location_exists.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_missing_budget_raises_not_found(self, service: BudgetService) -> None:
        with pytest.raises(NotFoundError):
            await service.get_budget(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_update_rejects_spent_amount(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.get_by_id.return_value = hvac_budget

        with pytest.raises(ValueError, match="spent_amount"):
            await service.update_budget(hvac_budget.id, spent_amount=123.0)

        budget_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_amount_skips_conflict_check(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.get_by_id.return_value = hvac_budget
        budget_repo.update.return_value = hvac_budget

        await service.update_budget(hvac_budget.id, annual_budget=12_000.0, notes="revised")

        budget_repo.find_by_location_category_year.assert_not_awaited()
        budget_repo.update.assert_awaited_once_with(hvac_budget.id, annual_budget=12_000.0, notes="revised")

    @pytest.mark.asyncio
    async def test_update_key_collision_raises_conflict(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        other = _make_budget(category="plumbing")
        budget_repo.get_by_id.return_value = hvac_budget
        budget_repo.find_by_location_category_year.return_value = other

        with pytest.raises(ConflictError):
            await service.update_budget(hvac_budget.id, category="Plumbing")

        budget_repo.find_by_location_category_year.assert_awaited_once_with(
            location_id=None,
            category="plumbing",
            fiscal_year=2024,
        )
        budget_repo.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_missing_budget_raises_not_found(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
    ) -> None:
        budget_repo.soft_delete.return_value = False
        with pytest.raises(NotFoundError):
            await service.delete_budget(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_budgets_filters_by_location_and_category(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
    ) -> None:
        store = _make_location("Store 12")
        keep = _make_budget(category="hvac", location=store)
        budget_repo.list_by_fiscal_year.return_value = [
            keep,
            _make_budget(category="plumbing", location=store),
            _make_budget(category="hvac"),
        ]

        result = await service.list_budgets(fiscal_year=2024, location_id=store.id, category="HVAC")

        assert result == [keep]


# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------


class TestSpend:
    """Spend, utilization and alert tiers derived from completed tickets."""

    @pytest.mark.asyncio
    async def test_compute_spend_passes_year_window_and_category(
        self,
        service: BudgetService,
        cost_repo: AsyncMock,
    ) -> None:
        cost_repo.sum_completed.return_value = 420.0
        location_id = uuid.uuid4()

        spent = await service.compute_spend(location_id, "HVAC", 2024)

        assert spent == 420.0
        cost_repo.sum_completed.assert_awaited_once_with(
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2025, 1, 1, tzinfo=timezone.utc),
            location_id=location_id,
            category="HVAC",
        )

    @pytest.mark.asyncio
    async def test_total_category_sums_every_category(
        self,
        service: BudgetService,
        cost_repo: AsyncMock,
    ) -> None:
        await service.compute_spend(None, "Total", 2024)
        assert cost_repo.sum_completed.await_args.kwargs["category"] is None

    @pytest.mark.asyncio
    async def test_hvac_scenario_is_danger_at_ninety_five_percent(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.get_by_id.return_value = hvac_budget
        cost_repo.sum_completed.return_value = 9500.0

        result = await service.get_budget_with_spend(hvac_budget.id)

        assert result.spent == 9500.0
        assert result.remaining == 500.0
        assert result.utilization_percentage == 95
        assert result.alert_level == AlertLevel.DANGER

    @pytest.mark.asyncio
    async def test_missing_budget_is_not_found_rather_than_zero(
        self,
        service: BudgetService,
        cost_repo: AsyncMock,
    ) -> None:
        with pytest.raises(NotFoundError):
            await service.get_budget_with_spend(uuid.uuid4())
        cost_repo.sum_completed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_budget_has_zero_utilization(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
    ) -> None:
        budget = _make_budget(annual_budget=0.0)
        budget_repo.get_by_id.return_value = budget
        cost_repo.sum_completed.return_value = 250.0

        result = await service.get_budget_with_spend(budget.id)

        assert result.utilization_percentage == 0
        assert result.alert_level == AlertLevel.NONE
        assert result.remaining == -250.0

    @pytest.mark.asyncio
    async def test_list_with_spend_orders_by_category_and_filters_by_alert(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
    ) -> None:
        plumbing = _make_budget(category="plumbing", annual_budget=1000.0)
        hvac = _make_budget(category="hvac", annual_budget=1000.0)
        budget_repo.list_by_fiscal_year.return_value = [plumbing, hvac]
        spend = {"plumbing": 1200.0, "hvac": 100.0}
        cost_repo.sum_completed.side_effect = lambda start, end, location_id=None, category=None: spend[category]

        everything = await service.list_with_spend(2024)
        over_only = await service.list_with_spend(2024, alert_level=AlertLevel.OVER)

        assert [b.category for b in everything] == ["hvac", "plumbing"]
        assert [b.category for b in over_only] == ["plumbing"]
        assert over_only[0].utilization_percentage == 120


class TestSummaries:
    """Summary and alert folds over enriched budgets."""

    @pytest.mark.asyncio
    async def test_summarize_counts_each_tier(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
    ) -> None:
        budgets = [
            _make_budget(category="hvac", annual_budget=1000.0),
            _make_budget(category="plumbing", annual_budget=1000.0),
            _make_budget(category="electrical", annual_budget=1000.0),
            _make_budget(category="roofing", annual_budget=1000.0),
        ]
        budget_repo.list_by_fiscal_year.return_value = budgets
        spend = {"hvac": 1100.0, "plumbing": 950.0, "electrical": 800.0, "roofing": 150.0}
        cost_repo.sum_completed.side_effect = lambda start, end, location_id=None, category=None: spend[category]

        summary = await service.summarize(2024)

        assert summary.budget_count == 4
        assert summary.total_budget == 4000.0
        assert summary.total_spent == 3000.0
        assert summary.total_remaining == 1000.0
        assert summary.utilization_percentage == 75
        assert summary.alert_level == AlertLevel.NONE
        assert summary.over_budget_count == 1
        assert summary.danger_count == 1
        assert summary.warning_count == 1

    @pytest.mark.asyncio
    async def test_alert_summary_groups_budgets_by_tier(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
    ) -> None:
        budget_repo.list_by_fiscal_year.return_value = [
            _make_budget(category="hvac", annual_budget=1000.0),
            _make_budget(category="roofing", annual_budget=1000.0),
        ]
        spend = {"hvac": 1000.0, "roofing": 10.0}
        cost_repo.sum_completed.side_effect = lambda start, end, location_id=None, category=None: spend[category]

        alerts = await service.alert_summary(2024)

        assert [b.category for b in alerts.over_budget] == ["hvac"]
        assert alerts.danger == []
        assert alerts.warning == []
        assert alerts.total_alerts == 1

    @pytest.mark.asyncio
    async def test_empty_year_summarizes_to_zero(self, service: BudgetService) -> None:
        summary = await service.summarize(2024)
        assert summary.budget_count == 0
        assert summary.utilization_percentage == 0
        assert summary.alert_level == AlertLevel.NONE


# ---------------------------------------------------------------------------
# Breakdowns
# ---------------------------------------------------------------------------


class TestBreakdowns:
    """Category, location, monthly and year-over-year breakdowns."""

    @pytest.mark.asyncio
    async def test_spend_by_category_keeps_unbudgeted_categories(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.list_by_fiscal_year.return_value = [hvac_budget]
        cost_repo.list_completed.return_value = [
            _make_record(9500.0, 3, "HVAC"),
            _make_record(1200.0, 4, "Plumbing"),
            _make_record(300.0, 5),
        ]

        result = await service.spend_by_category(2024)

        assert [(c.category, c.spent, c.budget, c.percentage) for c in result] == [
            ("HVAC", 9500.0, 10_000.0, 95),
            ("Plumbing", 1200.0, 0.0, 0),
            ("Uncategorized", 300.0, 0.0, 0),
        ]

    @pytest.mark.asyncio
    async def test_spend_by_category_merges_case_variants(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.list_by_fiscal_year.return_value = [hvac_budget]
        cost_repo.list_completed.return_value = [_make_record(6000.0, 3, "HVAC"), _make_record(3500.0, 6, "hvac")]

        result = await service.spend_by_category(2024)

        assert [(c.category, c.spent, c.budget, c.percentage) for c in result] == [("HVAC", 9500.0, 10_000.0, 95)]

    @pytest.mark.asyncio
    async def test_spend_by_category_with_location_uses_that_locations_allocation(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
    ) -> None:
        store = _make_location("Store 12")
        budget_repo.list_by_fiscal_year.return_value = [
            _make_budget(category="hvac", annual_budget=50_000.0),
            _make_budget(category="hvac", annual_budget=2000.0, location=store),
        ]
        cost_repo.list_completed.return_value = [_make_record(1000.0, 2, "HVAC", store)]

        result = await service.spend_by_category(2024, location_id=store.id)

        assert result[0].budget == 2000.0
        assert result[0].percentage == 50
        assert cost_repo.list_completed.await_args.kwargs["location_id"] == store.id

    @pytest.mark.asyncio
    async def test_utilization_by_location_sums_location_allocations(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
    ) -> None:
        store = _make_location("Store 12")
        warehouse = _make_location("Warehouse")
        budget_repo.list_by_fiscal_year.return_value = [
            _make_budget(category="hvac", annual_budget=3000.0, location=store),
            _make_budget(category="plumbing", annual_budget=2000.0, location=store),
            _make_budget(category="total", annual_budget=8000.0, location=warehouse),
            _make_budget(category="total", annual_budget=99_000.0),
        ]
        cost_repo.list_completed.return_value = [
            _make_record(2500.0, 1, "HVAC", store),
            _make_record(2000.0, 2, "Plumbing", store),
            _make_record(700.0, 2, "Plumbing"),
        ]

        result = await service.utilization_by_location(2024)

        assert len(result) == 2
        first, second = result
        assert (first.location_id, first.location_name, first.spent, first.budget) == (store.id, "Store 12", 4500.0, 5000.0)
        assert first.percentage == 90
        assert first.alert_level == AlertLevel.DANGER
        assert (second.location_name, second.spent, second.budget, second.percentage) == ("Warehouse", 0.0, 8000.0, 0)

    @pytest.mark.asyncio
    async def test_monthly_trend_has_twelve_entries_with_cumulative_spend(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        hvac_budget: Budget,
        hvac_records: list[CostRecord],
    ) -> None:
        budget_repo.list_by_fiscal_year.return_value = [hvac_budget]
        cost_repo.list_completed.return_value = hvac_records

        trend = await service.monthly_spend_trend(2024)

        assert [m.month for m in trend] == list(range(1, 13))
        assert trend[0].month_name == "January"
        assert (trend[2].spent, trend[2].cumulative_spend) == (3000.0, 3000.0)
        assert (trend[5].spent, trend[5].cumulative_spend) == (4000.0, 7000.0)
        assert (trend[8].spent, trend[8].cumulative_spend) == (2500.0, 9500.0)
        assert all(m.spent == 0.0 for i, m in enumerate(trend) if i not in (2, 5, 8))
        assert [m.cumulative_spend for m in trend[8:]] == [9500.0] * 4
        assert trend[5].budget_pace == 5000.0
        assert trend[11].budget_pace == 10_000.0

    @pytest.mark.asyncio
    async def test_year_over_year_compares_categories(
        self,
        service: BudgetService,
        cost_repo: AsyncMock,
    ) -> None:
        current = [_make_record(1500.0, 2, "HVAC"), _make_record(400.0, 3, "Electrical")]
        previous = [_make_record(1000.0, 2, "HVAC", year=2023), _make_record(200.0, 5, "Roofing", year=2023)]
        cost_repo.list_completed.side_effect = [current, previous]

        result = await service.year_over_year(2024)

        assert (result.current_year, result.previous_year) == (2024, 2023)
        by_name = {c.category: c for c in result.categories}
        assert by_name["HVAC"].change_percentage == 50
        assert by_name["HVAC"].change_amount == 500.0
        assert by_name["Electrical"].change_percentage == 100
        assert by_name["Roofing"].change_percentage == -100
        assert [c.category for c in result.categories] == ["HVAC", "Electrical", "Roofing"]
        assert result.total_current == 1900.0
        assert result.total_previous == 1200.0
        assert result.total_change_percentage == 58

    @pytest.mark.asyncio
    async def test_year_over_year_matches_categories_across_case(
        self,
        service: BudgetService,
        cost_repo: AsyncMock,
    ) -> None:
        current = [_make_record(1500.0, 2, "HVAC")]
        previous = [_make_record(1000.0, 2, "hvac", year=2023)]
        cost_repo.list_completed.side_effect = [current, previous]

        result = await service.year_over_year(2024)

        [hvac] = result.categories
        assert hvac.category == "HVAC"
        assert (hvac.current_year_spent, hvac.previous_year_spent) == (1500.0, 1000.0)
        assert hvac.change_percentage == 50

    @pytest.mark.asyncio
    async def test_year_over_year_with_no_spend(self, service: BudgetService) -> None:
        result = await service.year_over_year(2024)
        assert result.categories == []
        assert result.total_change_percentage == 0


# ---------------------------------------------------------------------------
# Forecasting and reporting
# ---------------------------------------------------------------------------


class TestForecastsAndReports:
    """Forecasts, category listings and the budget report."""

    @pytest.mark.asyncio
    async def test_forecast_budget_uses_computed_spend(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.get_by_id.return_value = hvac_budget
        cost_repo.sum_completed.return_value = 9500.0

        forecast = await service.forecast_budget(hvac_budget.id, now=datetime(2024, 9, 30, tzinfo=timezone.utc))

        assert forecast.budget_id == hvac_budget.id
        assert forecast.elapsed_months == 9
        assert forecast.will_exceed is True
        assert forecast.confidence == ForecastConfidence.HIGH
        assert forecast.projected_total == pytest.approx(12_666.67, abs=0.01)

    @pytest.mark.asyncio
    async def test_forecast_missing_budget_raises_not_found(self, service: BudgetService) -> None:
        with pytest.raises(NotFoundError):
            await service.forecast_budget(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_forecasts_for_past_year_have_high_confidence(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        now: datetime,
    ) -> None:
        budget_repo.list_by_fiscal_year.return_value = [_make_budget(fiscal_year=2023, annual_budget=12_000.0)]
        cost_repo.sum_completed.return_value = 6000.0

        forecasts = await service.forecasts_for_year(2023, now=now)

        assert len(forecasts) == 1
        assert forecasts[0].elapsed_months == 12
        assert forecasts[0].confidence == ForecastConfidence.HIGH
        assert forecasts[0].will_exceed is False

    @pytest.mark.asyncio
    async def test_categories_with_spend(self, service: BudgetService, cost_repo: AsyncMock) -> None:
        cost_repo.categories_with_spend.return_value = ["Electrical", "HVAC"]
        result = await service.categories_with_spend(2024)
        assert result.categories == ["Electrical", "HVAC"]

    def test_current_fiscal_year_is_calendar_year(self, service: BudgetService, now: datetime) -> None:
        assert service.current_fiscal_year(now) == 2024

    @pytest.mark.asyncio
    async def test_csv_report_includes_header_and_rows(
        self,
        service: BudgetService,
        budget_repo: AsyncMock,
        cost_repo: AsyncMock,
        hvac_budget: Budget,
    ) -> None:
        budget_repo.list_by_fiscal_year.return_value = [hvac_budget]
        cost_repo.sum_completed.return_value = 9500.0

        report = await service.budget_report(2024, report_format="csv")

        assert report.summary.total_spent == 9500.0
        assert report.csv_data is not None
        lines = report.csv_data.strip().splitlines()
        assert lines[0].startswith("id,location_id,location_name,category")
        assert len(lines) == 2
        assert "hvac" in lines[1]
        assert "danger" in lines[1]

    @pytest.mark.asyncio
    async def test_json_report_has_no_csv(self, service: BudgetService) -> None:
        report = await service.budget_report(2024)
        assert report.csv_data is None
        assert report.budgets == []
