"""Pydantic request and response schemas for the MHG Facilities budget API.

All API inputs and outputs are typed Pydantic models — never raw dicts.
Computed views (spend, breakdowns, forecasts) are built by BudgetService and
returned through these models; none of them is persisted.
"""

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from mhg_facilities.core.interfaces import AlertLevel, ForecastConfidence
from mhg_facilities.settings import get_settings


def _normalize_category(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().lower()
    if not value:
        raise ValueError("category must not be blank")
    return value


def _check_fiscal_year(value: int | None) -> int | None:
    if value is None:
        return None
    settings = get_settings()
    latest = datetime.now(timezone.utc).year + settings.max_future_fiscal_years
    if not settings.min_fiscal_year <= value <= latest:
        raise ValueError(f"fiscal_year must be between {settings.min_fiscal_year} and {latest}")
    return value


def _check_annual_budget(value: float | None) -> float | None:
    if value is None:
        return None
    limit = get_settings().max_annual_budget
    if value > limit:
        raise ValueError(f"annual_budget must not exceed {limit:,.2f}")
    return value


# ---------------------------------------------------------------------------
# Budget request schemas
# ---------------------------------------------------------------------------


class CreateBudgetRequest(BaseModel):
    """Request body for creating a budget allocation."""

    location_id: uuid.UUID | None = Field(default=None, description="NULL = tenant-wide budget")
    category: str | None = Field(
        default=None,
        min_length=1,
        max_length=100,
        description="Ticket category name, or 'total' (the default) for all categories",
    )
    fiscal_year: int = Field(description="Calendar year the allocation covers")
    annual_budget: float = Field(gt=0, description="Annual allocation amount")
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("category")
    @classmethod
    def _lower_category(cls, value: str | None) -> str | None:
        return _normalize_category(value)

    @field_validator("fiscal_year")
    @classmethod
    def _fiscal_year_in_range(cls, value: int | None) -> int | None:
        return _check_fiscal_year(value)

    @field_validator("annual_budget")
    @classmethod
    def _annual_budget_in_range(cls, value: float | None) -> float | None:
        return _check_annual_budget(value)


class UpdateBudgetRequest(BaseModel):
    """Request body for a partial budget update. Omitted fields are left as-is."""

    location_id: uuid.UUID | None = None
    category: str | None = Field(default=None, min_length=1, max_length=100)
    fiscal_year: int | None = None
    annual_budget: float | None = Field(default=None, gt=0)
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("category")
    @classmethod
    def _lower_category(cls, value: str | None) -> str | None:
        return _normalize_category(value)

    @field_validator("fiscal_year")
    @classmethod
    def _fiscal_year_in_range(cls, value: int | None) -> int | None:
        return _check_fiscal_year(value)

    @field_validator("annual_budget")
    @classmethod
    def _annual_budget_in_range(cls, value: float | None) -> float | None:
        return _check_annual_budget(value)

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> "UpdateBudgetRequest":
        for field in ("fiscal_year", "annual_budget"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self


# ---------------------------------------------------------------------------
# Budget response schemas
# ---------------------------------------------------------------------------


class BudgetResponse(BaseModel):
    """Response schema for a stored budget allocation."""

    id: uuid.UUID
    tenant_id: str
    location_id: uuid.UUID | None
    location_name: str | None = None
    category: str
    fiscal_year: int
    annual_budget: float
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class BudgetWithSpendResponse(BudgetResponse):
    """A budget allocation enriched with spend derived from completed tickets.

    Attributes:
        spent: Sum of matching completed ticket costs in the fiscal year.
        remaining: annual_budget - spent (negative when over budget).
        utilization_percentage: round(spent / annual_budget * 100); 0 when the
            budget is 0.
        alert_level: none | warning | danger | over
    """

    spent: float
    remaining: float
    utilization_percentage: int
    alert_level: AlertLevel


class BudgetSummaryResponse(BaseModel):
    """Tenant-wide totals for one fiscal year."""

    fiscal_year: int
    total_budget: float
    total_spent: float
    total_remaining: float
    utilization_percentage: int
    alert_level: AlertLevel
    budget_count: int
    over_budget_count: int
    danger_count: int
    warning_count: int


class BudgetAlertsResponse(BaseModel):
    """Budgets at or past each alert tier for one fiscal year."""

    fiscal_year: int
    over_budget: list[BudgetWithSpendResponse]
    danger: list[BudgetWithSpendResponse]
    warning: list[BudgetWithSpendResponse]
    total_alerts: int


class CategorySpendResponse(BaseModel):
    """Spend for one ticket category against its matching allocation."""

    category: str
    spent: float
    budget: float
    percentage: int


class LocationUtilizationResponse(BaseModel):
    """Spend for one location against the sum of its allocations."""

    location_id: uuid.UUID
    location_name: str | None
    spent: float
    budget: float
    percentage: int
    alert_level: AlertLevel


class MonthlySpendResponse(BaseModel):
    """One calendar month of the spend trend.

    Attributes:
        month: 1-12.
        spent: Spend completed in this month.
        cumulative_spend: Spend from January through this month.
        budget_pace: Straight-line cumulative budget through this month.
    """

    month: int = Field(ge=1, le=12)
    year: int
    month_name: str
    spent: float
    cumulative_spend: float
    budget_pace: float


class YearOverYearCategory(BaseModel):
    """Per-category spend in two consecutive fiscal years."""

    category: str
    current_year_spent: float
    previous_year_spent: float
    change_amount: float
    change_percentage: int


class YearOverYearResponse(BaseModel):
    """Category spend in a fiscal year compared with the year before."""

    current_year: int
    previous_year: int
    categories: list[YearOverYearCategory]
    total_current: float
    total_previous: float
    total_change_percentage: int


class BudgetForecastResponse(BaseModel):
    """Run-rate projection of year-end spend for one allocation."""

    budget_id: uuid.UUID
    location_id: uuid.UUID | None
    category: str
    fiscal_year: int
    annual_budget: float
    spent: float
    elapsed_months: int
    monthly_average: float
    projected_total: float
    projected_remaining: float
    will_exceed: bool
    projected_excess: float
    confidence: ForecastConfidence


class CategoriesResponse(BaseModel):
    """Ticket categories that carry spend in a fiscal year."""

    fiscal_year: int
    categories: list[str]


class BudgetReportResponse(BaseModel):
    """Budget report for one fiscal year.

    Attributes:
        budgets: Every allocation for the year with its spend.
        summary: Tenant-wide totals for the year.
        format: json | csv
        csv_data: CSV export of ``budgets`` when format is csv.
    """

    fiscal_year: int
    generated_at: datetime
    format: Literal["json", "csv"]
    budgets: list[BudgetWithSpendResponse]
    summary: BudgetSummaryResponse
    csv_data: str | None = None
