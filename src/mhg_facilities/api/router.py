"""FastAPI router for the MHG Facilities budget API.

All routes are thin — they validate inputs, call BudgetService, and return
Pydantic response models. No business logic belongs here. ``fiscal_year``
defaults to the current calendar year wherever it is optional.

Endpoints:
  GET    /api/v1/budgets                      List budgets (optionally with spend)
  POST   /api/v1/budgets                      Create a budget allocation
  GET    /api/v1/budgets/summary              Totals and alert-tier counts for a year
  GET    /api/v1/budgets/alerts               Budgets in the over/danger/warning tiers
  GET    /api/v1/budgets/forecasts            Year-end forecast for every budget in a year
  GET    /api/v1/budgets/categories           Ticket categories with spend in a year
  GET    /api/v1/budgets/report               Budget report (json | csv)
  GET    /api/v1/budgets/charts/category      Spend by category
  GET    /api/v1/budgets/charts/location      Utilization by location
  GET    /api/v1/budgets/charts/trend         Monthly spend trend
  GET    /api/v1/budgets/charts/yoy           Year-over-year category comparison
  GET    /api/v1/budgets/{id}                 Get one budget (optionally with spend)
  GET    /api/v1/budgets/{id}/forecast        Year-end forecast for one budget
  PATCH  /api/v1/budgets/{id}                 Update a budget
  DELETE /api/v1/budgets/{id}                 Soft-delete a budget
"""

import uuid
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mhg_facilities.adapters.budget_forecaster import BudgetForecaster
from mhg_facilities.adapters.repositories import BudgetRepository, CostRecordRepository
from mhg_facilities.api.schemas import (
    BudgetAlertsResponse,
    BudgetForecastResponse,
    BudgetReportResponse,
    BudgetResponse,
    BudgetSummaryResponse,
    BudgetWithSpendResponse,
    CategoriesResponse,
    CategorySpendResponse,
    CreateBudgetRequest,
    LocationUtilizationResponse,
    MonthlySpendResponse,
    UpdateBudgetRequest,
    YearOverYearResponse,
)
from mhg_facilities.auth import TenantContext, get_current_tenant
from mhg_facilities.core.interfaces import AlertLevel
from mhg_facilities.core.services import BudgetService
from mhg_facilities.database import TenantScope, get_session_factory
from mhg_facilities.settings import get_settings

router = APIRouter(prefix="/budgets", tags=["budgets"])

FiscalYearQuery = Annotated[int | None, Query(ge=1900, le=9999, description="Calendar year; defaults to the current year")]
LocationQuery = Annotated[uuid.UUID | None, Query(description="Restrict to one location")]


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def _get_budget_service(
    tenant: Annotated[TenantContext, Depends(get_current_tenant)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> BudgetService:
    """Build BudgetService with repositories scoped to the request's tenant."""
    settings = get_settings()
    scope = TenantScope(session_factory, tenant.tenant_id)
    return BudgetService(
        budget_repo=BudgetRepository(scope),
        cost_repo=CostRecordRepository(scope),
        forecaster=BudgetForecaster(
            medium_confidence_months=settings.forecast_medium_confidence_months,
            high_confidence_months=settings.forecast_high_confidence_months,
        ),
        settings=settings,
    )


BudgetServiceDep = Annotated[BudgetService, Depends(_get_budget_service)]


# ---------------------------------------------------------------------------
# Collection endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[BudgetWithSpendResponse | BudgetResponse],
    summary="List budgets",
)
async def list_budgets(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
    location_id: LocationQuery = None,
    category: Annotated[str | None, Query(max_length=100)] = None,
    alert_level: Annotated[AlertLevel | None, Query(description="Only budgets in this tier; implies with_spend")] = None,
    with_spend: Annotated[bool, Query(description="Include spend, utilization and alert level")] = False,
) -> list[BudgetWithSpendResponse] | list[BudgetResponse]:
    """List the tenant's live budgets.

    With ``with_spend`` (or an ``alert_level`` filter) each budget carries
    spend computed from completed tickets; that view requires a fiscal year
    and falls back to the current one.
    """
    if with_spend or alert_level is not None:
        return await service.list_with_spend(
            fiscal_year=fiscal_year or service.current_fiscal_year(),
            location_id=location_id,
            category=category,
            alert_level=alert_level,
        )

    budgets = await service.list_budgets(
        fiscal_year=fiscal_year,
        location_id=location_id,
        category=category,
    )
    return [BudgetResponse.model_validate(b) for b in budgets]


@router.post(
    "",
    response_model=BudgetResponse,
    status_code=201,
    summary="Create a budget allocation",
)
async def create_budget(
    request: CreateBudgetRequest,
    service: BudgetServiceDep,
) -> BudgetResponse:
    """Create a budget for a location (or tenant-wide), category and fiscal year.

    Returns 409 if a live budget already exists for the same key.
    """
    budget = await service.create_budget(
        fiscal_year=request.fiscal_year,
        annual_budget=request.annual_budget,
        location_id=request.location_id,
        category=request.category,
        notes=request.notes,
    )
    return BudgetResponse.model_validate(budget)


@router.get("/summary", response_model=BudgetSummaryResponse, summary="Budget summary for a fiscal year")
async def get_summary(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
) -> BudgetSummaryResponse:
    """Total budget, spend and remaining for the year, with alert-tier counts."""
    return await service.summarize(fiscal_year or service.current_fiscal_year())


@router.get("/alerts", response_model=BudgetAlertsResponse, summary="Budgets needing attention")
async def get_alerts(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
) -> BudgetAlertsResponse:
    """Budgets in the over, danger and warning tiers."""
    return await service.alert_summary(fiscal_year or service.current_fiscal_year())


@router.get("/forecasts", response_model=list[BudgetForecastResponse], summary="Forecast every budget")
async def get_forecasts(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
) -> list[BudgetForecastResponse]:
    """Run-rate year-end projection for every budget in the year."""
    return await service.forecasts_for_year(fiscal_year or service.current_fiscal_year())


@router.get("/categories", response_model=CategoriesResponse, summary="Categories with spend")
async def get_categories(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
) -> CategoriesResponse:
    """Ticket categories that have completed, costed tickets in the year."""
    return await service.categories_with_spend(fiscal_year or service.current_fiscal_year())


@router.get("/report", response_model=BudgetReportResponse, summary="Budget report")
async def get_report(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
    report_format: Annotated[Literal["json", "csv"], Query(alias="format")] = "json",
) -> BudgetReportResponse:
    """Every budget for the year with spend and totals; ``format=csv`` adds a CSV export."""
    return await service.budget_report(
        fiscal_year or service.current_fiscal_year(),
        report_format=report_format,
    )


# ---------------------------------------------------------------------------
# Chart endpoints
# ---------------------------------------------------------------------------


@router.get("/charts/category", response_model=list[CategorySpendResponse], summary="Spend by category")
async def get_spend_by_category(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
    location_id: LocationQuery = None,
) -> list[CategorySpendResponse]:
    """Spend per ticket category against its allocation, highest spend first."""
    return await service.spend_by_category(
        fiscal_year or service.current_fiscal_year(),
        location_id=location_id,
    )


@router.get("/charts/location", response_model=list[LocationUtilizationResponse], summary="Utilization by location")
async def get_utilization_by_location(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
) -> list[LocationUtilizationResponse]:
    """Spend per location against the sum of that location's allocations."""
    return await service.utilization_by_location(fiscal_year or service.current_fiscal_year())


@router.get("/charts/trend", response_model=list[MonthlySpendResponse], summary="Monthly spend trend")
async def get_monthly_trend(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
    location_id: LocationQuery = None,
) -> list[MonthlySpendResponse]:
    """Twelve monthly entries with spend, cumulative spend and budget pace."""
    return await service.monthly_spend_trend(
        fiscal_year or service.current_fiscal_year(),
        location_id=location_id,
    )


@router.get("/charts/yoy", response_model=YearOverYearResponse, summary="Year-over-year comparison")
async def get_year_over_year(
    service: BudgetServiceDep,
    fiscal_year: FiscalYearQuery = None,
    location_id: LocationQuery = None,
) -> YearOverYearResponse:
    """Category spend in the year compared with the previous year."""
    return await service.year_over_year(
        fiscal_year or service.current_fiscal_year(),
        location_id=location_id,
    )


# ---------------------------------------------------------------------------
# Single-budget endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{budget_id}",
    response_model=BudgetWithSpendResponse | BudgetResponse,
    summary="Get a budget",
)
async def get_budget(
    budget_id: uuid.UUID,
    service: BudgetServiceDep,
    with_spend: Annotated[bool, Query(description="Include spend, utilization and alert level")] = False,
) -> BudgetWithSpendResponse | BudgetResponse:
    """Get one live budget. Returns 404 if it does not exist or was deleted."""
    if with_spend:
        return await service.get_budget_with_spend(budget_id)
    budget = await service.get_budget(budget_id)
    return BudgetResponse.model_validate(budget)


@router.get("/{budget_id}/forecast", response_model=BudgetForecastResponse, summary="Forecast a budget")
async def get_budget_forecast(
    budget_id: uuid.UUID,
    service: BudgetServiceDep,
) -> BudgetForecastResponse:
    """Run-rate year-end projection for one budget."""
    return await service.forecast_budget(budget_id)


@router.patch("/{budget_id}", response_model=BudgetResponse, summary="Update a budget")
async def update_budget(
    budget_id: uuid.UUID,
    request: UpdateBudgetRequest,
    service: BudgetServiceDep,
) -> BudgetResponse:
    """Partially update a budget. Only fields present in the body change.

    Returns 409 if the new location, category or fiscal year collides with
    another live budget.
    """
    budget = await service.update_budget(budget_id, **request.model_dump(exclude_unset=True))
    return BudgetResponse.model_validate(budget)


@router.delete("/{budget_id}", status_code=204, summary="Delete a budget")
async def delete_budget(
    budget_id: uuid.UUID,
    service: BudgetServiceDep,
) -> Response:
    """Soft-delete a budget; its row is kept with a deletion timestamp."""
    await service.delete_budget(budget_id)
    return Response(status_code=204)
