"""Abstract interfaces (Protocol classes) for the MHG Facilities budget service.

Services depend on these interfaces, not on the SQLAlchemy repositories, so
they can be exercised with test doubles. Repositories are always built from a
TenantScope, which is why no method here takes a tenant id.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from mhg_facilities.core.models import Budget


class AlertLevel(str, Enum):
    """Four-tier budget utilization classification."""

    NONE = "none"
    WARNING = "warning"
    DANGER = "danger"
    OVER = "over"


class ForecastConfidence(str, Enum):
    """How much history a run-rate forecast is based on."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class CostRecord:
    """A completed, costed ticket as seen by budget calculations."""

    cost: float
    completed_at: datetime
    location_id: uuid.UUID | None = None
    location_name: str | None = None
    category_name: str | None = None


@dataclass(frozen=True)
class ForecastResult:
    """Linear run-rate projection for one allocation."""

    elapsed_months: int
    monthly_average: float
    projected_total: float
    projected_remaining: float
    will_exceed: bool
    projected_excess: float
    confidence: ForecastConfidence


@runtime_checkable
class IBudgetRepository(Protocol):
    """Allocations store."""

    async def get_by_id(self, budget_id: uuid.UUID) -> Budget | None:
        """Retrieve a live budget by primary key."""
        ...

    async def list_all(self) -> list[Budget]:
        """List every live budget for the tenant."""
        ...

    async def list_by_fiscal_year(self, fiscal_year: int) -> list[Budget]:
        """List live budgets for a fiscal year, ordered by category."""
        ...

    async def list_by_location(self, location_id: uuid.UUID) -> list[Budget]:
        """List live budgets for one location, newest fiscal year first."""
        ...

    async def find_by_location_category_year(
        self,
        location_id: uuid.UUID | None,
        category: str,
        fiscal_year: int,
    ) -> Budget | None:
        """Find the live budget for a key tuple (NULL location = tenant-wide)."""
        ...

    async def location_exists(self, location_id: uuid.UUID) -> bool:
        """Whether a live location with this id belongs to the tenant."""
        ...

    async def create(self, budget: Budget) -> Budget:
        """Persist a new budget."""
        ...

    async def update(self, budget_id: uuid.UUID, **changes: Any) -> Budget | None:
        """Apply field changes to a live budget."""
        ...

    async def soft_delete(self, budget_id: uuid.UUID) -> bool:
        """Tombstone a live budget."""
        ...


@runtime_checkable
class ICostRecordRepository(Protocol):
    """Cost-record source (completed tickets with a cost)."""

    async def list_completed(
        self,
        period_start: datetime,
        period_end: datetime,
        location_id: uuid.UUID | None = None,
    ) -> list[CostRecord]:
        """List cost records completed within [period_start, period_end)."""
        ...

    async def sum_completed(
        self,
        period_start: datetime,
        period_end: datetime,
        location_id: uuid.UUID | None = None,
        category: str | None = None,
    ) -> float:
        """Sum cost completed within [period_start, period_end)."""
        ...

    async def categories_with_spend(
        self,
        period_start: datetime,
        period_end: datetime,
    ) -> list[str]:
        """Distinct category names that have cost in the window."""
        ...


@runtime_checkable
class IBudgetForecaster(Protocol):
    """Pure run-rate forecast computation."""

    def elapsed_months(self, fiscal_year: int, now: datetime) -> int:
        """Months of the fiscal year that have started as of ``now``."""
        ...

    def forecast(
        self,
        annual_budget: float,
        spent: float,
        fiscal_year: int,
        now: datetime,
    ) -> ForecastResult:
        """Project year-end spend from the elapsed-month average."""
        ...
