"""SQLAlchemy repositories for the MHG Facilities budget service.

Repositories implement the interfaces in core/interfaces.py. Each one is
constructed from a TenantScope and builds every query through it, so tenant
isolation and soft-delete filtering are applied before any repository-specific
criteria are added.

Storage failures are re-raised as DataSourceError. Only violations of the two
live-budget unique indexes become ConflictError; a location id that is not a
live row of the scope's tenant is a NotFoundError.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mhg_facilities.core.interfaces import CostRecord
from mhg_facilities.core.models import Budget, Location, Ticket, TicketCategory
from mhg_facilities.database import TenantScope, utcnow
from mhg_facilities.errors import ConflictError, DataSourceError, NotFoundError
from mhg_facilities.observability import get_logger

logger = get_logger(__name__)

# Columns callers may change through BudgetRepository.update()
UPDATABLE_BUDGET_FIELDS: frozenset[str] = frozenset(
    {"location_id", "category", "fiscal_year", "annual_budget", "notes"}
)

# Partial unique indexes guarding one live budget per key (see core/models.py)
LIVE_KEY_INDEXES: tuple[str, ...] = ("uq_budgets_live_location_key", "uq_budgets_live_tenant_wide_key")


def is_live_key_violation(exc: IntegrityError) -> bool:
    """Whether ``exc`` was raised by one of the live-budget unique indexes.

    PostgreSQL names the index in the message; SQLite names the indexed
    columns of the table instead.
    """
    message = str(exc.orig)
    if any(name in message for name in LIVE_KEY_INDEXES):
        return True
    return "UNIQUE constraint failed: budgets." in message


class BudgetRepository:
    """Repository for budgets — annual allocations per location/category/year."""

    def __init__(self, scope: TenantScope) -> None:
        """Initialize with a tenant scope."""
        self._scope = scope

    def _select(self) -> Select[tuple[Budget]]:
        # The related location is loaded under the same tenant filter as the budget
        return self._scope.select(Budget).options(
            selectinload(Budget.location.and_(Location.tenant_id == self._scope.tenant_id))
        )

    async def _all(self, stmt: Select[tuple[Budget]], action: str) -> list[Budget]:
        try:
            async with self._scope.session() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.error("budget_query_failed", action=action, error=str(exc))
            raise DataSourceError(f"Failed to {action}: {exc}") from exc

    async def _first(self, stmt: Select[tuple[Budget]], action: str) -> Budget | None:
        try:
            async with self._scope.session() as session:
                result = await session.execute(stmt)
                return result.scalars().first()
        except SQLAlchemyError as exc:
            logger.error("budget_query_failed", action=action, error=str(exc))
            raise DataSourceError(f"Failed to {action}: {exc}") from exc

    async def get_by_id(self, budget_id: uuid.UUID) -> Budget | None:
        """Retrieve a live budget by primary key, with its location loaded."""
        return await self._first(self._select().where(Budget.id == budget_id), "find budget")

    async def list_all(self) -> list[Budget]:
        """List every live budget, newest first."""
        stmt = self._select().order_by(Budget.created_at.desc())
        return await self._all(stmt, "list budgets")

    async def list_by_fiscal_year(self, fiscal_year: int) -> list[Budget]:
        """List live budgets for a fiscal year.

        Args:
            fiscal_year: Calendar year of the allocations.

        Returns:
            Budgets ordered by category ascending, with locations loaded.
        """
        stmt = (
            self._select()
            .where(Budget.fiscal_year == fiscal_year)
            .order_by(Budget.category.asc(), Budget.created_at.asc())
        )
        return await self._all(stmt, "find budgets by fiscal year")

    async def list_by_location(self, location_id: uuid.UUID) -> list[Budget]:
        """List live budgets for a location, newest fiscal year first."""
        stmt = (
            self._select()
            .where(Budget.location_id == location_id)
            .order_by(Budget.fiscal_year.desc(), Budget.category.asc())
        )
        return await self._all(stmt, "find budgets by location")

    async def find_by_location_category_year(
        self,
        location_id: uuid.UUID | None,
        category: str,
        fiscal_year: int,
    ) -> Budget | None:
        """Find the live budget for a (location, category, fiscal_year) key.

        Args:
            location_id: Location, or None to match only tenant-wide budgets.
            category: Budget category (stored lower-cased).
            fiscal_year: Calendar year.

        Returns:
            The matching Budget, or None.
        """
        stmt = self._select().where(
            Budget.category == category.lower(),
            Budget.fiscal_year == fiscal_year,
        )
        if location_id is None:
            stmt = stmt.where(Budget.location_id.is_(None))
        else:
            stmt = stmt.where(Budget.location_id == location_id)

        return await self._first(stmt, "find budget")

    async def location_exists(self, location_id: uuid.UUID) -> bool:
        """Whether ``location_id`` is a live location of this scope's tenant."""
        stmt = self._scope.select(Location).where(Location.id == location_id)
        try:
            async with self._scope.session() as session:
                result = await session.execute(stmt)
                return result.scalars().first() is not None
        except SQLAlchemyError as exc:
            logger.error("budget_query_failed", action="find location", error=str(exc))
            raise DataSourceError(f"Failed to find location: {exc}") from exc

    async def _require_location(self, session: AsyncSession, location_id: uuid.UUID | None) -> None:
        if location_id is None:
            return
        result = await session.execute(self._scope.select(Location).where(Location.id == location_id))
        if result.scalars().first() is None:
            raise NotFoundError(f"Location {location_id} not found")

    async def create(self, budget: Budget) -> Budget:
        """Persist a new budget for this scope's tenant.

        Raises:
            ConflictError: If a live budget already holds the same key.
            NotFoundError: If ``location_id`` is not a live location of this tenant.
            DataSourceError: On any other storage failure.
        """
        self._scope.stamp(budget)
        try:
            async with self._scope.transaction() as session:
                await self._require_location(session, budget.location_id)
                session.add(budget)
                await session.flush()
                budget_id = budget.id
        except IntegrityError as exc:
            if is_live_key_violation(exc):
                raise ConflictError(
                    f"Budget already exists for {budget.category} in fiscal year {budget.fiscal_year}",
                ) from exc
            logger.error("budget_write_rejected", action="create", error=str(exc.orig))
            raise DataSourceError(f"Failed to create budget: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to create budget: {exc}") from exc

        created = await self.get_by_id(budget_id)
        if created is None:
            raise DataSourceError("Failed to create budget: row not visible after insert")
        return created

    async def update(self, budget_id: uuid.UUID, **changes: Any) -> Budget | None:
        """Apply field changes to a live budget.

        Only the allocation's own fields may change; derived spend is never
        written.

        Returns:
            The updated Budget, or None if no live budget has this id.

        Raises:
            ValueError: If ``changes`` names a field outside UPDATABLE_BUDGET_FIELDS.
            NotFoundError: If a new ``location_id`` is not a live location of this tenant.
            ConflictError: If the new key collides with another live budget.
        """
        unknown = set(changes) - UPDATABLE_BUDGET_FIELDS
        if unknown:
            raise ValueError(f"Cannot update budget fields: {', '.join(sorted(unknown))}")

        try:
            async with self._scope.transaction() as session:
                result = await session.execute(self._scope.select(Budget).where(Budget.id == budget_id))
                budget = result.scalars().first()
                if budget is None:
                    return None
                if "location_id" in changes:
                    await self._require_location(session, changes["location_id"])
                for field, value in changes.items():
                    setattr(budget, field, value)
                budget.updated_at = utcnow()
        except IntegrityError as exc:
            if is_live_key_violation(exc):
                raise ConflictError(
                    "Another budget already exists for this location, category and fiscal year",
                ) from exc
            logger.error("budget_write_rejected", action="update", error=str(exc.orig))
            raise DataSourceError(f"Failed to update budget: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to update budget: {exc}") from exc

        return await self.get_by_id(budget_id)

    async def soft_delete(self, budget_id: uuid.UUID) -> bool:
        """Set ``deleted_at`` on a live budget.

        Returns:
            True if a budget was tombstoned, False if none was found.
        """
        try:
            async with self._scope.transaction() as session:
                result = await session.execute(self._scope.select(Budget).where(Budget.id == budget_id))
                budget = result.scalars().first()
                if budget is None:
                    return False
                budget.deleted_at = utcnow()
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to delete budget: {exc}") from exc
        return True


class CostRecordRepository:
    """Read-only view over completed, costed tickets."""

    def __init__(self, scope: TenantScope) -> None:
        """Initialize with a tenant scope."""
        self._scope = scope

    def _completed(self, period_start: datetime, period_end: datetime, *columns: Any) -> Select[Any]:
        return self._scope.select_columns(Ticket, *columns).where(
            Ticket.actual_cost.is_not(None),
            Ticket.completed_at.is_not(None),
            Ticket.completed_at >= period_start,
            Ticket.completed_at < period_end,
        )

    async def list_completed(
        self,
        period_start: datetime,
        period_end: datetime,
        location_id: uuid.UUID | None = None,
    ) -> list[CostRecord]:
        """List completed tickets with a cost inside a half-open window.

        Args:
            period_start: Window start (inclusive).
            period_end: Window end (exclusive).
            location_id: Optional location filter; None = every location.

        Returns:
            CostRecord values carrying cost, completion time, location and
            category name.
        """
        stmt = (
            self._completed(
                period_start,
                period_end,
                Ticket.actual_cost,
                Ticket.completed_at,
                Ticket.location_id,
                Location.name.label("location_name"),
                TicketCategory.name.label("category_name"),
            )
            .outerjoin(Location, Location.id == Ticket.location_id)
            .outerjoin(TicketCategory, TicketCategory.id == Ticket.category_id)
        )
        if location_id is not None:
            stmt = stmt.where(Ticket.location_id == location_id)

        try:
            async with self._scope.session() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to list cost records: {exc}") from exc

        return [
            CostRecord(
                cost=float(row.actual_cost),
                completed_at=row.completed_at,
                location_id=row.location_id,
                location_name=row.location_name,
                category_name=row.category_name,
            )
            for row in rows
        ]

    async def sum_completed(
        self,
        period_start: datetime,
        period_end: datetime,
        location_id: uuid.UUID | None = None,
        category: str | None = None,
    ) -> float:
        """Sum completed ticket cost inside a half-open window.

        Args:
            period_start: Window start (inclusive).
            period_end: Window end (exclusive).
            location_id: Optional location filter; None = tenant-wide.
            category: Optional category name, matched case-insensitively.
                None means every category.

        Returns:
            Total cost (0.0 if no records).
        """
        stmt = self._completed(
            period_start,
            period_end,
            func.coalesce(func.sum(Ticket.actual_cost), 0),
        )
        if location_id is not None:
            stmt = stmt.where(Ticket.location_id == location_id)
        if category is not None:
            stmt = stmt.join(TicketCategory, TicketCategory.id == Ticket.category_id).where(
                func.lower(TicketCategory.name) == category.lower()
            )

        try:
            async with self._scope.session() as session:
                result = await session.execute(stmt)
                total = result.scalar()
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to calculate spend: {exc}") from exc

        return float(total or 0.0)

    async def categories_with_spend(self, period_start: datetime, period_end: datetime) -> list[str]:
        """Distinct category names with completed cost in the window, sorted."""
        stmt = (
            self._completed(period_start, period_end, TicketCategory.name)
            .join(TicketCategory, TicketCategory.id == Ticket.category_id)
            .distinct()
            .order_by(TicketCategory.name.asc())
        )
        try:
            async with self._scope.session() as session:
                result = await session.execute(stmt)
                return [name for name in result.scalars().all() if name]
        except SQLAlchemyError as exc:
            raise DataSourceError(f"Failed to get ticket categories: {exc}") from exc
