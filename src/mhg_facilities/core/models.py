"""SQLAlchemy ORM models for the MHG Facilities budget service.

Tenant-scoped tables extend TenantModel which supplies id (UUID), tenant_id,
created_at, and updated_at columns. Every table here soft-deletes through
``deleted_at``.

Domain model:
  Location        — a physical site owned by a tenant
  TicketCategory  — a work-order category (HVAC, Plumbing, ...)
  Ticket          — a work order; completed tickets with a cost are the
                    cost records that actual spend is derived from
  Budget          — an annual allocation per (location, category, fiscal year)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mhg_facilities.database import SoftDeleteMixin, TenantModel


class Location(SoftDeleteMixin, TenantModel):
    """A facility location. Budgets and tickets may reference one.

    Table: locations
    """

    __tablename__ = "locations"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Display name of the location",
    )


class TicketCategory(SoftDeleteMixin, TenantModel):
    """A ticket category. Budget categories match these names case-insensitively.

    Table: ticket_categories
    """

    __tablename__ = "ticket_categories"

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Category name, e.g. HVAC, Plumbing, Electrical",
    )


class Ticket(SoftDeleteMixin, TenantModel):
    """A work order. Owned by the ticketing module; read-only here.

    Only tickets with both ``actual_cost`` and ``completed_at`` set count
    toward budget spend.

    Table: tickets
    """

    __tablename__ = "tickets"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="submitted",
        comment="submitted | in_progress | completed | closed | ...",
    )
    location_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("locations.id"),
        nullable=True,
        index=True,
    )
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("ticket_categories.id"),
        nullable=True,
    )
    actual_cost: Mapped[float | None] = mapped_column(
        Numeric(12, 2, asdecimal=False),
        nullable=True,
        comment="Realized cost of the work, set on completion",
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    location: Mapped[Location | None] = relationship("Location", lazy="raise")
    category: Mapped[TicketCategory | None] = relationship("TicketCategory", lazy="raise")

    __table_args__ = (
        Index("ix_tickets_tenant_completed_at", "tenant_id", "completed_at"),
    )


class Budget(SoftDeleteMixin, TenantModel):
    """An annual budget allocation for a tenant.

    ``location_id`` NULL means the allocation is tenant-wide; ``category``
    ``"total"`` means it covers every category. Actual spend is always
    computed from tickets; ``spent_amount`` is a legacy column kept only so
    the table matches existing databases and is never read.

    Table: budgets
    """

    __tablename__ = "budgets"

    location_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("locations.id"),
        nullable=True,
        comment="NULL = tenant-wide budget",
    )
    category: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="total",
        comment="Lower-cased ticket category name, or 'total' for all categories",
    )
    fiscal_year: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Calendar year, Jan 1 - Dec 31",
    )
    annual_budget: Mapped[float] = mapped_column(
        Numeric(12, 2, asdecimal=False),
        nullable=False,
    )
    spent_amount: Mapped[float | None] = mapped_column(
        Numeric(12, 2, asdecimal=False),
        nullable=True,
        default=0,
        comment="Legacy stored spend. Not used; spend is derived from tickets.",
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    location: Mapped[Location | None] = relationship("Location", lazy="raise")

    @property
    def location_name(self) -> str | None:
        """Name of the budget's location; requires ``location`` to be loaded."""
        return self.location.name if self.location is not None else None

    __table_args__ = (
        Index("ix_budgets_tenant_fiscal_year", "tenant_id", "fiscal_year"),
        Index("ix_budgets_tenant_location", "tenant_id", "location_id"),
        # One live allocation per (tenant, location, category, year). NULL
        # locations never collide in a plain unique index, hence two partials.
        Index(
            "uq_budgets_live_location_key",
            "tenant_id",
            "location_id",
            "category",
            "fiscal_year",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND location_id IS NOT NULL"),
            sqlite_where=text("deleted_at IS NULL AND location_id IS NOT NULL"),
        ),
        Index(
            "uq_budgets_live_tenant_wide_key",
            "tenant_id",
            "category",
            "fiscal_year",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND location_id IS NULL"),
            sqlite_where=text("deleted_at IS NULL AND location_id IS NULL"),
        ),
    )
