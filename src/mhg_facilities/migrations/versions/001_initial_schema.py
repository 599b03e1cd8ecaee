"""Create locations, ticket_categories, tickets and budgets.

Revision ID: 001_initial
Revises: —
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _tenant_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Create all tables and indexes."""

    op.create_table(
        "locations",
        *_tenant_columns(),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_index("ix_locations_tenant_id", "locations", ["tenant_id"])

    op.create_table(
        "ticket_categories",
        *_tenant_columns(),
        sa.Column("name", sa.String(100), nullable=False),
    )
    op.create_index("ix_ticket_categories_tenant_id", "ticket_categories", ["tenant_id"])

    op.create_table(
        "tickets",
        *_tenant_columns(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="submitted"),
        sa.Column("location_id", sa.Uuid, sa.ForeignKey("locations.id"), nullable=True),
        sa.Column("category_id", sa.Uuid, sa.ForeignKey("ticket_categories.id"), nullable=True),
        sa.Column("actual_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tickets_tenant_id", "tickets", ["tenant_id"])
    op.create_index("ix_tickets_location_id", "tickets", ["location_id"])
    op.create_index("ix_tickets_tenant_completed_at", "tickets", ["tenant_id", "completed_at"])

    op.create_table(
        "budgets",
        *_tenant_columns(),
        sa.Column("location_id", sa.Uuid, sa.ForeignKey("locations.id"), nullable=True),
        sa.Column("category", sa.String(100), nullable=False, server_default="total"),
        sa.Column("fiscal_year", sa.Integer, nullable=False),
        sa.Column("annual_budget", sa.Numeric(12, 2), nullable=False),
        sa.Column("spent_amount", sa.Numeric(12, 2), nullable=True, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
    )
    op.create_index("ix_budgets_tenant_id", "budgets", ["tenant_id"])
    op.create_index("ix_budgets_tenant_fiscal_year", "budgets", ["tenant_id", "fiscal_year"])
    op.create_index("ix_budgets_tenant_location", "budgets", ["tenant_id", "location_id"])

    # One live budget per key; NULL locations need their own partial index
    op.create_index(
        "uq_budgets_live_location_key",
        "budgets",
        ["tenant_id", "location_id", "category", "fiscal_year"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL AND location_id IS NOT NULL"),
        sqlite_where=sa.text("deleted_at IS NULL AND location_id IS NOT NULL"),
    )
    op.create_index(
        "uq_budgets_live_tenant_wide_key",
        "budgets",
        ["tenant_id", "category", "fiscal_year"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL AND location_id IS NULL"),
        sqlite_where=sa.text("deleted_at IS NULL AND location_id IS NULL"),
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_table("budgets")
    op.drop_table("tickets")
    op.drop_table("ticket_categories")
    op.drop_table("locations")
