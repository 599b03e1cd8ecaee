"""Shared test fixtures for mhg-facilities-budgets tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from mhg_facilities.core.interfaces import CostRecord
from mhg_facilities.core.models import Budget
from mhg_facilities.database import Base
from mhg_facilities.settings import Settings


@pytest.fixture
def settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        log_json=False,
        warning_threshold_pct=80,
        danger_threshold_pct=90,
        over_threshold_pct=100,
    )


@pytest.fixture
def tenant_id() -> str:
    """Provide a consistent test tenant ID."""
    return "test-tenant-001"


@pytest.fixture
def now() -> datetime:
    """Provide a consistent reference time (mid-2024)."""
    return datetime(2024, 7, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def hvac_budget(tenant_id: str) -> Budget:
    """Tenant-wide HVAC allocation of 10,000 for 2024."""
    budget = Budget(
        tenant_id=tenant_id,
        location_id=None,
        category="hvac",
        fiscal_year=2024,
        annual_budget=10_000.0,
        notes="Chiller replacement reserve",
    )
    budget.id = uuid.uuid4()
    budget.created_at = datetime(2024, 1, 2, tzinfo=timezone.utc)
    budget.updated_at = budget.created_at
    return budget


@pytest.fixture
def hvac_records() -> list[CostRecord]:
    """Three completed HVAC tickets in March, June and September 2024 (9,500 total)."""
    return [
        CostRecord(cost=3000.0, completed_at=datetime(2024, 3, 12, 9, 30, tzinfo=timezone.utc), category_name="HVAC"),
        CostRecord(cost=4000.0, completed_at=datetime(2024, 6, 3, 14, 0, tzinfo=timezone.utc), category_name="HVAC"),
        CostRecord(cost=2500.0, completed_at=datetime(2024, 9, 27, 16, 45, tzinfo=timezone.utc), category_name="HVAC"),
    ]


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Async session factory over a throwaway SQLite file with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'budgets.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
