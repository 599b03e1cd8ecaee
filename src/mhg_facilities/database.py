"""Async SQLAlchemy setup and the tenant-scoped data-access handle.

Every table that holds tenant data extends ``TenantModel``. Repositories never
see a bare session: they are constructed from a ``TenantScope``, and the scope
is the only thing that builds ``SELECT`` statements for them. A query obtained
from a scope is already filtered by ``tenant_id`` (and by ``deleted_at IS
NULL`` for soft-deletable tables), so a repository cannot forget the filter.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import DateTime, Select, String, Uuid, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mhg_facilities.errors import TenantRequiredError
from mhg_facilities.observability import get_logger
from mhg_facilities.settings import Settings

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound="TenantModel")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models (single metadata registry)."""


class TenantModel(Base):
    """Abstract base supplying id, tenant_id, created_at and updated_at."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class SoftDeleteMixin:
    """Adds the ``deleted_at`` tombstone. Rows are never physically removed."""

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=None,
    )


class TenantScope:
    """A session factory bound to exactly one tenant.

    Reads open their own short-lived session, so independent reads issued
    through the same scope may run concurrently.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], tenant_id: str) -> None:
        if not tenant_id:
            raise TenantRequiredError("Tenant context required for database operations")
        self._session_factory = session_factory
        self._tenant_id = tenant_id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    def select(self, model: type[ModelT]) -> Select[tuple[ModelT]]:
        """``SELECT model`` restricted to this tenant's live rows."""
        return self._restrict(select(model), model)

    def select_columns(self, model: type[TenantModel], *columns: Any) -> Select[Any]:
        """``SELECT columns FROM model`` restricted to this tenant's live rows.

        Further joins are applied by the caller on the returned statement.
        """
        return self._restrict(select(*columns).select_from(model), model)

    def stamp(self, instance: ModelT) -> ModelT:
        """Assign this scope's tenant to a new instance before insert."""
        instance.tenant_id = self._tenant_id
        return instance

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a fresh session for read-only work."""
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction that commits on clean exit."""
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    def _restrict(self, stmt: Select[Any], model: type[TenantModel]) -> Select[Any]:
        stmt = stmt.where(model.tenant_id == self._tenant_id)
        if issubclass(model, SoftDeleteMixin):
            stmt = stmt.where(model.deleted_at.is_(None))
        return stmt


# ---------------------------------------------------------------------------
# Engine lifecycle
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, settings: Settings) -> AsyncEngine:
    """Create an async engine; pool sizing is skipped for SQLite."""
    kwargs: dict[str, Any] = {"echo": settings.database_echo}
    if not database_url.startswith("sqlite"):
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


def init_database(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Create the process-wide engine and session factory."""
    global _engine, _session_factory

    _engine = build_engine(settings.database_url, settings)
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("database_initialized", dialect=_engine.dialect.name)
    return _session_factory


async def dispose_database() -> None:
    """Dispose the engine created by ``init_database``."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.info("database_disposed")
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the session factory."""
    if _session_factory is None:
        raise RuntimeError("Database not initialised; call init_database() during startup")
    return _session_factory
