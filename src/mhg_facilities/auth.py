"""Tenant resolution for the HTTP layer.

Authentication itself is handled upstream (gateway/session middleware); by the
time a request reaches this service the caller's tenant is carried in the
``X-Tenant-ID`` header.
"""

from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import Header

from mhg_facilities.errors import TenantRequiredError


@dataclass(frozen=True)
class TenantContext:
    """The tenant (and optionally the user) a request acts on behalf of."""

    tenant_id: str
    user_id: str | None = None


async def get_current_tenant(
    x_tenant_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
) -> TenantContext:
    """Resolve the request's tenant from headers.

    Raises:
        TenantRequiredError: If no tenant header is present.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise TenantRequiredError("X-Tenant-ID header is required")

    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    return TenantContext(tenant_id=tenant_id, user_id=x_user_id)
