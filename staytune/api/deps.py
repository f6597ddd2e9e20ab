"""Shared FastAPI dependencies for the training API.

Authentication happens upstream: the trusted gateway forwards the
resolved tenant in ``X-Tenant-ID``.  Host applications with their own auth
override ``get_tenant_id`` through ``app.dependency_overrides``.
"""

from __future__ import annotations

import uuid

from fastapi import Header, HTTPException, status

from staytune.config import get_settings
from staytune.providers.openai_client import ProviderClientFactory
from staytune.telemetry.logging import bind_tenant_context


async def get_tenant_id(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
) -> uuid.UUID:
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing tenant context",
        )
    try:
        tenant_id = uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid tenant id",
        ) from None
    bind_tenant_context(tenant_id)
    return tenant_id


def get_client_factory() -> ProviderClientFactory:
    """Provider client factory; override to plug in a BYOK credential resolver."""
    return ProviderClientFactory(settings=get_settings())
