# backend/icm/core/directory.py
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from icm.core.errors import TenantNotConfiguredError
from icm.models.tenant import Tenant
from icm.schemas.tenant import TenantConfig


class TenantDirectory:
    """
    Read-only view of the control-plane `tenants` table.
    Never handed to tenant-scoped code; the router is its only caller.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self.sessionmaker = sessionmaker

    async def get_tenant_config(self, tenant_id: str) -> TenantConfig:
        async with self.sessionmaker() as session:
            tenant = await session.get(Tenant, tenant_id)
            if not tenant:
                raise TenantNotConfiguredError(f"Tenant {tenant_id} is not configured", tenant_id=tenant_id)
            return TenantConfig.model_validate(tenant)
