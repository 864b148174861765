# backend/icm/api/deps/tenant.py
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from icm.core.router import ConnectionRouter
from icm.services.orchestrator import ExecutionOrchestrator


async def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id")) -> str:
    """
    Tenant for the request, from the X-Tenant-Id header.
    Tenant ids are directory keys such as "client_001", not UUIDs.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "TENANT_ID_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return tenant_id


def get_orchestrator(request: Request) -> ExecutionOrchestrator:
    return request.app.state.orchestrator


def get_router(request: Request) -> ConnectionRouter:
    return request.app.state.router
