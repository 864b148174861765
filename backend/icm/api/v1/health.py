# backend/icm/api/v1/health.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from icm.api.deps.tenant import get_router
from icm.core.router import ConnectionRouter
from icm.db.session import get_db

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(db: AsyncSession = Depends(get_db)):
    """Liveness plus a round trip to the control-plane database."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "CONTROL_DB_UNAVAILABLE", "message": "Control-plane database is unreachable"},
        )
    return {"status": "ok", "service": "icm-engine"}


@router.get("/connections")
async def connection_status(connection_router: ConnectionRouter = Depends(get_router)):
    """Cached tenant connections (URIs masked)."""
    connections = connection_router.status()
    return {"count": len(connections), "connections": connections}
