from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from icm.api.deps.tenant import get_orchestrator, get_router
from icm.db.session import get_db

# Ensure Base + models are registered before create_all
from icm.db.base import Base
import icm.models  # noqa: F401
from icm.models.control_execution_log import CONTROL_EXECUTION_LOGS
from icm.models.tenant import Tenant

from icm.core.directory import TenantDirectory
from icm.core.router import ConnectionRouter
from icm.schemas.scheme import Scheme
from icm.services.execution_log_store import ExecutionLogStore
from icm.services.orchestrator import ExecutionOrchestrator
from icm.services.run_ids import RunIdGenerator
from icm.services.scheme_repository import SchemeRepository


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


# ---------------------------------------------------------
# Control plane (tenant directory + fallback logs)
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def control_engine(tmp_path: Path):
    engine = create_async_engine(sqlite_url(tmp_path / "control.db"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def sessionmaker(control_engine):
    return async_sessionmaker(control_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
def add_tenant(sessionmaker, tmp_path: Path):
    """
    add_tenant("client_001") registers a tenant whose datastore is a fresh
    SQLite file under tmp_path. Returns the datastore URI.
    """

    async def _add(
        tenant_id: str,
        *,
        datastore_uri: Optional[str] = None,
        setup_complete: bool = True,
        collections: Optional[dict[str, str]] = None,
    ) -> Optional[str]:
        uri = datastore_uri if datastore_uri is not None else sqlite_url(tmp_path / f"{tenant_id}.db")
        async with sessionmaker() as session:
            session.add(
                Tenant(
                    tenant_id=tenant_id,
                    name=f"Tenant {tenant_id}",
                    datastore_uri=uri or None,
                    collections=collections or {},
                    setup_complete=setup_complete,
                )
            )
            await session.commit()
        return uri

    return _add


# ---------------------------------------------------------
# Engine components
# ---------------------------------------------------------
@pytest.fixture()
def run_ids() -> RunIdGenerator:
    return RunIdGenerator()


@pytest.fixture()
def fallback_store(control_engine, run_ids) -> ExecutionLogStore:
    return ExecutionLogStore(control_engine, CONTROL_EXECUTION_LOGS, run_ids)


@pytest_asyncio.fixture()
async def router(sessionmaker):
    r = ConnectionRouter(TenantDirectory(sessionmaker), connect_timeout=5.0)
    yield r
    await r.close_all()


@pytest_asyncio.fixture()
async def orchestrator(router, fallback_store, run_ids):
    o = ExecutionOrchestrator(
        router,
        fallback_store,
        run_ids=run_ids,
        batch_size=4,
        workers=2,
        log_write_retries=2,
        log_write_backoff=0,
    )
    yield o
    await o.aclose()


@pytest.fixture()
def make_scheme():
    """Scheme document builder; keyword overrides use camelCase document keys."""

    def _make(**overrides: Any) -> Scheme:
        doc: dict[str, Any] = {
            "schemeId": "SCH_001",
            "name": "Q3 Sales Incentive",
            "status": "Approved",
            "quotaAmount": "100000",
            "rules": {},
            "customRules": [],
            "payoutStructure": {
                "isPercentage": True,
                "tiers": [
                    {"from": 0, "to": 50, "rate": "0.02"},
                    {"from": 50, "to": None, "rate": "0.05"},
                ],
                "creditSplit": [],
            },
        }
        doc.update(overrides)
        return Scheme.model_validate(doc)

    return _make


@pytest.fixture()
def seed_scheme(router):
    async def _seed(tenant_id: str, scheme: Scheme) -> Scheme:
        handle = await router.acquire(tenant_id)
        return await SchemeRepository(handle.engine, handle.tables.schemes).add_scheme(scheme)

    return _seed


@pytest.fixture()
def scheme_status(router):
    async def _status(tenant_id: str, scheme_id: str) -> str:
        handle = await router.acquire(tenant_id)
        scheme = await SchemeRepository(handle.engine, handle.tables.schemes).get_scheme(scheme_id)
        return scheme.status.value

    return _status


# ---------------------------------------------------------
# FastAPI app + dependency overrides
# ---------------------------------------------------------
@pytest.fixture()
def app(sessionmaker, orchestrator, router):
    from icm.main import create_application

    fastapi_app = create_application()

    async def _override_get_db():
        async with sessionmaker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    fastapi_app.dependency_overrides[get_router] = lambda: router
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


# ---------------------------------------------------------
# HTTP client
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as ac:
        yield ac
