# tests/test_connection_router.py
from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine

from icm.core.directory import TenantDirectory
from icm.core.errors import (
    AUTH_FAILURE,
    HOST_UNREACHABLE,
    MALFORMED_URI,
    TIMEOUT,
    UNKNOWN,
    TenantConnectionError,
    TenantNotConfiguredError,
    TenantSetupIncompleteError,
)
from icm.core.router import ConnectionRouter, classify_connection_error
from icm.models.tenant import Tenant
from icm.services.scheme_repository import SchemeRepository


class CountingFactory:
    def __init__(self):
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append(url)
        return create_async_engine(url, **kwargs)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture()
def factory():
    return CountingFactory()


@pytest_asyncio.fixture()
async def make_router(sessionmaker, factory):
    routers = []

    def _make(**kwargs) -> ConnectionRouter:
        kwargs.setdefault("engine_factory", factory)
        r = ConnectionRouter(TenantDirectory(sessionmaker), **kwargs)
        routers.append(r)
        return r

    yield _make
    for r in routers:
        await r.close_all()


@pytest.mark.asyncio
async def test_acquire_opens_once_and_reuses(add_tenant, make_router, factory):
    await add_tenant("client_001")
    router = make_router()

    first = await router.acquire("client_001")
    second = await router.acquire("client_001")

    assert first is second
    assert len(factory.calls) == 1
    assert router.cached_tenants() == ["client_001"]

    # tables exist in the tenant datastore
    assert await SchemeRepository(first.engine, first.tables.schemes).list_schemes() == []
    await router.close_all()


@pytest.mark.asyncio
async def test_concurrent_acquire_is_single_flight(add_tenant, make_router, factory):
    await add_tenant("client_001")
    router = make_router()

    handles = await asyncio.gather(*(router.acquire("client_001") for _ in range(10)))

    assert len(factory.calls) == 1
    assert all(h is handles[0] for h in handles)
    await router.close_all()


@pytest.mark.asyncio
async def test_tenants_get_separate_datastores(add_tenant, make_router, make_scheme):
    await add_tenant("client_001")
    await add_tenant("client_002")
    router = make_router()

    a = await router.acquire("client_001")
    b = await router.acquire("client_002")
    assert a.engine is not b.engine

    await SchemeRepository(a.engine, a.tables.schemes).add_scheme(make_scheme())

    assert len(await SchemeRepository(a.engine, a.tables.schemes).list_schemes()) == 1
    assert await SchemeRepository(b.engine, b.tables.schemes).list_schemes() == []
    await router.close_all()


@pytest.mark.asyncio
async def test_custom_collection_names_are_used(add_tenant, make_router):
    await add_tenant(
        "client_001",
        collections={"schemes": "client1_schemes", "executionLogs": "client1_execution_logs"},
    )
    router = make_router()

    handle = await router.acquire("client_001")

    assert handle.tables.schemes.name == "client1_schemes"
    assert handle.tables.execution_logs.name == "client1_execution_logs"
    await router.close_all()


@pytest.mark.asyncio
async def test_setup_incomplete_fails_before_connecting(add_tenant, make_router, factory):
    await add_tenant("client_001", setup_complete=False)
    router = make_router()

    with pytest.raises(TenantSetupIncompleteError):
        await router.acquire("client_001")

    assert factory.calls == []
    assert router.cached_tenants() == []


@pytest.mark.asyncio
async def test_unknown_tenant_and_missing_uri_are_not_configured(add_tenant, make_router, factory):
    await add_tenant("client_002", datastore_uri="")
    router = make_router()

    with pytest.raises(TenantNotConfiguredError):
        await router.acquire("nobody")
    with pytest.raises(TenantNotConfiguredError):
        await router.acquire("client_002")
    with pytest.raises(TenantNotConfiguredError):
        await router.acquire("   ")

    assert factory.calls == []


@pytest.mark.asyncio
async def test_malformed_uri(add_tenant, make_router):
    await add_tenant("client_001", datastore_uri="definitely not a uri")
    router = make_router()

    with pytest.raises(TenantConnectionError) as exc_info:
        await router.acquire("client_001")

    assert exc_info.value.kind == MALFORMED_URI
    assert exc_info.value.retryable is True
    assert router.cached_tenants() == []


@pytest.mark.asyncio
async def test_unreachable_datastore(add_tenant, make_router, tmp_path):
    await add_tenant("client_001", datastore_uri=f"sqlite+aiosqlite:///{tmp_path}/no/such/dir/tenant.db")
    router = make_router()

    with pytest.raises(TenantConnectionError) as exc_info:
        await router.acquire("client_001")

    assert exc_info.value.kind == HOST_UNREACHABLE
    assert router.cached_tenants() == []


@pytest.mark.asyncio
async def test_connect_timeout(add_tenant, make_router, monkeypatch):
    await add_tenant("client_001")
    router = make_router(connect_timeout=0.05)

    async def hang(engine, tables):
        await asyncio.sleep(5)

    monkeypatch.setattr(router, "_prepare", hang)

    with pytest.raises(TenantConnectionError) as exc_info:
        await router.acquire("client_001")

    assert exc_info.value.kind == TIMEOUT


@pytest.mark.asyncio
async def test_evict_forces_a_new_connection(add_tenant, make_router, factory):
    await add_tenant("client_001")
    router = make_router()

    first = await router.acquire("client_001")
    assert await router.evict("client_001") is True
    assert await router.evict("client_001") is False
    assert router.cached_tenants() == []

    second = await router.acquire("client_001")

    assert second is not first
    assert len(factory.calls) == 2
    await router.close_all()


@pytest.mark.asyncio
async def test_failed_health_check_reconnects(add_tenant, make_router, factory, monkeypatch):
    await add_tenant("client_001")
    clock = FakeClock()
    router = make_router(clock=clock, health_check_interval=30)

    first = await router.acquire("client_001")

    # inside the interval: no ping at all
    async def broken_ping(engine):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))

    monkeypatch.setattr(router, "_ping", broken_ping)
    clock.now += 10
    assert await router.acquire("client_001") is first

    clock.now += 60
    second = await router.acquire("client_001")

    assert second is not first
    assert len(factory.calls) == 2
    await router.close_all()


@pytest.mark.asyncio
async def test_healthy_ping_keeps_the_handle(add_tenant, make_router, factory):
    await add_tenant("client_001")
    clock = FakeClock()
    router = make_router(clock=clock, health_check_interval=30)

    first = await router.acquire("client_001")
    clock.now += 60

    assert await router.acquire("client_001") is first
    assert first.last_checked == clock.now
    await router.close_all()


@pytest.mark.asyncio
async def test_disconnect_event_evicts_the_handle(add_tenant, make_router, factory):
    await add_tenant("client_001")
    router = make_router()

    first = await router.acquire("client_001")
    first.engine.sync_engine.dispatch.handle_error(SimpleNamespace(is_disconnect=True))

    assert router.cached_tenants() == []
    second = await router.acquire("client_001")
    assert second is not first
    await router.close_all()


@pytest.mark.asyncio
async def test_changed_directory_row_reopens(add_tenant, make_router, sessionmaker, factory):
    await add_tenant("client_001")
    router = make_router()
    first = await router.acquire("client_001")

    async with sessionmaker() as session:
        tenant = await session.get(Tenant, "client_001")
        tenant.collections = {"schemes": "renamed_schemes"}
        await session.commit()

    second = await router.acquire("client_001")

    assert second is not first
    assert second.tables.schemes.name == "renamed_schemes"
    await router.close_all()


@pytest.mark.asyncio
async def test_status_masks_credentials_and_close_all_clears(add_tenant, make_router):
    await add_tenant("client_001")
    router = make_router()
    await router.acquire("client_001")

    status = router.status()
    assert [s["tenantId"] for s in status] == ["client_001"]
    assert status[0]["connected"] is True

    await router.close_all()
    assert router.status() == []


@pytest.mark.asyncio
async def test_probe(make_router, tmp_path):
    router = make_router()

    assert await router.probe(f"sqlite+aiosqlite:///{tmp_path}/probe.db") == {"ok": True}

    bad = await router.probe("nonsense")
    assert bad["ok"] is False
    assert bad["kind"] == MALFORMED_URI
    assert router.cached_tenants() == []


@pytest.mark.parametrize(
    "message, kind",
    [
        ('password authentication failed for user "icm"', AUTH_FAILURE),
        ("could not translate host name \"db.internal\" to address", HOST_UNREACHABLE),
        ("[Errno 111] Connection refused", HOST_UNREACHABLE),
        ("invalid DSN: scheme is expected", MALFORMED_URI),
        ("something else entirely", UNKNOWN),
    ],
)
def test_classify_connection_error(message, kind):
    exc = OperationalError("connect", {}, Exception(message))
    assert classify_connection_error(exc) == kind


def test_classify_timeouts():
    assert classify_connection_error(asyncio.TimeoutError()) == TIMEOUT
