# backend/icm/core/router.py
"""
ConnectionRouter: one cached async engine per tenant datastore.

Tenants are looked up in the control-plane directory on every acquire; there
is no default datastore to fall back to. Opening is single-flight per tenant
(an asyncio.Lock per tenant id), so concurrent runs for one tenant share one
engine. Cached engines are pinged at most once per health-check interval and
dropped when the driver reports a disconnect or the directory row changes.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import event, text
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from icm.core.config import mask_datastore_url, normalize_datastore_url, settings
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
from icm.db.tenant_tables import TenantTables, build_tenant_tables, resolve_collections
from icm.schemas.execution import utcnow

logger = logging.getLogger(__name__)

_AUTH_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "invalidpassword",
    "invalidauthorization",
    "access denied",
    "permission denied",
)
_HOST_MARKERS = (
    "could not translate host",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo",
    "connection refused",
    "no route to host",
    "network is unreachable",
    "unable to open database file",
)
_URI_MARKERS = ("invalid dsn", "invalid connection option", "could not parse")


def classify_connection_error(exc: BaseException) -> str:
    """Map a driver/SQLAlchemy exception to a TenantConnectionError kind."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TIMEOUT
    if isinstance(exc, (ArgumentError, ValueError)):
        return MALFORMED_URI

    orig = getattr(exc, "orig", None) or exc
    message = f"{type(orig).__name__} {orig}".lower()
    if any(m in message for m in _AUTH_MARKERS):
        return AUTH_FAILURE
    if any(m in message for m in _HOST_MARKERS):
        return HOST_UNREACHABLE
    if any(m in message for m in _URI_MARKERS):
        return MALFORMED_URI
    if isinstance(orig, (socket.gaierror, ConnectionRefusedError)):
        return HOST_UNREACHABLE
    if isinstance(orig, (asyncio.TimeoutError, TimeoutError)):
        return TIMEOUT
    return UNKNOWN


@dataclass
class TenantConnection:
    tenant_id: str
    engine: AsyncEngine
    tables: TenantTables
    uri: str
    collections: dict[str, str]
    opened_at: datetime = field(default_factory=utcnow)
    last_checked: float = 0.0


class ConnectionRouter:
    def __init__(
        self,
        directory: TenantDirectory,
        *,
        connect_timeout: float = settings.TENANT_CONNECT_TIMEOUT_SECONDS,
        health_check_interval: float = settings.TENANT_HEALTH_CHECK_INTERVAL_SECONDS,
        pool_recycle: int = settings.TENANT_POOL_RECYCLE_SECONDS,
        auto_create_tables: bool = settings.TENANT_AUTO_CREATE_TABLES,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = directory
        self.connect_timeout = connect_timeout
        self.health_check_interval = health_check_interval
        self.pool_recycle = pool_recycle
        self.auto_create_tables = auto_create_tables
        self.engine_factory = engine_factory
        self.clock = clock

        self._handles: dict[str, TenantConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # engines dropped from the cache by a disconnect callback, disposed later
        self._retired: list[AsyncEngine] = []

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    # -----------------------------
    # Acquire / evict
    # -----------------------------

    async def acquire(self, tenant_id: str) -> TenantConnection:
        tenant_id = (tenant_id or "").strip()
        if not tenant_id:
            raise TenantNotConfiguredError("Tenant id is required")

        config = await self.directory.get_tenant_config(tenant_id)
        if not (config.datastore_uri or "").strip():
            raise TenantNotConfiguredError(f"Tenant {tenant_id} has no datastore configured", tenant_id=tenant_id)
        if not config.setup_complete:
            raise TenantSetupIncompleteError(f"Tenant {tenant_id} setup is not complete", tenant_id=tenant_id)

        uri = normalize_datastore_url(config.datastore_uri)
        collections = resolve_collections(config.collections)

        await self._drain_retired()
        async with self._lock_for(tenant_id):
            handle = self._handles.get(tenant_id)
            if handle is not None:
                if handle.uri != uri or handle.collections != collections:
                    logger.info("Datastore settings for tenant %s changed, reopening", tenant_id)
                    self._handles.pop(tenant_id, None)
                    await self._dispose(handle)
                elif await self._healthy(handle):
                    logger.debug("Reusing connection for tenant %s", tenant_id)
                    return handle
                else:
                    self._handles.pop(tenant_id, None)
                    await self._dispose(handle)

            handle = await self._open(tenant_id, uri, collections)
            self._handles[tenant_id] = handle
            return handle

    async def evict(self, tenant_id: str) -> bool:
        """Force-close and forget the cached connection. True if there was one."""
        async with self._lock_for(tenant_id):
            handle = self._handles.pop(tenant_id, None)
            if handle is None:
                return False
            await self._dispose(handle)
        logger.info("Evicted connection for tenant %s", tenant_id)
        return True

    release = evict

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await self._dispose(handle)
        await self._drain_retired()
        logger.info("Closed %s tenant connection(s)", len(handles))

    # -----------------------------
    # Reporting
    # -----------------------------

    def cached_tenants(self) -> list[str]:
        return sorted(self._handles)

    def status(self) -> list[dict[str, Any]]:
        now = self.clock()
        return [
            {
                "tenantId": h.tenant_id,
                "datastore": mask_datastore_url(h.uri),
                "connected": True,
                "openedAt": h.opened_at.isoformat(),
                "secondsSinceHealthCheck": round(now - h.last_checked, 3),
            }
            for h in sorted(self._handles.values(), key=lambda h: h.tenant_id)
        ]

    async def probe(self, uri: str) -> dict[str, Any]:
        """
        Try a datastore URI without caching anything.
        Returns {"ok": True} or {"ok": False, "kind": ..., "message": ...}.
        """
        normalized = normalize_datastore_url(uri)
        try:
            engine = self.engine_factory(normalized)
        except Exception as exc:
            return {"ok": False, "kind": classify_connection_error(exc), "message": str(exc)}
        try:
            await asyncio.wait_for(self._ping(engine), timeout=self.connect_timeout)
        except Exception as exc:
            kind = classify_connection_error(exc)
            logger.info("Probe of %s failed (%s)", mask_datastore_url(normalized), kind)
            return {"ok": False, "kind": kind, "message": str(exc) or kind}
        finally:
            await engine.dispose()
        return {"ok": True}

    # -----------------------------
    # Internals
    # -----------------------------

    async def _open(self, tenant_id: str, uri: str, collections: dict[str, str]) -> TenantConnection:
        masked = mask_datastore_url(uri)
        try:
            engine = self.engine_factory(uri, pool_pre_ping=True, pool_recycle=self.pool_recycle)
        except Exception as exc:
            raise TenantConnectionError(
                f"Datastore URI for tenant {tenant_id} is invalid",
                kind=classify_connection_error(exc),
                tenant_id=tenant_id,
            ) from exc

        tables = build_tenant_tables(collections)
        try:
            await asyncio.wait_for(self._prepare(engine, tables), timeout=self.connect_timeout)
        except asyncio.TimeoutError as exc:
            await engine.dispose()
            logger.error("Timed out connecting to %s for tenant %s", masked, tenant_id)
            raise TenantConnectionError(
                f"Timed out after {self.connect_timeout}s connecting to the datastore of tenant {tenant_id}",
                kind=TIMEOUT,
                tenant_id=tenant_id,
            ) from exc
        except Exception as exc:
            await engine.dispose()
            kind = classify_connection_error(exc)
            logger.error("Could not connect to %s for tenant %s (%s)", masked, tenant_id, kind)
            raise TenantConnectionError(
                f"Could not connect to the datastore of tenant {tenant_id}",
                kind=kind,
                tenant_id=tenant_id,
                cause=str(getattr(exc, "orig", None) or exc),
            ) from exc

        handle = TenantConnection(
            tenant_id=tenant_id,
            engine=engine,
            tables=tables,
            uri=uri,
            collections=collections,
            last_checked=self.clock(),
        )
        self._watch(handle)
        logger.info("Opened connection to %s for tenant %s", masked, tenant_id)
        return handle

    async def _prepare(self, engine: AsyncEngine, tables: TenantTables) -> None:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if self.auto_create_tables:
                await conn.run_sync(tables.metadata.create_all)

    async def _ping(self, engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def _healthy(self, handle: TenantConnection) -> bool:
        now = self.clock()
        if now - handle.last_checked < self.health_check_interval:
            return True
        try:
            await asyncio.wait_for(self._ping(handle.engine), timeout=self.connect_timeout)
        except Exception as exc:
            logger.warning(
                "Health check failed for tenant %s (%s), reconnecting",
                handle.tenant_id,
                classify_connection_error(exc),
            )
            return False
        handle.last_checked = now
        return True

    def _watch(self, handle: TenantConnection) -> None:
        def on_error(context) -> None:
            if not context.is_disconnect:
                return
            if self._handles.get(handle.tenant_id) is handle:
                logger.warning("Datastore of tenant %s disconnected, dropping cached connection", handle.tenant_id)
                del self._handles[handle.tenant_id]
                self._retired.append(handle.engine)

        event.listen(handle.engine.sync_engine, "handle_error", on_error)

    async def _dispose(self, handle: TenantConnection) -> None:
        try:
            await handle.engine.dispose()
        except Exception:
            logger.exception("Error disposing connection for tenant %s", handle.tenant_id)

    async def _drain_retired(self) -> None:
        retired, self._retired = self._retired, []
        for engine in retired:
            try:
                await engine.dispose()
            except Exception:
                logger.exception("Error disposing retired tenant engine")
