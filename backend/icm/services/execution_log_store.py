# backend/icm/services/execution_log_store.py
"""
Append-only execution log storage.

One store wraps one log table: a tenant's own execution_logs table, or the
control-plane fallback table. Every read is filtered by tenant_id, including
reads from a tenant's own table.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import Table, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from icm.core.errors import PersistenceError
from icm.schemas.execution import ExecutionLog
from icm.services.run_ids import RunIdGenerator

logger = logging.getLogger(__name__)

# Extra work that must commit or roll back together with the log row
WriteHook = Callable[[AsyncConnection], Awaitable[None]]

RUN_ID_ATTEMPTS = 5


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def log_to_row(log: ExecutionLog) -> dict[str, Any]:
    doc = log.to_document()
    return {
        "run_id": log.run_id,
        "scheme_id": log.scheme_id,
        "tenant_id": log.tenant_id,
        "mode": log.mode,
        "state": log.state.value,
        "executed_at": log.executed_at,
        "summary": doc["summary"],
        "agents": doc["agents"],
        "post_processing_log": doc["postProcessingLog"],
        "error": doc["error"],
        "diagnostics": doc["diagnostics"],
    }


def row_to_log(row: Any) -> ExecutionLog:
    m = row._mapping
    return ExecutionLog.model_validate(
        {
            "runId": m["run_id"],
            "schemeId": m["scheme_id"],
            "tenantId": m["tenant_id"],
            "mode": m["mode"],
            "state": m["state"],
            "executedAt": _aware(m["executed_at"]),
            "summary": m["summary"] or {},
            "agents": m["agents"] or [],
            "postProcessingLog": m["post_processing_log"],
            "error": m["error"],
            "diagnostics": m["diagnostics"] or [],
        }
    )


class ExecutionLogStore:
    def __init__(self, engine: AsyncEngine, table: Table, run_ids: RunIdGenerator) -> None:
        self.engine = engine
        self.table = table
        self.run_ids = run_ids

    async def append(self, log: ExecutionLog, *, on_write: Optional[WriteHook] = None) -> str:
        """
        Insert `log` and return its run id.

        The insert and `on_write` share one transaction: if the hook raises,
        no log row is left behind. A run id already taken in this table is
        replaced by a fresh one. Database failures surface as PersistenceError;
        errors raised by the hook propagate unchanged.
        """
        run_id = log.run_id or self.run_ids.next_id()
        for _ in range(RUN_ID_ATTEMPTS):
            row = log_to_row(log.model_copy(update={"run_id": run_id}))
            try:
                async with self.engine.begin() as conn:
                    await conn.execute(insert(self.table).values(**row))
                    if on_write is not None:
                        await on_write(conn)
            except IntegrityError as exc:
                if not await self._run_id_taken(run_id):
                    raise PersistenceError(
                        f"Could not write execution log {run_id} to {self.table.name}",
                        run_id=run_id,
                        cause=str(exc.orig),
                    ) from exc
                logger.warning("Run id %s already exists in %s, generating a new one", run_id, self.table.name)
                run_id = self.run_ids.next_id()
                continue
            except (SQLAlchemyError, OSError) as exc:
                raise PersistenceError(
                    f"Could not write execution log {run_id} to {self.table.name}",
                    run_id=run_id,
                    cause=str(exc),
                ) from exc
            logger.info("Execution log %s written to %s (state=%s)", run_id, self.table.name, log.state.value)
            return run_id

        raise PersistenceError(f"Could not allocate a unique run id in {self.table.name}")

    async def _run_id_taken(self, run_id: str) -> bool:
        try:
            async with self.engine.connect() as conn:
                found = await conn.execute(select(self.table.c.id).where(self.table.c.run_id == run_id))
                return found.first() is not None
        except SQLAlchemyError:
            return False

    async def find_by_run_id(self, tenant_id: str, run_id: str) -> Optional[ExecutionLog]:
        stmt = select(self.table).where(
            self.table.c.tenant_id == tenant_id,
            self.table.c.run_id == run_id,
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return row_to_log(row) if row is not None else None

    async def list_by_scheme(
        self,
        tenant_id: str,
        scheme_id: Optional[str] = None,
        *,
        mode: Optional[str] = None,
    ) -> list[ExecutionLog]:
        """Logs for a tenant (optionally one scheme / one mode), newest first."""
        stmt = select(self.table).where(self.table.c.tenant_id == tenant_id)
        if scheme_id:
            stmt = stmt.where(self.table.c.scheme_id == scheme_id)
        if mode:
            stmt = stmt.where(self.table.c.mode == mode)
        stmt = stmt.order_by(self.table.c.executed_at.desc(), self.table.c.id.desc())

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [row_to_log(r) for r in rows]
