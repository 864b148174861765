# backend/icm/services/scheme_repository.py
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Table, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from icm.core.errors import ProductionRunConflictError, RuleConfigurationError, SchemeNotFoundError
from icm.schemas.scheme import Scheme, SchemeStatus

logger = logging.getLogger(__name__)


def row_to_scheme(row: Any) -> Scheme:
    m = row._mapping
    try:
        return Scheme.model_validate(
            {
                "schemeId": m["scheme_id"],
                "name": m["name"],
                "description": m["description"] or "",
                "configName": m["config_name"],
                "effectiveStart": m["effective_start"],
                "effectiveEnd": m["effective_end"],
                "status": m["status"],
                "quotaAmount": m["quota_amount"] or 0,
                "revenueBase": m["revenue_base"] or 0,
                "rules": m["rules"],
                "customRules": m["custom_rules"],
                "payoutStructure": m["payout_structure"],
                "postProcessor": m["post_processor"],
                "versionOf": m["version_of"],
            }
        )
    except PydanticValidationError as exc:
        issues = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        raise RuleConfigurationError(f"Scheme {m['scheme_id']} is malformed", issues=issues) from exc


def scheme_to_row(scheme: Scheme) -> dict[str, Any]:
    doc = scheme.to_document()
    return {
        "scheme_id": scheme.scheme_id,
        "name": scheme.name,
        "description": scheme.description,
        "config_name": scheme.config_name,
        "effective_start": scheme.effective_start,
        "effective_end": scheme.effective_end,
        "status": scheme.status.value,
        "quota_amount": scheme.quota_amount,
        "revenue_base": scheme.revenue_base,
        "rules": doc["rules"],
        "custom_rules": doc["customRules"],
        "payout_structure": doc["payoutStructure"],
        "post_processor": scheme.post_processor,
        "version_of": scheme.version_of,
    }


class SchemeRepository:
    """
    Schemes inside one tenant datastore. The engine only reads schemes and
    moves their status forward; creating them is the configuration surface's job
    (add_scheme exists for setup scripts and tests).
    """

    def __init__(self, engine: AsyncEngine, table: Table) -> None:
        self.engine = engine
        self.table = table

    async def get_scheme(self, scheme_id: str) -> Scheme:
        stmt = select(self.table).where(self.table.c.scheme_id == scheme_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        if row is None:
            raise SchemeNotFoundError(f"Scheme {scheme_id} not found", scheme_id=scheme_id)
        return row_to_scheme(row)

    async def list_schemes(self, *, exclude_draft: bool = False) -> list[Scheme]:
        stmt = select(self.table)
        if exclude_draft:
            stmt = stmt.where(self.table.c.status != SchemeStatus.DRAFT.value)
        stmt = stmt.order_by(self.table.c.created_at.desc(), self.table.c.scheme_id)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [row_to_scheme(r) for r in rows]

    async def add_scheme(self, scheme: Scheme) -> Scheme:
        async with self.engine.begin() as conn:
            await conn.execute(insert(self.table).values(**scheme_to_row(scheme)))
        logger.info("Scheme %s added to %s", scheme.scheme_id, self.table.name)
        return scheme

    async def update_status(self, scheme_id: str, status: SchemeStatus) -> None:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(self.table)
                .where(self.table.c.scheme_id == scheme_id)
                .values(status=status.value)
            )
        if result.rowcount == 0:
            raise SchemeNotFoundError(f"Scheme {scheme_id} not found", scheme_id=scheme_id)
        logger.info("Scheme %s status set to %s", scheme_id, status.value)

    async def mark_prod_run(self, conn: AsyncConnection, scheme_id: str) -> None:
        """
        Move a scheme to ProdRun inside the caller's transaction.

        Conditional on the scheme not being ProdRun already, so two production
        runs racing past the status check cannot both book the scheme.
        """
        result = await conn.execute(
            update(self.table)
            .where(
                self.table.c.scheme_id == scheme_id,
                self.table.c.status != SchemeStatus.PROD_RUN.value,
            )
            .values(status=SchemeStatus.PROD_RUN.value)
        )
        if result.rowcount == 0:
            raise ProductionRunConflictError(
                f"Scheme {scheme_id} already has a production run",
                scheme_id=scheme_id,
            )
