# backend/icm/db/tenant_tables.py
"""
Tables living inside a tenant's own datastore.

Tenants may name their collections (e.g. "client1_schemes"), so these are Core
tables built per tenant from the directory's collection map instead of
declarative classes with fixed __tablename__ values. Each tenant gets its own
MetaData; nothing here is shared between tenants.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite tenants, tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

DEFAULT_COLLECTIONS: dict[str, str] = {
    "schemes": "schemes",
    "execution_logs": "execution_logs",
}

# Accepted spellings of collection keys in tenant directory rows
_COLLECTION_ALIASES = {
    "schemes": "schemes",
    "execution_logs": "execution_logs",
    "executionlogs": "execution_logs",
    "executionLogs": "execution_logs",
}


def resolve_collections(collections: dict[str, str] | None) -> dict[str, str]:
    resolved = dict(DEFAULT_COLLECTIONS)
    for key, value in (collections or {}).items():
        canonical = _COLLECTION_ALIASES.get(key)
        if canonical and value:
            resolved[canonical] = str(value).strip()
    return resolved


def scheme_table(name: str, metadata: MetaData) -> Table:
    return Table(
        name,
        metadata,
        Column("scheme_id", String(64), primary_key=True),
        Column("name", String(200), nullable=False),
        Column("description", Text, nullable=False, default=""),
        Column("config_name", String(200), nullable=True),
        Column("effective_start", Date, nullable=True),
        Column("effective_end", Date, nullable=True),
        Column("status", String(20), nullable=False, default="Draft", index=True),
        Column("quota_amount", Numeric(14, 2), nullable=False, default=0),
        Column("revenue_base", Numeric(14, 2), nullable=False, default=0),
        Column("rules", JSONType, nullable=False, default=dict),
        Column("custom_rules", JSONType, nullable=False, default=list),
        Column("payout_structure", JSONType, nullable=False, default=dict),
        Column("post_processor", String(100), nullable=True),
        Column("version_of", String(64), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column(
            "updated_at",
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        ),
    )


def execution_log_table(name: str, metadata: MetaData) -> Table:
    """
    Append-only audit table. Rows are inserted once and never updated;
    run_id is unique per table.
    """
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("run_id", String(64), nullable=False, unique=True),
        Column("scheme_id", String(64), nullable=True),
        Column("tenant_id", String(100), nullable=True),
        Column("mode", String(20), nullable=True),
        Column("state", String(20), nullable=False),
        Column("executed_at", DateTime(timezone=True), nullable=False),
        Column("summary", JSONType, nullable=False, default=dict),
        Column("agents", JSONType, nullable=False, default=list),
        Column("post_processing_log", JSONType, nullable=True),
        Column("error", JSONType, nullable=True),
        Column("diagnostics", JSONType, nullable=False, default=list),
        Index(f"ix_{name}_tenant_scheme", "tenant_id", "scheme_id"),
        Index(f"ix_{name}_executed_at", "executed_at"),
    )


@dataclass(frozen=True)
class TenantTables:
    metadata: MetaData
    schemes: Table
    execution_logs: Table


def build_tenant_tables(collections: dict[str, str] | None = None) -> TenantTables:
    names = resolve_collections(collections)
    metadata = MetaData()
    return TenantTables(
        metadata=metadata,
        schemes=scheme_table(names["schemes"], metadata),
        execution_logs=execution_log_table(names["execution_logs"], metadata),
    )
