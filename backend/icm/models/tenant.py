# backend/icm/models/tenant.py

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from icm.db.base import Base
from icm.db.tenant_tables import JSONType


class Tenant(Base):
    """
    Control-plane directory row: where a tenant's datastore lives.

    Written by the administrative setup step, read by the ConnectionRouter.
    The execution engine never mutates these rows.
    """

    __tablename__ = "tenants"

    # External identifier, e.g. "client_001"
    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    datastore_uri: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    # logical collection/table names inside the tenant datastore
    # e.g. {"schemes": "client1_schemes", "execution_logs": "client1_execution_logs"}
    collections: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    setup_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
