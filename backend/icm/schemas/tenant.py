from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class TenantConfig(BaseModel):
    tenant_id: str
    name: Optional[str] = None
    datastore_uri: Optional[str] = None
    collections: Dict[str, str] = Field(default_factory=dict)
    setup_complete: bool = False

    model_config = {"from_attributes": True}
