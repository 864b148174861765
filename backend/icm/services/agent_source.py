# backend/icm/services/agent_source.py
from __future__ import annotations

import random
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from icm.core.config import settings
from icm.schemas.execution import AgentRecord
from icm.schemas.scheme import Scheme

REGIONS = ("North", "South", "East", "West")
PRODUCT_LINES = ("Standard", "Premium", "Enterprise")
SALES_TYPES = ("New", "Renewal", "Upsell")


class AgentDataSource(Protocol):
    """Supplies the agent batch for one run of `scheme`."""

    async def load_agents(self, tenant_id: str, scheme: Scheme) -> list[AgentRecord]: ...


class SyntheticAgentSource:
    """
    Generated agents AGENT001..AGENTnnn with totalSales in [50000, 150000)
    and region / productLine / salesType attributes. Stands in for the
    transaction feed until one is wired up; pass `seed` for repeatable data.
    """

    def __init__(self, count: int = settings.SYNTHETIC_AGENT_COUNT, seed: Optional[int] = None) -> None:
        self.count = count
        self.seed = seed

    async def load_agents(self, tenant_id: str, scheme: Scheme) -> list[AgentRecord]:
        rng = random.Random(self.seed)
        return [
            AgentRecord(
                agent_id=f"AGENT{i:03d}",
                base_metric_value=Decimal(rng.randrange(50000, 150000)),
                attributes={
                    "region": rng.choice(REGIONS),
                    "productLine": rng.choice(PRODUCT_LINES),
                    "salesType": rng.choice(SALES_TYPES),
                },
            )
            for i in range(1, self.count + 1)
        ]


class StaticAgentSource:
    """A fixed batch, same for every tenant and scheme (imports, tests)."""

    def __init__(self, records: Iterable[AgentRecord | dict]) -> None:
        self.records = [r if isinstance(r, AgentRecord) else AgentRecord.model_validate(r) for r in records]

    async def load_agents(self, tenant_id: str, scheme: Scheme) -> list[AgentRecord]:
        return [r.model_copy(deep=True) for r in self.records]
