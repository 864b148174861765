# backend/icm/schemas/execution.py
from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, ConfigDict, Field

from icm.core.errors import IcmError
from icm.schemas.common import CamelModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(str, enum.Enum):
    INITIALIZED = "Initialized"
    INPUT_VALIDATED = "InputValidated"
    CONNECTED = "Connected"
    EVALUATED = "Evaluated"
    POST_PROCESSED = "PostProcessed"
    PERSISTED = "Persisted"
    COMPLETED = "Completed"
    FAILED = "Failed"


class AgentRecord(CamelModel):
    """One agent's transaction data for a run. Input only, never persisted as-is."""

    agent_id: str
    base_metric_value: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("baseMetricValue", "baseMetric", "base_metric_value", "totalSales"),
    )
    attributes: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("attributes", "attributeFields", "baseData"),
    )


class CriterionOutcome(CamelModel):
    rule: str
    passed: bool
    evidence: Dict[str, Any] = Field(default_factory=dict)


class ExclusionOutcome(CamelModel):
    rule: str
    applied: bool
    evidence: Dict[str, Any] = Field(default_factory=dict)


class AdjustmentOutcome(CamelModel):
    name: str
    before: Decimal
    after: Decimal


class CustomLogicOutcome(CamelModel):
    rule: str
    passed: bool
    notes: str = ""


class CreditShare(CamelModel):
    role: str
    amount: Decimal


class AgentResult(CamelModel):
    agent_id: str
    qualified: bool = False
    excluded: bool = False
    commission: Decimal = Decimal("0")
    total_base_metric: Decimal = Decimal("0")
    qualifying_criteria: List[CriterionOutcome] = Field(default_factory=list)
    exclusions: List[ExclusionOutcome] = Field(default_factory=list)
    adjustments: List[AdjustmentOutcome] = Field(default_factory=list)
    custom_logic: List[CustomLogicOutcome] = Field(default_factory=list)
    credit_criteria: List[CriterionOutcome] = Field(default_factory=list)
    credit_split: List[CreditShare] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class ExecutionSummary(CamelModel):
    total_agents: int = 0
    passed: int = 0
    failed: int = 0
    total_commission: Decimal = Decimal("0")


class PostProcessingLog(CamelModel):
    # plugins may attach their own keys (e.g. totalBonus)
    model_config = ConfigDict(extra="allow")

    status: str
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    plugin: Optional[str] = None


class ExecutionLog(CamelModel):
    """
    The audit record of one run. Built once by the orchestrator, optionally
    rewritten by a post-processor, then appended to the log store and never
    touched again.
    """

    run_id: Optional[str] = None
    scheme_id: Optional[str] = None
    tenant_id: Optional[str] = None
    mode: Optional[str] = None
    state: RunState = RunState.INITIALIZED
    summary: ExecutionSummary = Field(default_factory=ExecutionSummary)
    agents: List[AgentResult] = Field(default_factory=list)
    post_processing_log: Optional[PostProcessingLog] = None
    error: Optional[Dict[str, Any]] = None
    diagnostics: List[str] = Field(default_factory=list)
    executed_at: datetime = Field(default_factory=utcnow)


class ExecutionLogSummary(CamelModel):
    run_id: str
    scheme_id: Optional[str] = None
    mode: Optional[str] = None
    state: RunState
    executed_at: datetime
    summary: ExecutionSummary
    post_processing_log: Optional[PostProcessingLog] = None
    error: Optional[Dict[str, Any]] = None


class RunRequest(CamelModel):
    # left optional: missing values are a logged ValidationError, not a 422
    scheme_id: Optional[str] = None
    mode: Optional[str] = None


class RunOutcome(CamelModel):
    """What runExecution hands back: always carries the runId when a log exists."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: Optional[str] = None
    state: RunState
    summary: ExecutionSummary = Field(default_factory=ExecutionSummary)
    post_processing_status: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    exception: Optional[IcmError] = Field(default=None, exclude=True)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED


class ProductionRunDetail(CamelModel):
    execution_log: ExecutionLog
    scheme_info: Optional[Dict[str, Any]] = None


class RunResponse(CamelModel):
    run_id: Optional[str] = None
    state: RunState
    summary: ExecutionSummary
    post_processing_status: Optional[str] = None
