# backend/icm/schemas/scheme.py
from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import AliasChoices, ConfigDict, Field, field_validator

from icm.schemas.common import CamelModel


class SchemeStatus(str, enum.Enum):
    DRAFT = "Draft"
    APPROVED = "Approved"
    SIMULATED = "Simulated"
    PROD_RUN = "ProdRun"


class RunMode(str, enum.Enum):
    SIMULATION = "simulation"
    PRODUCTION = "production"


class DataType(str, enum.Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


_UNBOUNDED = {"inf", "+inf", "infinity", "+infinity", "∞", ""}


def _rules_as_list(value: Any) -> Any:
    """
    Rule groups arrive either as {field: {operator, value}} (scheme documents)
    or as [{field, operator, value}] (rule builder exports).
    """
    if value is None:
        return []
    if isinstance(value, dict):
        items = []
        for field, condition in value.items():
            if isinstance(condition, dict):
                items.append({"field": field, **condition})
            else:
                # shorthand: {"region": "North"}
                items.append({"field": field, "operator": "=", "value": condition})
        return items
    return value


class FieldRule(CamelModel):
    field: str
    operator: str = "="
    value: Any = Field(default=None, validation_alias=AliasChoices("value", "comparisonValue", "comparison_value"))
    data_type: Optional[DataType] = None
    name: Optional[str] = None

    @field_validator("data_type", mode="before")
    @classmethod
    def normalize_data_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, v: Any) -> Any:
        return str(v).strip().lower() if v is not None else "="

    @property
    def label(self) -> str:
        return self.name or f"{self.field} {self.operator} {self.value}"


class AdjustmentRule(FieldRule):
    # multiply | add | subtract | cap | floor | set; checked at compile time
    action: str = "multiply"
    amount: Any = 1


class RuleSet(CamelModel):
    qualifying: List[FieldRule] = Field(default_factory=list)
    exclusion: List[FieldRule] = Field(
        default_factory=list,
        validation_alias=AliasChoices("exclusion", "exclusions"),
    )
    adjustment: List[AdjustmentRule] = Field(
        default_factory=list,
        validation_alias=AliasChoices("adjustment", "adjustments"),
    )
    credit: List[FieldRule] = Field(default_factory=list)

    @field_validator("qualifying", "exclusion", "adjustment", "credit", mode="before")
    @classmethod
    def accept_mapping_form(cls, v: Any) -> Any:
        return _rules_as_list(v)


class CustomRule(CamelModel):
    name: str
    criteria: str = Field(validation_alias=AliasChoices("criteria", "criteriaExpression", "expression"))


class PayoutTier(CamelModel):
    from_value: Decimal = Field(
        validation_alias=AliasChoices("from", "fromValue", "from_value"),
        serialization_alias="from",
    )
    to_value: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("to", "toValue", "to_value"),
        serialization_alias="to",
    )
    rate: Decimal

    @field_validator("to_value", mode="before")
    @classmethod
    def unbounded_to(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, str) and v.strip().lower() in _UNBOUNDED:
            return None
        if isinstance(v, (float, Decimal)) and v in (float("inf"), Decimal("Infinity")):
            return None
        return v


class CreditSplitEntry(CamelModel):
    role: str
    percentage: Decimal


class PayoutStructure(CamelModel):
    is_percentage: bool = Field(
        default=True,
        validation_alias=AliasChoices("isPercentage", "isPercentageRate", "is_percentage"),
    )
    # metric: tiers bound the base metric; attainment: tiers bound % of quota
    tier_basis: str = "metric"
    tiers: List[PayoutTier] = Field(default_factory=list)
    credit_split: List[CreditSplitEntry] = Field(default_factory=list)


class Scheme(CamelModel):
    """
    Incentive scheme definition as handed to the engine. Read-only input:
    the engine never edits a scheme, it only moves its status forward.
    """

    model_config = ConfigDict(frozen=True)

    scheme_id: str
    name: str
    description: str = ""
    config_name: Optional[str] = None
    effective_start: Optional[date] = None
    effective_end: Optional[date] = None
    status: SchemeStatus = SchemeStatus.DRAFT
    quota_amount: Decimal = Decimal("0")
    revenue_base: Decimal = Decimal("0")
    rules: RuleSet = Field(default_factory=RuleSet)
    custom_rules: List[CustomRule] = Field(default_factory=list)
    payout_structure: PayoutStructure = Field(default_factory=PayoutStructure)
    post_processor: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("postProcessor", "postProcessorRef", "post_processor"),
    )
    version_of: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().replace("_", "").lower()
            for status in SchemeStatus:
                if status.value.lower() == key:
                    return status
        return v

    @field_validator("rules", "payout_structure", mode="before")
    @classmethod
    def empty_is_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("custom_rules", mode="before")
    @classmethod
    def empty_custom_rules(cls, v: Any) -> Any:
        return [] if v is None else v
