# backend/icm/rules/evaluator.py
"""
RuleEvaluator: turns a scheme's rule set into compiled nodes once, then
evaluates one AgentRecord at a time.

Compilation never raises for a bad rule. A rule that cannot be compiled is
kept with its diagnostic and fails closed at evaluation time; the diagnostics
are also collected on the compiled set so a production run can refuse to start.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence, Union

from icm.core.errors import RuleExpressionError
from icm.rules.expression import (
    Comparison,
    FieldRef,
    Literal,
    Node,
    evaluate_condition,
    parse_expression,
)
from icm.rules.operators import (
    OPERATORS_BY_TYPE,
    canonical_operator,
    coerce,
    infer_data_type,
)
from icm.schemas.execution import (
    AdjustmentOutcome,
    AgentRecord,
    CriterionOutcome,
    CustomLogicOutcome,
    ExclusionOutcome,
)
from icm.schemas.scheme import AdjustmentRule, CustomRule, DataType, FieldRule, RuleSet

ADJUSTMENT_ACTIONS = frozenset({"multiply", "add", "subtract", "cap", "floor", "set"})

# Record fields that address the base metric rather than an attribute
BASE_METRIC_FIELDS = frozenset(
    {"baseMetricValue", "baseMetric", "base_metric_value", "base_metric", "totalSales"}
)

_MISSING = object()


@dataclass(frozen=True)
class CompiledRule:
    label: str
    field: str
    operator: str
    expected: Any
    data_type: Optional[DataType]
    condition: Optional[Comparison]
    error: Optional[str] = None


@dataclass(frozen=True)
class CompiledAdjustment:
    rule: CompiledRule
    action: str
    amount: Decimal


@dataclass(frozen=True)
class CompiledCustomRule:
    name: str
    criteria: str
    expression: Optional[Node]
    error: Optional[str] = None


@dataclass(frozen=True)
class CompiledRuleSet:
    qualifying: tuple[CompiledRule, ...] = ()
    exclusion: tuple[CompiledRule, ...] = ()
    adjustment: tuple[CompiledAdjustment, ...] = ()
    credit: tuple[CompiledRule, ...] = ()
    custom: tuple[CompiledCustomRule, ...] = ()
    # operator/type/action problems: these block production runs
    issues: tuple[str, ...] = ()
    # custom expressions that did not parse: the rule fails closed, nothing else
    expression_errors: tuple[str, ...] = ()


@dataclass
class RuleEvaluationResult:
    qualified: bool
    excluded: bool
    base_metric: Decimal
    credit_applies: bool
    qualifying_criteria: list[CriterionOutcome] = field(default_factory=list)
    exclusions: list[ExclusionOutcome] = field(default_factory=list)
    adjustments: list[AdjustmentOutcome] = field(default_factory=list)
    custom_logic: list[CustomLogicOutcome] = field(default_factory=list)
    credit_criteria: list[CriterionOutcome] = field(default_factory=list)


def lookup_field(record: AgentRecord, path: str) -> Any:
    """Attribute value for a (dotted) field path; _MISSING when absent."""
    if path in record.attributes:
        return record.attributes[path]
    if path in BASE_METRIC_FIELDS:
        return record.base_metric_value
    current: Any = record.attributes
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


class RuleEvaluator:
    # -----------------------------
    # Compile (scheme load time)
    # -----------------------------

    def compile(self, rule_set: RuleSet, custom_rules: Iterable[CustomRule] = ()) -> CompiledRuleSet:
        issues: list[str] = []

        def compile_group(kind: str, rules: Sequence[FieldRule]) -> tuple[CompiledRule, ...]:
            compiled = []
            for rule in rules:
                c = self._compile_field_rule(rule)
                if c.error:
                    issues.append(f"{kind} rule '{c.label}': {c.error}")
                compiled.append(c)
            return tuple(compiled)

        qualifying = compile_group("qualifying", rule_set.qualifying)
        exclusion = compile_group("exclusion", rule_set.exclusion)
        credit = compile_group("credit", rule_set.credit)

        adjustments = []
        for rule in rule_set.adjustment:
            adjustment = self._compile_adjustment(rule)
            if adjustment.rule.error:
                issues.append(f"adjustment rule '{adjustment.rule.label}': {adjustment.rule.error}")
            adjustments.append(adjustment)

        custom = []
        expression_errors = []
        for rule in custom_rules:
            try:
                custom.append(CompiledCustomRule(rule.name, rule.criteria, parse_expression(rule.criteria)))
            except RuleExpressionError as exc:
                message = _describe(exc)
                custom.append(CompiledCustomRule(rule.name, rule.criteria, None, message))
                expression_errors.append(f"custom rule '{rule.name}': {message}")

        return CompiledRuleSet(
            qualifying=qualifying,
            exclusion=exclusion,
            adjustment=tuple(adjustments),
            credit=credit,
            custom=tuple(custom),
            issues=tuple(issues),
            expression_errors=tuple(expression_errors),
        )

    def _compile_field_rule(self, rule: FieldRule) -> CompiledRule:
        operator = canonical_operator(rule.operator)
        data_type = rule.data_type or infer_data_type(rule.value)
        base = dict(label=rule.label, field=rule.field, operator=operator, expected=rule.value, data_type=data_type)

        if not rule.field:
            return CompiledRule(**base, condition=None, error="field is required")
        if operator not in OPERATORS_BY_TYPE[data_type]:
            allowed = ", ".join(sorted(OPERATORS_BY_TYPE[data_type]))
            return CompiledRule(
                **base,
                condition=None,
                error=f"operator '{operator}' is not valid for {data_type.value} fields (allowed: {allowed})",
            )
        try:
            expected = coerce(rule.value, data_type)
        except RuleExpressionError as exc:
            return CompiledRule(**base, condition=None, error=f"comparison value: {exc.message}")

        condition = Comparison(operator, FieldRef(rule.field), Literal(expected), data_type)
        return CompiledRule(**base, condition=condition)

    def _compile_adjustment(self, rule: AdjustmentRule) -> CompiledAdjustment:
        compiled = self._compile_field_rule(rule)
        action = (rule.action or "").strip().lower()
        amount = Decimal("0")
        error = compiled.error
        if error is None and action not in ADJUSTMENT_ACTIONS:
            error = f"unknown adjustment action '{rule.action}'"
        if error is None:
            try:
                amount = coerce(rule.amount, DataType.NUMBER)
            except RuleExpressionError as exc:
                error = f"adjustment amount: {exc.message}"
        if error is not None and compiled.error is None:
            compiled = CompiledRule(
                label=compiled.label,
                field=compiled.field,
                operator=compiled.operator,
                expected=compiled.expected,
                data_type=compiled.data_type,
                condition=None,
                error=error,
            )
        return CompiledAdjustment(rule=compiled, action=action, amount=amount)

    # -----------------------------
    # Evaluate (per agent)
    # -----------------------------

    def evaluate(self, rules: Union[CompiledRuleSet, RuleSet], record: AgentRecord) -> RuleEvaluationResult:
        compiled = rules if isinstance(rules, CompiledRuleSet) else self.compile(rules)

        qualifying = [self._criterion(rule, record) for rule in compiled.qualifying]

        exclusions = []
        for rule in compiled.exclusion:
            outcome = self._criterion(rule, record)
            exclusions.append(ExclusionOutcome(rule=outcome.rule, applied=outcome.passed, evidence=outcome.evidence))

        custom_logic = [self._custom(rule, record) for rule in compiled.custom]

        base_metric = record.base_metric_value
        adjustments = []
        for adjustment in compiled.adjustment:
            outcome = self._criterion(adjustment.rule, record)
            if not outcome.passed:
                continue
            before = base_metric
            base_metric = _apply_adjustment(adjustment.action, base_metric, adjustment.amount)
            adjustments.append(AdjustmentOutcome(name=adjustment.rule.label, before=before, after=base_metric))

        credit_criteria = [self._criterion(rule, record) for rule in compiled.credit]

        excluded = any(e.applied for e in exclusions)
        qualified = (
            all(c.passed for c in qualifying)
            and all(c.passed for c in custom_logic)
            and not excluded
        )

        return RuleEvaluationResult(
            qualified=qualified,
            excluded=excluded,
            base_metric=base_metric,
            credit_applies=all(c.passed for c in credit_criteria),
            qualifying_criteria=qualifying,
            exclusions=exclusions,
            adjustments=adjustments,
            custom_logic=custom_logic,
            credit_criteria=credit_criteria,
        )

    def _criterion(self, rule: CompiledRule, record: AgentRecord) -> CriterionOutcome:
        actual = lookup_field(record, rule.field) if rule.field else _MISSING
        evidence: dict[str, Any] = {
            "field": rule.field,
            "operator": rule.operator,
            "expected": _jsonable(rule.expected),
            "actual": None if actual is _MISSING else _jsonable(actual),
        }
        if rule.error or rule.condition is None:
            evidence["error"] = rule.error or "rule could not be compiled"
            return CriterionOutcome(rule=rule.label, passed=False, evidence=evidence)
        if actual is _MISSING:
            evidence["error"] = f"field '{rule.field}' is missing"
            return CriterionOutcome(rule=rule.label, passed=False, evidence=evidence)
        try:
            passed = evaluate_condition(rule.condition, _resolver(record))
        except RuleExpressionError as exc:
            evidence["error"] = _describe(exc)
            return CriterionOutcome(rule=rule.label, passed=False, evidence=evidence)
        return CriterionOutcome(rule=rule.label, passed=passed, evidence=evidence)

    def _custom(self, rule: CompiledCustomRule, record: AgentRecord) -> CustomLogicOutcome:
        if rule.expression is None:
            return CustomLogicOutcome(rule=rule.name, passed=False, notes=f"Invalid expression: {rule.error}")
        try:
            passed = evaluate_condition(rule.expression, _resolver(record))
        except RuleExpressionError as exc:
            return CustomLogicOutcome(rule=rule.name, passed=False, notes=f"Evaluation failed: {_describe(exc)}")
        return CustomLogicOutcome(
            rule=rule.name,
            passed=passed,
            notes=f"{rule.criteria} => {'true' if passed else 'false'}",
        )


def _resolver(record: AgentRecord):
    def resolve(path: str) -> Any:
        value = lookup_field(record, path)
        if value is _MISSING:
            raise RuleExpressionError(f"unknown field '{path}'")
        return value

    return resolve


def _apply_adjustment(action: str, value: Decimal, amount: Decimal) -> Decimal:
    if action == "multiply":
        return value * amount
    if action == "add":
        return value + amount
    if action == "subtract":
        return value - amount
    if action == "cap":
        return min(value, amount)
    if action == "floor":
        return max(value, amount)
    if action == "set":
        return amount
    raise RuleExpressionError(f"unknown adjustment action '{action}'")


def _describe(exc: RuleExpressionError) -> str:
    if exc.position is None:
        return exc.message
    return f"{exc.message} (at position {exc.position})"


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)
