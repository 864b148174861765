# tests/test_rule_evaluator.py
from __future__ import annotations

from decimal import Decimal

from icm.rules.evaluator import RuleEvaluator
from icm.schemas.execution import AgentRecord
from icm.schemas.scheme import CustomRule, RuleSet


def agent(total_sales, **attributes) -> AgentRecord:
    return AgentRecord(agent_id="AGENT001", base_metric_value=Decimal(str(total_sales)), attributes=attributes)


def rules(**groups) -> RuleSet:
    return RuleSet.model_validate(groups)


evaluator = RuleEvaluator()


def test_zero_qualifying_rules_qualifies_everyone():
    for sales in (0, 50000, 150000):
        result = evaluator.evaluate(rules(), agent(sales, region="North"))
        assert result.qualified is True
        assert result.qualifying_criteria == []


def test_qualifying_rules_are_anded():
    rule_set = rules(
        qualifying={
            "totalSales": {"operator": ">", "value": 80000},
            "region": {"operator": "=", "value": "North"},
        }
    )

    assert evaluator.evaluate(rule_set, agent(90000, region="North")).qualified is True
    assert evaluator.evaluate(rule_set, agent(90000, region="South")).qualified is False
    assert evaluator.evaluate(rule_set, agent(80000, region="North")).qualified is False


def test_list_form_and_shorthand_are_accepted():
    rule_set = rules(
        qualifying=[{"field": "productLine", "operator": "starts_with", "comparisonValue": "Prem"}],
        exclusions={"region": "East"},
    )

    assert evaluator.evaluate(rule_set, agent(1, productLine="Premium", region="West")).qualified is True
    assert evaluator.evaluate(rule_set, agent(1, productLine="Premium", region="East")).qualified is False


def test_any_exclusion_excludes_even_when_qualified():
    rule_set = rules(
        exclusion={
            "salesType": {"operator": "=", "value": "Renewal"},
            "region": {"operator": "=", "value": "Antarctica"},
        }
    )

    result = evaluator.evaluate(rule_set, agent(120000, salesType="Renewal", region="North"))

    assert result.excluded is True
    assert result.qualified is False
    applied = {e.rule: e.applied for e in result.exclusions}
    assert applied == {"salesType = Renewal": True, "region = Antarctica": False}


def test_evidence_records_compared_values():
    rule_set = rules(qualifying={"totalSales": {"operator": ">", "value": 80000, "name": "Sales above 80k"}})

    outcome = evaluator.evaluate(rule_set, agent(65000)).qualifying_criteria[0]

    assert outcome.rule == "Sales above 80k"
    assert outcome.passed is False
    assert outcome.evidence["field"] == "totalSales"
    assert outcome.evidence["operator"] == ">"
    assert outcome.evidence["expected"] == 80000
    assert outcome.evidence["actual"] == "65000"


def test_adjustments_transform_the_running_metric():
    rule_set = rules(
        adjustment=[
            {"field": "productLine", "value": "Premium", "action": "multiply", "amount": "1.5", "name": "Premium uplift"},
            {"field": "region", "value": "North", "action": "add", "amount": 1000, "name": "North bonus"},
            {"field": "region", "value": "North", "action": "cap", "amount": 100000, "name": "Cap"},
            {"field": "region", "value": "South", "action": "set", "amount": 0, "name": "Not applied"},
        ]
    )

    result = evaluator.evaluate(rule_set, agent(70000, productLine="Premium", region="North"))

    assert [(a.name, a.before, a.after) for a in result.adjustments] == [
        ("Premium uplift", Decimal("70000"), Decimal("105000")),
        ("North bonus", Decimal("105000"), Decimal("106000")),
        ("Cap", Decimal("106000"), Decimal("100000")),
    ]
    assert result.base_metric == Decimal("100000")


def test_adjustment_conditions_see_the_raw_record():
    # the second rule compares against totalSales, which adjustments do not rewrite
    rule_set = rules(
        adjustment=[
            {"field": "region", "value": "North", "action": "add", "amount": 50000},
            {"field": "totalSales", "operator": ">", "value": 100000, "action": "multiply", "amount": 2},
        ]
    )

    result = evaluator.evaluate(rule_set, agent(60000, region="North"))

    assert len(result.adjustments) == 1
    assert result.base_metric == Decimal("110000")


def test_operator_not_valid_for_type_is_a_per_rule_issue():
    rule_set = rules(
        qualifying={
            "region": {"operator": ">", "value": "North"},
            "isActive": {"operator": "contains", "value": True},
            "totalSales": {"operator": ">=", "value": 1},
        }
    )

    compiled = evaluator.compile(rule_set)
    assert len(compiled.issues) == 2
    assert "operator '>' is not valid for string fields" in compiled.issues[0]

    result = evaluator.evaluate(compiled, agent(5, region="North", isActive=True))
    passed = [c.passed for c in result.qualifying_criteria]
    assert passed == [False, False, True]
    assert "error" in result.qualifying_criteria[0].evidence
    assert result.qualified is False


def test_unknown_adjustment_action_is_reported():
    compiled = evaluator.compile(rules(adjustment=[{"field": "region", "value": "North", "action": "explode"}]))

    assert compiled.issues == ("adjustment rule 'region = North': unknown adjustment action 'explode'",)


def test_missing_field_fails_closed():
    rule_set = rules(qualifying={"tenureYears": {"operator": ">=", "value": 2}})

    outcome = evaluator.evaluate(rule_set, agent(100000)).qualifying_criteria[0]

    assert outcome.passed is False
    assert outcome.evidence["actual"] is None
    assert "missing" in outcome.evidence["error"]


def test_uncomparable_record_value_fails_closed():
    rule_set = rules(qualifying={"orders": {"operator": ">", "value": 10}})

    outcome = evaluator.evaluate(rule_set, agent(1, orders="lots")).qualifying_criteria[0]

    assert outcome.passed is False
    assert "not a number" in outcome.evidence["error"]


def test_custom_rules_gate_qualification():
    custom = [CustomRule(name="Big enterprise deal", criteria="orderValue > 10000 && customerSegment == 'Enterprise'")]
    compiled = evaluator.compile(rules(), custom)

    ok = evaluator.evaluate(compiled, agent(1, orderValue=20000, customerSegment="Enterprise"))
    assert ok.qualified is True
    assert ok.custom_logic[0].passed is True

    no = evaluator.evaluate(compiled, agent(1, orderValue=20000, customerSegment="SMB"))
    assert no.qualified is False
    assert no.custom_logic[0].passed is False


def test_malformed_custom_rule_fails_closed_without_blocking():
    custom = [
        CustomRule(name="Broken", criteria="orderValue >> 5"),
        CustomRule(name="Fine", criteria="true"),
    ]
    compiled = evaluator.compile(rules(), custom)

    assert compiled.issues == ()
    assert len(compiled.expression_errors) == 1
    assert compiled.expression_errors[0].startswith("custom rule 'Broken'")

    result = evaluator.evaluate(compiled, agent(1, orderValue=6))
    broken, fine = result.custom_logic
    assert broken.passed is False
    assert broken.notes.startswith("Invalid expression")
    assert fine.passed is True
    assert result.qualified is False


def test_custom_rule_runtime_error_is_recorded():
    compiled = evaluator.compile(rules(), [CustomRule(name="Ratio", criteria="orderValue / returns > 2")])

    outcome = evaluator.evaluate(compiled, agent(1, orderValue=10, returns=0)).custom_logic[0]

    assert outcome.passed is False
    assert "division by zero" in outcome.notes


def test_credit_rules_report_whether_split_applies():
    rule_set = rules(credit={"hasManager": {"operator": "=", "value": True}})

    assert evaluator.evaluate(rule_set, agent(1, hasManager=True)).credit_applies is True
    assert evaluator.evaluate(rule_set, agent(1, hasManager="no")).credit_applies is False
    assert evaluator.evaluate(rules(), agent(1)).credit_applies is True


def test_overlong_arithmetic_chain_is_an_expression_error():
    chain = " + ".join(["orderValue"] * 150) + " > 0"
    compiled = evaluator.compile(rules(), [CustomRule(name="Chain", criteria=chain)])

    assert len(compiled.expression_errors) == 1

    result = evaluator.evaluate(compiled, agent(1, orderValue=1))
    assert result.custom_logic[0].passed is False
    assert result.qualified is False


def test_nan_record_values_fail_closed():
    rule_set = rules(qualifying={"orderValue": {"operator": ">", "value": 10}})
    custom = [CustomRule(name="Big order", criteria="orderValue > 10")]
    compiled = evaluator.compile(rule_set, custom)

    result = evaluator.evaluate(compiled, agent(1, orderValue="NaN"))

    assert result.qualified is False
    assert result.qualifying_criteria[0].passed is False
    assert "finite" in result.qualifying_criteria[0].evidence["error"]
    assert result.custom_logic[0].passed is False
    assert "finite" in result.custom_logic[0].notes
