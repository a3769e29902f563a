"""Tests for the rule grammar and evaluator."""

import asyncio
from datetime import date

import pytest

from reconciler.errors import ValidationError
from reconciler.schemas.rules import (
    ComparisonOp,
    ConditionGroup,
    DateCriterion,
    RuleDefinition,
    parse_conditions,
)
from reconciler.services.rules import RuleEvaluator, load_rules
from tests.factories import CategorizationRuleFactory, StagingTransactionFactory, SubcategoryFactory


def _rule(conditions: dict, **overrides) -> RuleDefinition:
    values = {"id": "r1", "name": "Rule 1", "subcategory_id": 1, "confidence": 0.9, "conditions": conditions}
    values.update(overrides)
    return RuleDefinition.model_validate(values)


def _linked(levels: int) -> dict:
    group: dict = {"criteria": [{"type": "flow", "direction": "BOTH"}]}
    for _ in range(levels):
        group = {"criteria": [{"type": "linked", "conditions": group}]}
    return group


class RecordingScriptEvaluator:
    def __init__(self, result: bool = True, delay: float = 0.0, error: Exception | None = None):
        self.result = result
        self.delay = delay
        self.error = error
        self.calls: list[tuple] = []

    async def eval_script(self, code, transaction, linked_transaction):
        self.calls.append((code, transaction, linked_transaction))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


# =============================================================================
# Grammar validation
# =============================================================================


def test_unknown_criterion_type_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_conditions({"criteria": [{"type": "merchant", "values": ["x"]}]}, max_depth=5)


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_conditions({"criteria": [{"type": "flow", "direction": "IN", "extra": 1}]}, max_depth=5)


@pytest.mark.parametrize(
    "condition",
    [
        {"op": "BETWEEN", "value": 100},
        {"op": "BETWEEN", "value": 500, "value2": 100},
        {"op": "IN", "values": []},
        {"op": ">"},
    ],
)
def test_amount_condition_operands_are_checked(condition: dict) -> None:
    with pytest.raises(ValidationError):
        parse_conditions({"criteria": [{"type": "amount", "conditions": [condition]}]}, max_depth=5)


@pytest.mark.parametrize(("raw", "expected"), [("≥", ComparisonOp.GE), ("==", ComparisonOp.EQ), ("lt", ComparisonOp.LT)])
def test_operator_aliases_are_normalized(raw: str, expected: ComparisonOp) -> None:
    group = parse_conditions({"criteria": [{"type": "amount", "conditions": [{"op": raw, "value": 1}]}]}, max_depth=5)
    assert group.criteria[0].conditions[0].op == expected


def test_date_criterion_validates_derived_ranges() -> None:
    DateCriterion(field="DAY_OF_WEEK", op="=", value=6)
    with pytest.raises(ValueError):
        DateCriterion(field="DAY_OF_WEEK", op="=", value=7)
    with pytest.raises(ValueError):
        DateCriterion(field="DATE", op="=", value=5)


def test_blank_keywords_are_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_conditions({"criteria": [{"type": "keywords", "values": ["  "]}]}, max_depth=5)


def test_invalid_account_pattern_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_conditions({"criteria": [{"type": "account", "match": "PATTERN", "values": ["(unclosed"]}]}, max_depth=5)


def test_nesting_depth_is_bounded() -> None:
    assert parse_conditions(_linked(4), max_depth=5).depth() == 5
    with pytest.raises(ValidationError, match="max 5"):
        parse_conditions(_linked(5), max_depth=5)


def test_from_model_wraps_malformed_documents() -> None:
    rule = CategorizationRuleFactory.build(id="bad", subcategory_id=1, conditions={"criteria": [{"type": "bogus"}]})
    with pytest.raises(ValidationError, match="Rule bad is malformed"):
        RuleDefinition.from_model(rule, max_depth=5)


def test_from_model_rejects_out_of_range_confidence() -> None:
    rule = CategorizationRuleFactory.build(id="loud", subcategory_id=1, confidence=1.5)
    with pytest.raises(ValidationError):
        RuleDefinition.from_model(rule, max_depth=5)


# =============================================================================
# Evaluation
# =============================================================================


@pytest.mark.asyncio
async def test_woolworths_keyword_rule_matches() -> None:
    rule = _rule({"criteria": [{"type": "keywords", "values": ["woolworths"], "mode": "ANY"}]})
    row = StagingTransactionFactory.build(description="WOOLWORTHS 123", amount=-4550)

    result = await RuleEvaluator().evaluate_rule(rule, row)

    assert result.matched
    assert result.confidence == 0.9
    assert result.rule_id == "r1"


@pytest.mark.asyncio
async def test_keywords_all_mode_and_case_sensitivity() -> None:
    evaluator = RuleEvaluator()
    row = StagingTransactionFactory.build(description="Uber Eats Sydney")

    all_mode = parse_conditions(
        {"criteria": [{"type": "keywords", "values": ["uber", "eats"], "mode": "ALL"}]}, max_depth=5
    )
    case_sensitive = parse_conditions(
        {"criteria": [{"type": "keywords", "values": ["UBER"], "case_insensitive": False}]}, max_depth=5
    )
    missing = parse_conditions(
        {"criteria": [{"type": "keywords", "values": ["uber", "taxi"], "mode": "ALL"}]}, max_depth=5
    )

    assert await evaluator.evaluate_group(all_mode, row)
    assert not await evaluator.evaluate_group(case_sensitive, row)
    assert not await evaluator.evaluate_group(missing, row)


@pytest.mark.asyncio
async def test_amount_compares_magnitude_and_between_is_inclusive() -> None:
    evaluator = RuleEvaluator()
    group = parse_conditions(
        {"criteria": [{"type": "amount", "conditions": [{"op": "BETWEEN", "value": 1000, "value2": 4550}]}]},
        max_depth=5,
    )
    assert await evaluator.evaluate_group(group, StagingTransactionFactory.build(amount=-4550))
    assert await evaluator.evaluate_group(group, StagingTransactionFactory.build(amount=1000))
    assert not await evaluator.evaluate_group(group, StagingTransactionFactory.build(amount=-4551))


@pytest.mark.asyncio
async def test_amount_or_conditions() -> None:
    group = parse_conditions(
        {
            "criteria": [
                {
                    "type": "amount",
                    "operator": "OR",
                    "conditions": [{"op": "<", "value": 100}, {"op": "IN", "values": [5000, 9900]}],
                }
            ]
        },
        max_depth=5,
    )
    evaluator = RuleEvaluator()
    assert await evaluator.evaluate_group(group, StagingTransactionFactory.build(amount=-50))
    assert await evaluator.evaluate_group(group, StagingTransactionFactory.build(amount=-9900))
    assert not await evaluator.evaluate_group(group, StagingTransactionFactory.build(amount=-500))


@pytest.mark.asyncio
async def test_account_and_flow_criteria() -> None:
    evaluator = RuleEvaluator()
    pattern = parse_conditions(
        {"criteria": [{"type": "account", "match": "PATTERN", "values": [r"^062-\d{3}"]}, {"type": "flow", "direction": "OUT"}]},
        max_depth=5,
    )
    assert await evaluator.evaluate_group(pattern, StagingTransactionFactory.build(account_number="062-000 1", amount=-1))
    assert not await evaluator.evaluate_group(pattern, StagingTransactionFactory.build(account_number="062-000 1", amount=1))
    assert not await evaluator.evaluate_group(pattern, StagingTransactionFactory.build(account_number=None, amount=-1))

    exact = parse_conditions({"criteria": [{"type": "account", "values": ["A-1", "A-2"], "match": "IN"}]}, max_depth=5)
    assert await evaluator.evaluate_group(exact, StagingTransactionFactory.build(account_number="A-2"))


@pytest.mark.asyncio
async def test_date_criteria_use_posted_date_when_asked() -> None:
    evaluator = RuleEvaluator()
    row = StagingTransactionFactory.build(transaction_date=date(2024, 3, 29), posted_date=date(2024, 4, 1))

    month = parse_conditions({"criteria": [{"type": "date", "field": "MONTH", "op": "=", "value": 3}]}, max_depth=5)
    posted_quarter = parse_conditions(
        {"criteria": [{"type": "date", "field": "QUARTER", "source": "POSTED", "op": "=", "value": 2}]}, max_depth=5
    )
    weekday = parse_conditions(
        {"criteria": [{"type": "date", "field": "DAY_OF_WEEK", "op": "IN", "values": [4, 5, 6]}]}, max_depth=5
    )
    window = parse_conditions(
        {"criteria": [{"type": "date", "op": "BETWEEN", "value": "2024-03-01", "value2": "2024-03-31"}]},
        max_depth=5,
    )

    assert await evaluator.evaluate_group(month, row)
    assert await evaluator.evaluate_group(posted_quarter, row)
    assert await evaluator.evaluate_group(weekday, row)  # 2024-03-29 is a Friday
    assert await evaluator.evaluate_group(window, row)


@pytest.mark.asyncio
async def test_posted_source_falls_back_to_transaction_date() -> None:
    group = parse_conditions(
        {"criteria": [{"type": "date", "field": "DAY_OF_MONTH", "source": "POSTED", "op": "=", "value": 29}]},
        max_depth=5,
    )
    row = StagingTransactionFactory.build(transaction_date=date(2024, 3, 29), posted_date=None)
    assert await RuleEvaluator().evaluate_group(group, row)


@pytest.mark.asyncio
async def test_empty_group_is_true_under_and_false_under_or() -> None:
    evaluator = RuleEvaluator()
    row = StagingTransactionFactory.build()
    assert await evaluator.evaluate_group(ConditionGroup(operator="AND"), row)
    assert not await evaluator.evaluate_group(ConditionGroup(operator="OR"), row)


@pytest.mark.asyncio
async def test_or_group_short_circuits() -> None:
    scripts = RecordingScriptEvaluator()
    group = parse_conditions(
        {"operator": "OR", "criteria": [{"type": "flow", "direction": "BOTH"}, {"type": "script", "code": "x"}]},
        max_depth=5,
    )
    assert await RuleEvaluator(script_evaluator=scripts).evaluate_group(group, StagingTransactionFactory.build())
    assert scripts.calls == []


@pytest.mark.asyncio
async def test_required_link_absent_fails_the_criterion() -> None:
    required = parse_conditions(
        {"criteria": [{"type": "linked", "conditions": {"criteria": [{"type": "flow", "direction": "IN"}]}}]},
        max_depth=5,
    )
    optional = parse_conditions(
        {
            "criteria": [
                {"type": "linked", "required": False, "conditions": {"criteria": [{"type": "flow", "direction": "IN"}]}}
            ]
        },
        max_depth=5,
    )
    either = parse_conditions(
        {
            "operator": "OR",
            "criteria": [
                {"type": "linked", "conditions": {"criteria": [{"type": "flow", "direction": "IN"}]}},
                {"type": "keywords", "values": ["rent"]},
            ],
        },
        max_depth=5,
    )
    row = StagingTransactionFactory.build(description="RENT MARCH", amount=-150000)
    evaluator = RuleEvaluator()

    assert not await evaluator.evaluate_group(required, row)
    assert await evaluator.evaluate_group(optional, row)
    assert await evaluator.evaluate_group(either, row)


@pytest.mark.asyncio
async def test_linked_group_evaluates_the_other_leg() -> None:
    group = parse_conditions(
        {
            "criteria": [
                {"type": "flow", "direction": "OUT"},
                {
                    "type": "linked",
                    "conditions": {
                        "criteria": [
                            {"type": "flow", "direction": "IN"},
                            {"type": "keywords", "values": ["from everyday"]},
                        ]
                    },
                },
            ]
        },
        max_depth=5,
    )
    debit = StagingTransactionFactory.build(description="TRANSFER TO SAVINGS", amount=-10000)
    credit = StagingTransactionFactory.build(description="TRANSFER FROM EVERYDAY", amount=10000)
    evaluator = RuleEvaluator()

    assert await evaluator.evaluate_group(group, debit, credit)
    assert not await evaluator.evaluate_group(group, credit, debit)


@pytest.mark.asyncio
async def test_runtime_depth_guard() -> None:
    group = parse_conditions(_linked(1), max_depth=5)
    row = StagingTransactionFactory.build()
    other = StagingTransactionFactory.build()

    with pytest.raises(ValidationError):
        await RuleEvaluator(max_depth=1).evaluate_group(group, row, other)


@pytest.mark.asyncio
async def test_script_criterion_delegates_to_collaborator() -> None:
    scripts = RecordingScriptEvaluator(result=True)
    group = parse_conditions({"criteria": [{"type": "script", "code": "amount < -100"}]}, max_depth=5)
    row = StagingTransactionFactory.build()
    other = StagingTransactionFactory.build()

    assert await RuleEvaluator(script_evaluator=scripts).evaluate_group(group, row, other)
    assert scripts.calls == [("amount < -100", row, other)]


@pytest.mark.asyncio
async def test_script_failures_evaluate_false() -> None:
    group = parse_conditions({"criteria": [{"type": "script", "code": "true"}]}, max_depth=5)
    row = StagingTransactionFactory.build()

    assert not await RuleEvaluator().evaluate_group(group, row)
    assert not await RuleEvaluator(
        script_evaluator=RecordingScriptEvaluator(delay=1.0), script_timeout=0.01
    ).evaluate_group(group, row)
    assert not await RuleEvaluator(
        script_evaluator=RecordingScriptEvaluator(error=RuntimeError("sandbox crashed"))
    ).evaluate_group(group, row)


@pytest.mark.asyncio
async def test_disabled_rule_never_matches() -> None:
    rule = _rule({"criteria": []}, enabled=False)
    result = await RuleEvaluator().evaluate_rule(rule, StagingTransactionFactory.build())
    assert not result.matched
    assert result.confidence == 0.0


# =============================================================================
# Loading
# =============================================================================


@pytest.mark.asyncio
async def test_load_rules_orders_by_priority_then_id(db) -> None:
    subcategory = await SubcategoryFactory.create_async(db)
    await CategorizationRuleFactory.create_async(db, id="b", priority=5, subcategory_id=subcategory.id)
    await CategorizationRuleFactory.create_async(db, id="a", priority=5, subcategory_id=subcategory.id)
    await CategorizationRuleFactory.create_async(db, id="c", priority=9, subcategory_id=subcategory.id)
    await CategorizationRuleFactory.create_async(db, id="d", priority=99, enabled=False, subcategory_id=subcategory.id)

    rules = await load_rules(db)

    assert [rule.id for rule in rules] == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_load_rules_rejects_malformed_rule(db) -> None:
    subcategory = await SubcategoryFactory.create_async(db)
    await CategorizationRuleFactory.create_async(
        db, id="broken", subcategory_id=subcategory.id, conditions={"criteria": [{"type": "amount", "conditions": []}]}
    )
    with pytest.raises(ValidationError):
        await load_rules(db)
