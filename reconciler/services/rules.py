"""Rule evaluation over staging transactions.

Groups fold their criteria left to right and short-circuit. An empty group is
vacuously true under AND and false under OR.
"""

from __future__ import annotations

import operator
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.config import settings
from reconciler.errors import CollaboratorTimeoutError, NoLinkError, ValidationError
from reconciler.logger import get_logger
from reconciler.models import CategorizationRule, StagingTransaction
from reconciler.schemas.rules import (
    AccountCriterion,
    AmountCriterion,
    ComparisonOp,
    ConditionGroup,
    DateCriterion,
    DateField,
    FlowCriterion,
    KeywordsCriterion,
    LinkedCriterion,
    LogicalOperator,
    RuleDefinition,
    ScriptCriterion,
)
from reconciler.services.collaborators import ScriptEvaluator, call_collaborator

logger = get_logger(__name__)

_COMPARATORS: dict[ComparisonOp, Callable[[Any, Any], bool]] = {
    ComparisonOp.EQ: operator.eq,
    ComparisonOp.NE: operator.ne,
    ComparisonOp.LT: operator.lt,
    ComparisonOp.GT: operator.gt,
    ComparisonOp.LE: operator.le,
    ComparisonOp.GE: operator.ge,
}


@dataclass(frozen=True)
class RuleMatch:
    """Outcome of evaluating one rule against one transaction."""

    matched: bool
    confidence: float
    rule_id: str


def compare(
    op: ComparisonOp,
    actual: Any,
    value: Any = None,
    value2: Any = None,
    values: list[Any] | None = None,
) -> bool:
    """Apply a grammar comparison. BETWEEN is inclusive on both ends."""
    if op == ComparisonOp.BETWEEN:
        return value <= actual <= value2
    if op == ComparisonOp.IN:
        return actual in (values or [])
    return _COMPARATORS[op](actual, value)


def extract_date_field(value: date, field: DateField) -> date | int:
    if field == DateField.DATE:
        return value
    if field == DateField.DAY_OF_MONTH:
        return value.day
    if field == DateField.DAY_OF_WEEK:
        return value.weekday()
    if field == DateField.MONTH:
        return value.month
    return (value.month - 1) // 3 + 1


def match_keywords(criterion: KeywordsCriterion, description: str | None) -> bool:
    haystack = description or ""
    needles = criterion.values
    if criterion.case_insensitive:
        haystack = haystack.casefold()
        needles = [needle.casefold() for needle in needles]
    if criterion.mode == "ALL":
        return all(needle in haystack for needle in needles)
    return any(needle in haystack for needle in needles)


def match_amount(criterion: AmountCriterion, amount: int) -> bool:
    magnitude = abs(amount)
    results = (
        compare(cond.op, magnitude, cond.value, cond.value2, cond.values) for cond in criterion.conditions
    )
    if criterion.operator == LogicalOperator.OR:
        return any(results)
    return all(results)


def match_account(criterion: AccountCriterion, account_number: str | None) -> bool:
    if not account_number:
        return False
    if criterion.match == "PATTERN":
        return any(pattern.search(account_number) for pattern in criterion.patterns)
    return account_number in criterion.values


def match_flow(criterion: FlowCriterion, amount: int) -> bool:
    if criterion.direction == "IN":
        return amount > 0
    if criterion.direction == "OUT":
        return amount < 0
    return True


def match_date(criterion: DateCriterion, transaction: StagingTransaction) -> bool:
    source = transaction.transaction_date
    if criterion.source == "POSTED" and transaction.posted_date is not None:
        source = transaction.posted_date
    actual = extract_date_field(source, criterion.field)
    return compare(criterion.op, actual, criterion.value, criterion.value2, criterion.values)


class RuleEvaluator:
    """Evaluates validated rules; the script collaborator is optional."""

    def __init__(
        self,
        *,
        script_evaluator: ScriptEvaluator | None = None,
        max_depth: int | None = None,
        script_timeout: float | None = None,
    ):
        self.script_evaluator = script_evaluator
        self.max_depth = max_depth if max_depth is not None else settings.max_rule_depth
        self.script_timeout = script_timeout if script_timeout is not None else settings.script_timeout_seconds

    async def evaluate_rule(
        self,
        rule: RuleDefinition,
        transaction: StagingTransaction,
        linked_transaction: StagingTransaction | None = None,
    ) -> RuleMatch:
        if not rule.enabled:
            return RuleMatch(matched=False, confidence=0.0, rule_id=rule.id)
        matched = await self.evaluate_group(rule.conditions, transaction, linked_transaction)
        return RuleMatch(matched=matched, confidence=rule.confidence if matched else 0.0, rule_id=rule.id)

    async def evaluate_group(
        self,
        group: ConditionGroup,
        transaction: StagingTransaction,
        linked_transaction: StagingTransaction | None = None,
        depth: int = 1,
    ) -> bool:
        if depth > self.max_depth:
            raise ValidationError(f"Condition nesting exceeds max depth {self.max_depth}")

        if group.operator == LogicalOperator.OR:
            for criterion in group.criteria:
                if await self._evaluate_criterion(criterion, transaction, linked_transaction, depth):
                    return True
            return False

        for criterion in group.criteria:
            if not await self._evaluate_criterion(criterion, transaction, linked_transaction, depth):
                return False
        return True

    async def _evaluate_criterion(
        self,
        criterion: Any,
        transaction: StagingTransaction,
        linked_transaction: StagingTransaction | None,
        depth: int,
    ) -> bool:
        if isinstance(criterion, KeywordsCriterion):
            return match_keywords(criterion, transaction.description)
        if isinstance(criterion, AmountCriterion):
            return match_amount(criterion, transaction.amount)
        if isinstance(criterion, AccountCriterion):
            return match_account(criterion, transaction.account_number)
        if isinstance(criterion, FlowCriterion):
            return match_flow(criterion, transaction.amount)
        if isinstance(criterion, DateCriterion):
            return match_date(criterion, transaction)
        if isinstance(criterion, LinkedCriterion):
            try:
                return await self._evaluate_linked(criterion, transaction, linked_transaction, depth)
            except NoLinkError:
                logger.debug("Required link absent", staging_id=transaction.id)
                return False
        if isinstance(criterion, ScriptCriterion):
            return await self._evaluate_script(criterion, transaction, linked_transaction)
        raise ValidationError(f"Unsupported criterion: {type(criterion).__name__}")

    async def _evaluate_linked(
        self,
        criterion: LinkedCriterion,
        transaction: StagingTransaction,
        linked_transaction: StagingTransaction | None,
        depth: int,
    ) -> bool:
        if linked_transaction is None:
            if criterion.required:
                raise NoLinkError(f"Staging transaction {transaction.id} has no linked transaction")
            return True
        # Inside the nested group the linked row is the subject.
        return await self.evaluate_group(criterion.conditions, linked_transaction, transaction, depth + 1)

    async def _evaluate_script(
        self,
        criterion: ScriptCriterion,
        transaction: StagingTransaction,
        linked_transaction: StagingTransaction | None,
    ) -> bool:
        if self.script_evaluator is None:
            logger.warning("Script criterion without a script evaluator", staging_id=transaction.id)
            return False
        try:
            result = await call_collaborator(
                "script_evaluator",
                self.script_evaluator.eval_script(criterion.code, transaction, linked_transaction),
                timeout=self.script_timeout,
            )
        except CollaboratorTimeoutError as exc:
            logger.warning("Script predicate timed out", staging_id=transaction.id, timeout=exc.timeout)
            return False
        except Exception as exc:
            logger.warning(
                "Script predicate failed",
                staging_id=transaction.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        return bool(result)


async def load_rules(db: AsyncSession, *, max_depth: int | None = None) -> list[RuleDefinition]:
    """Load enabled rules in evaluation order: priority desc, then id.

    Raises ValidationError on the first malformed rule.
    """
    depth = max_depth if max_depth is not None else settings.max_rule_depth
    result = await db.execute(
        select(CategorizationRule)
        .where(CategorizationRule.enabled.is_(True))
        .order_by(CategorizationRule.priority.desc(), CategorizationRule.id.asc())
    )
    return [RuleDefinition.from_model(rule, max_depth=depth) for rule in result.scalars().all()]
