"""Rule performance feedback and conflict detection.

Each time a rule backs a persisted suggestion its ``match_count`` grows.
Confirming that suggestion counts a correct result for every rule listed in
``reasons.allMatches``; rejecting it, or confirming a different subcategory
for the row, counts an incorrect one. Counters are bumped with in-place
UPDATEs so concurrent reviews do not lose increments.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.config import settings
from reconciler.errors import NotFoundError
from reconciler.logger import get_logger, log_timing
from reconciler.models import CategorizationCandidate, CategorizationRule, StagingStatus, StagingTransaction
from reconciler.schemas.categorization import RuleConflict, RulePerformance
from reconciler.services.rules import RuleEvaluator, load_rules

logger = get_logger(__name__)


def rule_ids_of(candidate: CategorizationCandidate) -> list[str]:
    """Rules behind a candidate, in the order they matched."""
    rule_ids: list[str] = []
    for match in (candidate.reasons or {}).get("allMatches", []):
        rule_id = match.get("ruleId")
        if rule_id and rule_id not in rule_ids:
            rule_ids.append(rule_id)
    return rule_ids


async def _increment(db: AsyncSession, rule_ids: Iterable[str], *counters: str) -> int:
    ids = sorted(set(rule_ids))
    if not ids:
        return 0
    result = await db.execute(
        update(CategorizationRule)
        .where(CategorizationRule.id.in_(ids))
        .values({name: getattr(CategorizationRule, name) + 1 for name in counters})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def record_matches(db: AsyncSession, rule_ids: Iterable[str]) -> int:
    return await _increment(db, rule_ids, "match_count")


async def record_review(
    db: AsyncSession,
    *,
    correct: Iterable[CategorizationCandidate] = (),
    incorrect: Iterable[CategorizationCandidate] = (),
) -> None:
    """Credit the rules behind confirmed candidates and debit those behind rejected ones."""
    correct_ids = [rule_id for candidate in correct for rule_id in rule_ids_of(candidate)]
    incorrect_ids = [rule_id for candidate in incorrect for rule_id in rule_ids_of(candidate)]
    await _increment(db, correct_ids, "correct_count")
    await _increment(db, incorrect_ids, "incorrect_count")
    if correct_ids or incorrect_ids:
        logger.debug("Rule feedback recorded", correct=sorted(set(correct_ids)), incorrect=sorted(set(incorrect_ids)))


async def pending_candidates(db: AsyncSession, staging_id: int) -> list[CategorizationCandidate]:
    result = await db.execute(
        select(CategorizationCandidate)
        .where(CategorizationCandidate.staging_transaction_id == staging_id)
        .where(CategorizationCandidate.decision.is_(None))
        .order_by(CategorizationCandidate.id)
    )
    return list(result.scalars().all())


# =============================================================================
# Performance
# =============================================================================


def assess(
    rule: CategorizationRule,
    *,
    threshold: float | None = None,
    min_reviews: int | None = None,
) -> RulePerformance:
    threshold = settings.rule_low_precision_threshold if threshold is None else threshold
    min_reviews = settings.rule_min_reviews if min_reviews is None else min_reviews
    reviewed = rule.correct_count + rule.incorrect_count
    precision = rule.precision

    if precision is None or reviewed < min_reviews:
        status = "unreviewed"
        recommendation = f"Needs {min_reviews - reviewed} more reviewed suggestions before it can be judged"
    elif precision < threshold:
        status = "low_precision"
        recommendation = (
            f"{rule.incorrect_count} of {reviewed} suggestions were rejected; "
            "narrow its conditions, lower its priority or disable it"
        )
    else:
        status = "healthy"
        recommendation = "No action needed"

    return RulePerformance(
        rule_id=rule.id,
        rule_name=rule.name,
        subcategory_id=rule.subcategory_id,
        enabled=rule.enabled,
        match_count=rule.match_count,
        correct_count=rule.correct_count,
        incorrect_count=rule.incorrect_count,
        precision=round(precision, 4) if precision is not None else None,
        status=status,
        recommendation=recommendation,
    )


async def rule_performance(db: AsyncSession, rule_id: str) -> RulePerformance:
    rule = await db.get(CategorizationRule, rule_id, populate_existing=True)
    if rule is None:
        raise NotFoundError("Categorization rule", rule_id)
    return assess(rule)


async def low_precision_rules(
    db: AsyncSession,
    *,
    threshold: float | None = None,
    min_reviews: int | None = None,
) -> list[RulePerformance]:
    """Enabled rules with enough reviews whose precision is below `threshold`, worst first."""
    result = await db.execute(
        select(CategorizationRule)
        .where(CategorizationRule.enabled.is_(True))
        .order_by(CategorizationRule.id)
        .execution_options(populate_existing=True)
    )
    assessed = [assess(rule, threshold=threshold, min_reviews=min_reviews) for rule in result.scalars().all()]
    flagged = [item for item in assessed if item.status == "low_precision"]
    return sorted(flagged, key=lambda item: (item.precision, item.rule_id))


# =============================================================================
# Conflicts
# =============================================================================


async def find_rule_conflicts(db: AsyncSession, *, evaluator: RuleEvaluator | None = None) -> list[RuleConflict]:
    """Enabled rules that match the same open staging row but assign different subcategories.

    Each flagged rule lists the rules it disagrees with and the rows where it did.
    """
    evaluator = evaluator or RuleEvaluator()
    rules = await load_rules(db)
    result = await db.execute(
        select(StagingTransaction)
        .where(StagingTransaction.imported_transaction_id.is_(None))
        .where(StagingTransaction.status.not_in((StagingStatus.IMPORTED, StagingStatus.REJECTED)))
        .order_by(StagingTransaction.id)
    )
    rows = list(result.scalars().all())

    conflicts: dict[str, set[str]] = {}
    conflict_rows: dict[str, set[int]] = {}
    with log_timing("find_rule_conflicts", logger=logger, rules=len(rules), rows=len(rows)) as ctx:
        for row in rows:
            linked = None
            if row.linked_staging_id is not None:
                linked = await db.get(StagingTransaction, row.linked_staging_id)
            matched = [rule for rule in rules if (await evaluator.evaluate_rule(rule, row, linked)).matched]
            for rule in matched:
                rivals = {other.id for other in matched if other.subcategory_id != rule.subcategory_id}
                if rivals:
                    conflicts.setdefault(rule.id, set()).update(rivals)
                    conflict_rows.setdefault(rule.id, set()).add(row.id)
        ctx["conflicting_rules"] = len(conflicts)

    return [
        RuleConflict(
            rule_id=rule.id,
            rule_name=rule.name,
            subcategory_id=rule.subcategory_id,
            conflicts_with=sorted(conflicts[rule.id]),
            staging_ids=sorted(conflict_rows[rule.id]),
        )
        for rule in rules
        if rule.id in conflicts
    ]
