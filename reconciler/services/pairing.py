"""Transfer pairing between unpaired debit and credit staging rows."""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from datetime import timedelta
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.config import settings
from reconciler.errors import AlreadyDecidedError, NotFoundError, ValidationError
from reconciler.logger import get_logger, log_timing
from reconciler.models import (
    CandidateDecision,
    CategorizationCandidate,
    PairingCandidate,
    StagingStatus,
    StagingTransaction,
)
from reconciler.schemas.pairing import (
    PairingCandidateResponse,
    PairingConfirmResult,
    PairingReasons,
    PairingSuggestParams,
    PairingSuggestResult,
)
from reconciler.schemas.rules import RuleDefinition
from reconciler.services import lifecycle
from reconciler.services.accounts import load_account_graph, resolve_account_ids
from reconciler.services.matching_config import MatchingConfig, load_matching_config
from reconciler.services.rules import RuleEvaluator, load_rules
from reconciler.services.scoring import (
    AccountGraph,
    PairScore,
    account_relation,
    amount_score,
    date_score,
    description_score,
    keyword_bonus,
)

logger = get_logger(__name__)

_CLOSED_STATUSES = (StagingStatus.IMPORTED, StagingStatus.REJECTED)


async def load_unpaired_rows(db: AsyncSession) -> list[StagingTransaction]:
    result = await db.execute(
        select(StagingTransaction)
        .where(StagingTransaction.linked_staging_id.is_(None))
        .where(StagingTransaction.status.not_in(_CLOSED_STATUSES))
        .where(StagingTransaction.imported_transaction_id.is_(None))
        .order_by(StagingTransaction.transaction_date, StagingTransaction.id)
    )
    return list(result.scalars().all())


async def _rejected_pairs(db: AsyncSession) -> set[tuple[int, int]]:
    result = await db.execute(
        select(PairingCandidate.left_id, PairingCandidate.right_id).where(
            PairingCandidate.decision == CandidateDecision.REJECTED
        )
    )
    return {(left, right) for left, right in result.all()}


async def _pairing_rules(db: AsyncSession) -> list[RuleDefinition]:
    """Enabled rules that say something about the other leg."""
    return [rule for rule in await load_rules(db) if rule.conditions.has_linked_criterion()]


async def _match_pairing_rule(
    rules: list[RuleDefinition],
    evaluator: RuleEvaluator,
    left: StagingTransaction,
    right: StagingTransaction,
) -> RuleDefinition | None:
    for rule in rules:
        for subject, other in ((left, right), (right, left)):
            match = await evaluator.evaluate_rule(rule, subject, other)
            if match.matched:
                return rule
    return None


def _same_account(
    left: StagingTransaction,
    right: StagingTransaction,
    left_account: int | None,
    right_account: int | None,
) -> bool:
    if left_account is not None and left_account == right_account:
        return True
    return bool(left.account_number) and left.account_number == right.account_number


def score_components(
    left: StagingTransaction,
    right: StagingTransaction,
    *,
    config: MatchingConfig,
    graph: AccountGraph,
    left_account: int | None,
    right_account: int | None,
    tolerance_cents: int,
    window_days: int,
    rule_bonus: float = 0.0,
) -> PairScore:
    diff = abs(abs(left.amount) - abs(right.amount))
    days = abs((right.transaction_date - left.transaction_date).days)
    return PairScore(
        amount=amount_score(diff, tolerance_cents),
        date=date_score(days, window_days),
        description=description_score(left.description, right.description),
        account=account_relation(left_account, right_account, graph),
        keyword=keyword_bonus(left.description, right.description, config),
        rule=rule_bonus,
        amt_diff_cents=diff,
        days=days,
    )


def build_reasons(score: PairScore, rule: RuleDefinition | None = None, *, manual: bool = False) -> dict:
    reasons = PairingReasons(
        amount_score=round(score.amount, 4),
        date_score=score.date,
        desc_score=score.description,
        account_relation=score.account,
        keyword_bonus=round(score.keyword, 4),
        amt_diff_cents=score.amt_diff_cents,
        days=score.days,
        manual=manual or None,
    )
    if rule is not None:
        reasons = reasons.model_copy(
            update={
                "rule_bonus": score.rule,
                "rule_matched": True,
                "rule_id": rule.id,
                "rule_name": rule.name,
                "rule_subcategory": rule.subcategory_id,
                "rule_confidence": rule.confidence,
            }
        )
    return reasons.model_dump(by_alias=True, exclude_none=True)


async def clear_pending_for(db: AsyncSession, staging_ids: list[int]) -> int:
    if not staging_ids:
        return 0
    result = await db.execute(
        delete(PairingCandidate)
        .where(PairingCandidate.decision.is_(None))
        .where(lifecycle.touches(*staging_ids))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def suggest_pairings(
    db: AsyncSession,
    params: PairingSuggestParams | None = None,
    *,
    evaluator: RuleEvaluator | None = None,
    config: MatchingConfig | None = None,
) -> PairingSuggestResult:
    """Generate ranked transfer candidates for every unpaired debit row.

    Pending candidates of the eligible rows are replaced; decided candidates
    stay for audit and previously rejected pairs are not proposed again.
    """
    params = params or PairingSuggestParams()
    config = config or load_matching_config()
    evaluator = evaluator or RuleEvaluator()
    window = params.date_window_days if params.date_window_days is not None else config.date_window_days
    tolerance = (
        params.amount_tolerance_cents
        if params.amount_tolerance_cents is not None
        else config.amount_tolerance_cents
    )
    min_score = params.min_score if params.min_score is not None else config.pairing_min_score

    rows = await load_unpaired_rows(db)
    debits = [r for r in rows if r.is_debit]
    credits = sorted((r for r in rows if r.is_credit), key=lambda r: (r.transaction_date, r.id))
    credit_dates = [r.transaction_date for r in credits]

    await clear_pending_for(db, [r.id for r in rows])

    account_ids = await resolve_account_ids(db, rows)
    graph = await load_account_graph(db)
    rejected = await _rejected_pairs(db)
    rules = await _pairing_rules(db)

    created: list[PairingCandidate] = []
    with log_timing("suggest_pairings", logger=logger, debits=len(debits), credits=len(credits)) as ctx:
        for left in debits:
            lo = bisect_left(credit_dates, left.transaction_date - timedelta(days=window))
            hi = bisect_right(credit_dates, left.transaction_date + timedelta(days=window))
            scored: list[tuple[float, PairScore, StagingTransaction, RuleDefinition | None]] = []

            for right in credits[lo:hi]:
                if abs(abs(left.amount) - right.amount) > tolerance:
                    continue
                if (left.id, right.id) in rejected:
                    continue
                left_account, right_account = account_ids[left.id], account_ids[right.id]
                if _same_account(left, right, left_account, right_account):
                    continue
                if settings.pairing_require_account_relation and not graph.related(left_account, right_account):
                    continue

                rule = await _match_pairing_rule(rules, evaluator, left, right) if rules else None
                score = score_components(
                    left,
                    right,
                    config=config,
                    graph=graph,
                    left_account=left_account,
                    right_account=right_account,
                    tolerance_cents=tolerance,
                    window_days=window,
                    rule_bonus=config.rule_bonus if rule else 0.0,
                )
                total = score.composite(config)
                if total >= min_score:
                    scored.append((total, score, right, rule))

            scored.sort(key=lambda item: (-item[0], item[2].id))
            for rank, (total, score, right, rule) in enumerate(scored[: params.top_k]):
                candidate = PairingCandidate(
                    left_id=left.id,
                    right_id=right.id,
                    score=total,
                    reasons=build_reasons(score, rule),
                    preselected=rank == 0,
                    decision=None,
                    decided_at=None,
                )
                db.add(candidate)
                created.append(candidate)
        ctx["pairs_generated"] = len(created)

    await db.flush()
    return PairingSuggestResult(
        debits=len(debits),
        credits=len(credits),
        pairs_generated=len(created),
        candidates=[PairingCandidateResponse.model_validate(c) for c in created],
    )


async def _load_pair(
    db: AsyncSession, left_id: int, right_id: int
) -> tuple[StagingTransaction, StagingTransaction]:
    left = await db.get(StagingTransaction, left_id)
    if left is None:
        raise NotFoundError("Staging transaction", left_id)
    right = await db.get(StagingTransaction, right_id)
    if right is None:
        raise NotFoundError("Staging transaction", right_id)
    return left, right


async def _manual_candidate(
    db: AsyncSession, left: StagingTransaction, right: StagingTransaction
) -> PairingCandidate:
    config = load_matching_config()
    account_ids = await resolve_account_ids(db, [left, right])
    score = score_components(
        left,
        right,
        config=config,
        graph=await load_account_graph(db),
        left_account=account_ids[left.id],
        right_account=account_ids[right.id],
        tolerance_cents=config.amount_tolerance_cents,
        window_days=config.date_window_days,
    )
    candidate = PairingCandidate(
        left_id=left.id,
        right_id=right.id,
        score=score.composite(config),
        reasons=build_reasons(score, manual=True),
    )
    db.add(candidate)
    await db.flush()
    return candidate


async def confirm_pairing(db: AsyncSession, left_id: int, right_id: int) -> PairingConfirmResult:
    """Accept the pair, link both rows and reject every other pending pairing of either row."""
    left, right = await _load_pair(db, left_id, right_id)
    if not (left.is_debit and right.is_credit):
        raise ValidationError(f"Pair {left_id}/{right_id} must be a debit followed by a credit")
    for row in (left, right):
        if row.is_imported:
            raise ValidationError(f"Staging transaction {row.id} is already imported")
        row.check_transition(StagingStatus.APPROVED)

    candidate = await lifecycle.find_pairing_candidate(db, left_id, right_id)
    if candidate is None:
        candidate = await _manual_candidate(db, left, right)
    candidate, rejected = await lifecycle.accept_pairing(db, candidate.id)

    group_id = str(uuid4())
    for row, other in ((left, right), (right, left)):
        result = await db.execute(
            update(StagingTransaction)
            .where(StagingTransaction.id == row.id)
            .where(StagingTransaction.linked_staging_id.is_(None))
            .where(StagingTransaction.status != StagingStatus.IMPORTED)
            .values(
                linked_staging_id=other.id,
                transfer_group_id=group_id,
                categorized=True,
                status=StagingStatus.APPROVED,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise AlreadyDecidedError(f"Staging transaction {row.id} is already paired")
    # A transfer is its own category; per-row suggestions no longer apply.
    rejected_categorizations = await lifecycle.reject_pending(
        db,
        CategorizationCandidate,
        CategorizationCandidate.staging_transaction_id.in_((left_id, right_id)),
    )
    await db.refresh(left)
    await db.refresh(right)

    logger.info(
        "Pairing confirmed",
        left_id=left_id,
        right_id=right_id,
        candidate_id=candidate.id,
        transfer_group_id=group_id,
        rejected_siblings=rejected,
        rejected_categorizations=rejected_categorizations,
    )
    return PairingConfirmResult(
        candidate_id=candidate.id,
        left_id=left_id,
        right_id=right_id,
        transfer_group_id=group_id,
        rejected_siblings=rejected,
        rejected_categorizations=rejected_categorizations,
    )


async def reject_pairing(db: AsyncSession, left_id: int, right_id: int) -> PairingCandidate:
    """Reject one pairing candidate; both rows stay eligible for other pairings."""
    candidate = await lifecycle.find_pairing_candidate(db, left_id, right_id)
    if candidate is None:
        raise NotFoundError("Pairing candidate", f"{left_id}/{right_id}")
    return await lifecycle.reject_pairing(db, candidate.id)


async def list_pairing_candidates(
    db: AsyncSession,
    *,
    pending_only: bool = True,
    left_id: int | None = None,
) -> list[PairingCandidate]:
    stmt = select(PairingCandidate)
    if pending_only:
        stmt = stmt.where(PairingCandidate.decision.is_(None))
    if left_id is not None:
        stmt = stmt.where(PairingCandidate.left_id == left_id)
    stmt = stmt.order_by(PairingCandidate.left_id, PairingCandidate.score.desc(), PairingCandidate.id)
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def clear_pairing_candidates(db: AsyncSession) -> int:
    """Delete every pending pairing candidate. Decided ones are kept."""
    result = await db.execute(
        delete(PairingCandidate)
        .where(PairingCandidate.decision.is_(None))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0
