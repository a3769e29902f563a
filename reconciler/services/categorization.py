"""Categorization suggestions and decisions.

Pipeline per staging row:

1. Auto-accept merchant map (fast path, one candidate at confidence 1.0)
2. Rules in descending priority, merged per subcategory
3. Similar ledger history (weak evidence; candidates only when no rule matched)
4. Tie-breaker collaborator for near-ties
5. min_confidence filter, top_k, preselect the first
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.config import settings
from reconciler.errors import CollaboratorTimeoutError, NotFoundError, ReconcilerError, ValidationError
from reconciler.logger import get_logger, log_exception
from reconciler.models import (
    CandidateDecision,
    CategorizationCandidate,
    StagingStatus,
    StagingTransaction,
    Subcategory,
)
from reconciler.models.base import utcnow
from reconciler.schemas.base import RowFailure
from reconciler.schemas.categorization import (
    AutoAcceptRunResult,
    CategorizationParams,
    CategorizationProgress,
    CategorizationReasons,
    CategorizationSuggestResult,
    SimilarTransaction,
    TieCandidate,
)
from reconciler.schemas.rules import RuleDefinition
from reconciler.services import lifecycle, rule_feedback
from reconciler.services.auto_accept import AutoAcceptEntry, AutoAcceptMap, get_auto_accept_map
from reconciler.services.collaborators import SimilarityRetriever, TieBreaker, call_collaborator
from reconciler.services.matching_config import load_matching_config
from reconciler.services.rules import RuleEvaluator, load_rules
from reconciler.services.similarity import LedgerSimilarityRetriever

logger = get_logger(__name__)

AUTO_ACCEPT_TAG = "AUTO_ACCEPT"
SIMILAR_TAG = "SIMILAR"
MANUAL_TAG = "MANUAL"
TIE_BREAKER_TAG = "+TIE_BREAKER"


@dataclass
class Suggestion:
    """One subcategory proposal before it is persisted."""

    subcategory_id: int
    subcategory_name: str
    confidence: float
    source: str
    priority: int = 0
    rule_names: list[str] = field(default_factory=list)
    all_matches: list[dict] = field(default_factory=list)
    merchant_keyword: str | None = None
    tag: str | None = None
    tie_breaker_winner: bool = False
    tie_breaker_reasoning: str | None = None

    @property
    def rule_tags(self) -> str:
        tags = self.tag or ",".join(self.rule_names)
        if self.tie_breaker_winner:
            tags += TIE_BREAKER_TAG
        return tags

    def rank_key(self) -> tuple:
        return (not self.tie_breaker_winner, -self.confidence, -self.priority, self.subcategory_id)


def merge_rule_matches(
    matched: list[RuleDefinition], subcategory_names: dict[int, str]
) -> list[Suggestion]:
    """Fold matching rules (already in priority order) into one suggestion per subcategory."""
    merged: dict[int, Suggestion] = {}
    for rule in matched:
        suggestion = merged.get(rule.subcategory_id)
        if suggestion is None:
            suggestion = Suggestion(
                subcategory_id=rule.subcategory_id,
                subcategory_name=subcategory_names.get(rule.subcategory_id, str(rule.subcategory_id)),
                confidence=rule.confidence,
                source="rule",
                priority=rule.priority,
            )
            merged[rule.subcategory_id] = suggestion
        suggestion.confidence = max(suggestion.confidence, rule.confidence)
        suggestion.priority = max(suggestion.priority, rule.priority)
        if rule.name not in suggestion.rule_names:
            suggestion.rule_names.append(rule.name)
        suggestion.all_matches.append(
            {"ruleId": rule.id, "ruleName": rule.name, "confidence": rule.confidence, "priority": rule.priority}
        )
    return list(merged.values())


def similarity_suggestions(similar: list[SimilarTransaction], cap: float) -> list[Suggestion]:
    """Weak suggestions from history: confidence = cap x share of similar rows."""
    if not similar:
        return []
    counts: dict[int, int] = {}
    names: dict[int, str] = {}
    for item in similar:
        counts[item.subcategory_id] = counts.get(item.subcategory_id, 0) + 1
        names[item.subcategory_id] = item.subcategory_name or str(item.subcategory_id)
    return [
        Suggestion(
            subcategory_id=subcategory_id,
            subcategory_name=names[subcategory_id],
            confidence=round(cap * count / len(similar), 4),
            source="similarity",
            tag=SIMILAR_TAG,
        )
        for subcategory_id, count in counts.items()
    ]


class CategorizationMatcher:
    """Runs the suggestion pipeline inside one session."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        rules: list[RuleDefinition],
        evaluator: RuleEvaluator | None = None,
        auto_accept_map: AutoAcceptMap | None = None,
        similarity_retriever: SimilarityRetriever | None = None,
        tie_breaker: TieBreaker | None = None,
    ):
        self.db = db
        self.rules = rules
        self.evaluator = evaluator or RuleEvaluator()
        self.auto_accept_map = auto_accept_map or get_auto_accept_map()
        if similarity_retriever is None and settings.similarity_enabled:
            similarity_retriever = LedgerSimilarityRetriever(db)
        self.similarity_retriever = similarity_retriever
        self.tie_breaker = tie_breaker
        self._subcategories: list[Subcategory] | None = None

    async def _load_subcategories(self) -> list[Subcategory]:
        if self._subcategories is None:
            result = await self.db.execute(select(Subcategory))
            self._subcategories = list(result.scalars().all())
        return self._subcategories

    async def subcategory_names(self) -> dict[int, str]:
        return {s.id: s.name for s in await self._load_subcategories()}

    async def subcategory_by_name(self, name: str) -> Subcategory | None:
        folded = name.casefold()
        for subcategory in await self._load_subcategories():
            if subcategory.name.casefold() == folded and subcategory.is_active:
                return subcategory
        return None

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    async def auto_accept(self, row: StagingTransaction) -> Suggestion | None:
        entry = self.auto_accept_map.lookup(row.description)
        if entry is None:
            return None
        subcategory = await self.subcategory_by_name(entry.subcategory)
        if subcategory is None:
            logger.warning(
                "Auto-accept mapping points at unknown subcategory",
                merchant=entry.merchant,
                subcategory=entry.subcategory,
            )
            return None
        return Suggestion(
            subcategory_id=subcategory.id,
            subcategory_name=subcategory.name,
            confidence=1.0,
            source="auto_accept",
            merchant_keyword=entry.merchant,
            tag=AUTO_ACCEPT_TAG,
        )

    async def match_rules(self, row: StagingTransaction) -> list[Suggestion]:
        linked = None
        if row.linked_staging_id is not None:
            linked = await self.db.get(StagingTransaction, row.linked_staging_id)
        matched = []
        for rule in self.rules:
            result = await self.evaluator.evaluate_rule(rule, row, linked)
            if result.matched:
                matched.append(rule)
        return merge_rule_matches(matched, await self.subcategory_names())

    async def find_similar(self, row: StagingTransaction) -> list[SimilarTransaction]:
        if self.similarity_retriever is None:
            return []
        try:
            return await call_collaborator(
                "similarity_retriever",
                self.similarity_retriever.find_similar(row, limit=settings.similarity_limit),
                timeout=settings.similarity_timeout_seconds,
            )
        except CollaboratorTimeoutError as exc:
            logger.warning("Similarity retrieval timed out", staging_id=row.id, timeout=exc.timeout)
        except Exception as exc:
            log_exception(logger, exc, "Similarity retrieval failed", level="warning", staging_id=row.id)
        return []

    async def break_tie(self, row: StagingTransaction, suggestions: list[Suggestion]) -> None:
        """Mark the tie-breaker's pick among near-tied top suggestions, if any."""
        ordered = sorted(suggestions, key=Suggestion.rank_key)
        if len(ordered) < 2:
            return
        top = ordered[0].confidence
        tied = [s for s in ordered if top - s.confidence <= settings.tie_epsilon]
        if len(tied) < 2:
            return
        if self.tie_breaker is None:
            logger.debug("Near-tie resolved by rank order", staging_id=row.id, tied=len(tied))
            return

        candidates = [
            TieCandidate(
                subcategory_id=s.subcategory_id,
                subcategory_name=s.subcategory_name,
                confidence=s.confidence,
                priority=s.priority,
                rule_names=s.rule_names,
            )
            for s in tied
        ]
        try:
            result = await call_collaborator(
                "tie_breaker",
                self.tie_breaker.break_tie(row, candidates),
                timeout=settings.tie_breaker_timeout_seconds,
            )
        except CollaboratorTimeoutError as exc:
            logger.warning("Tie-breaker timed out, using rank order", staging_id=row.id, timeout=exc.timeout)
            return
        except Exception as exc:
            log_exception(logger, exc, "Tie-breaker failed, using rank order", level="warning", staging_id=row.id)
            return

        winner = next((s for s in tied if s.subcategory_id == result.subcategory_id), None)
        if winner is None:
            logger.warning(
                "Tie-breaker picked a subcategory outside the tie, using rank order",
                staging_id=row.id,
                picked=result.subcategory_id,
            )
            return
        winner.tie_breaker_winner = True
        winner.tie_breaker_reasoning = result.reasoning

    async def suggest(
        self, row: StagingTransaction, params: CategorizationParams
    ) -> tuple[list[Suggestion], list[SimilarTransaction]]:
        """Ranked suggestions for one row plus the similar history consulted.

        An empty suggestion list means the row needs manual categorization.
        """
        auto = await self.auto_accept(row)
        if auto is not None:
            return [auto], []

        suggestions = await self.match_rules(row)
        similar = await self.find_similar(row)
        if not suggestions:
            suggestions = similarity_suggestions(similar, settings.similarity_confidence_cap)

        await self.break_tie(row, suggestions)

        min_confidence = (
            params.min_confidence
            if params.min_confidence is not None
            else load_matching_config().categorization_min_confidence
        )
        ranked = sorted(
            (s for s in suggestions if s.confidence >= min_confidence),
            key=Suggestion.rank_key,
        )[: params.top_k]
        return ranked, similar

    async def suggest_for_transaction(
        self, row: StagingTransaction, params: CategorizationParams | None = None
    ) -> list[CategorizationCandidate]:
        """Replace the row's pending candidates with a fresh ranked set."""
        params = params or CategorizationParams()
        if row.is_imported:
            raise ValidationError(f"Staging transaction {row.id} is already imported")

        suggestions, similar = await self.suggest(row, params)

        await self.db.execute(
            delete(CategorizationCandidate)
            .where(CategorizationCandidate.staging_transaction_id == row.id)
            .where(CategorizationCandidate.decision.is_(None))
            .execution_options(synchronize_session="fetch")
        )

        candidates = []
        for rank, suggestion in enumerate(suggestions):
            candidate = build_candidate(row.id, suggestion, similar, preselected=rank == 0)
            self.db.add(candidate)
            candidates.append(candidate)
        await self.db.flush()
        await rule_feedback.record_matches(
            self.db, [match["ruleId"] for suggestion in suggestions for match in suggestion.all_matches]
        )

        logger.debug(
            "Categorization suggested",
            staging_id=row.id,
            candidates=len(candidates),
            top=suggestions[0].subcategory_name if suggestions else None,
        )
        return candidates


def build_candidate(
    staging_id: int,
    suggestion: Suggestion,
    similar: list[SimilarTransaction] | None = None,
    *,
    preselected: bool = False,
) -> CategorizationCandidate:
    similar = similar or []
    reasons = CategorizationReasons(
        source=suggestion.source,
        rule_names=suggestion.rule_names,
        merged_from=len(suggestion.rule_names),
        all_matches=suggestion.all_matches,
        similar_transactions=len(similar),
        similar_transactions_list=similar,
        merchant_keyword=suggestion.merchant_keyword,
        tie_breaker_winner=True if suggestion.tie_breaker_winner else None,
        tie_breaker_reasoning=suggestion.tie_breaker_reasoning,
    )
    return CategorizationCandidate(
        staging_transaction_id=staging_id,
        suggested_subcategory_id=suggestion.subcategory_id,
        suggested_subcategory_name=suggestion.subcategory_name,
        score=suggestion.confidence,
        confidence=suggestion.confidence,
        reasons=reasons.model_dump(mode="json", by_alias=True, exclude_none=True),
        rule_tags=suggestion.rule_tags,
        preselected=preselected,
        decision=None,
        decided_at=None,
    )


# =============================================================================
# Batch and streaming
# =============================================================================


async def uncategorized_row_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(
        select(StagingTransaction.id)
        .where(StagingTransaction.categorized.is_(False))
        .where(StagingTransaction.status.not_in((StagingStatus.IMPORTED, StagingStatus.REJECTED)))
        .where(StagingTransaction.imported_transaction_id.is_(None))
        .order_by(StagingTransaction.id)
    )
    return list(result.scalars().all())


async def suggest_categorizations(
    db: AsyncSession,
    params: CategorizationParams | None = None,
    **matcher_options,
) -> CategorizationSuggestResult:
    """Suggest for every uncategorized row in one session; per-row failures are collected."""
    params = params or CategorizationParams()
    matcher = CategorizationMatcher(db, rules=await load_rules(db), **matcher_options)

    generated = 0
    failures: list[RowFailure] = []
    row_ids = await uncategorized_row_ids(db)
    for row_id in row_ids:
        row = await db.get(StagingTransaction, row_id)
        try:
            generated += len(await matcher.suggest_for_transaction(row, params))
        except ReconcilerError as exc:
            log_exception(logger, exc, "Categorization failed for row", level="warning", staging_id=row_id)
            failures.append(RowFailure.from_exception(row_id, exc))

    logger.info(
        "Categorization batch finished",
        processed=len(row_ids),
        candidates_generated=generated,
        failures=len(failures),
    )
    return CategorizationSuggestResult(processed=len(row_ids), candidates_generated=generated, failures=failures)


async def stream_categorizations(
    session_maker: async_sessionmaker[AsyncSession],
    params: CategorizationParams | None = None,
    *,
    cancel: asyncio.Event | None = None,
    **matcher_options,
) -> AsyncIterator[CategorizationProgress]:
    """Yield a progress event per row, then one completion event.

    Each row runs and commits in its own session, so candidates already
    written stay valid when the stream is cancelled between rows.
    """
    params = params or CategorizationParams()
    async with session_maker() as db:
        rules = await load_rules(db)
        row_ids = await uncategorized_row_ids(db)

    total = len(row_ids)
    processed = generated = 0
    cancelled = False
    for row_id in row_ids:
        if cancel is not None and cancel.is_set():
            cancelled = True
            logger.info("Categorization stream cancelled", processed=processed, total=total)
            break
        processed += 1
        try:
            async with session_maker() as db, db.begin():
                row = await db.get(StagingTransaction, row_id)
                if row is None:
                    raise NotFoundError("Staging transaction", row_id)
                matcher = CategorizationMatcher(db, rules=rules, **matcher_options)
                count = len(await matcher.suggest_for_transaction(row, params))
        except ReconcilerError as exc:
            log_exception(logger, exc, "Categorization failed for row", level="warning", staging_id=row_id)
            yield CategorizationProgress(
                event="error",
                processed=processed,
                total=total,
                staging_id=row_id,
                candidates=generated,
                error=RowFailure.from_exception(row_id, exc),
            )
            continue
        generated += count
        yield CategorizationProgress(
            event="progress",
            processed=processed,
            total=total,
            staging_id=row_id,
            candidates=generated,
        )

    yield CategorizationProgress(
        event="complete",
        processed=processed,
        total=total,
        candidates=generated,
        cancelled=cancelled,
    )


# =============================================================================
# Decisions
# =============================================================================


async def _load_open_row(db: AsyncSession, staging_id: int) -> StagingTransaction:
    row = await db.get(StagingTransaction, staging_id)
    if row is None:
        raise NotFoundError("Staging transaction", staging_id)
    if row.is_imported:
        raise ValidationError(f"Staging transaction {staging_id} is already imported")
    return row


def _apply_category(row: StagingTransaction, subcategory_id: int) -> None:
    row.transition_to(StagingStatus.APPROVED)
    row.mapped_subcategory_id = subcategory_id
    row.categorized = True


def auto_accept_keyword(candidate: CategorizationCandidate) -> str | None:
    """Merchant keyword behind an AUTO_ACCEPT candidate, if it is one."""
    if candidate.rule_tags and candidate.rule_tags.startswith(AUTO_ACCEPT_TAG):
        return (candidate.reasons or {}).get("merchantKeyword")
    return None


def record_auto_accept_matches(auto_accept_map: AutoAcceptMap, merchants: list[str]) -> list[AutoAcceptEntry]:
    """Count confirmed auto-accept decisions.

    Call only once the transaction that confirmed them has committed; the map
    is process-wide and is not rolled back with the database.
    """
    recorded = []
    for merchant in merchants:
        try:
            recorded.append(auto_accept_map.record_match(merchant))
        except NotFoundError:
            logger.info("Auto-accept mapping removed before confirmation", merchant=merchant)
    if recorded and settings.auto_accept_persist_statistics and auto_accept_map.path is not None:
        auto_accept_map.save()
    return recorded


async def confirm_categorization(db: AsyncSession, candidate_id: int) -> CategorizationCandidate:
    """Accept a candidate, reject its siblings and categorize the row.

    Rules behind the candidate are credited and rules behind the siblings
    debited. Auto-accept statistics are left to the caller; see
    record_auto_accept_matches.
    """
    existing = await db.get(CategorizationCandidate, candidate_id)
    if existing is None:
        raise NotFoundError("Categorization candidate", candidate_id)
    row = await _load_open_row(db, existing.staging_transaction_id)
    row.check_transition(StagingStatus.APPROVED)
    siblings = [c for c in await rule_feedback.pending_candidates(db, row.id) if c.id != candidate_id]

    candidate, rejected = await lifecycle.accept_categorization(db, candidate_id)
    _apply_category(row, candidate.suggested_subcategory_id)
    await rule_feedback.record_review(db, correct=[candidate], incorrect=siblings)
    await db.flush()

    logger.info(
        "Categorization confirmed",
        candidate_id=candidate_id,
        staging_id=row.id,
        subcategory_id=candidate.suggested_subcategory_id,
        rejected_siblings=rejected,
    )
    return candidate


async def reject_categorization(db: AsyncSession, candidate_id: int) -> CategorizationCandidate:
    candidate = await lifecycle.reject_categorization(db, candidate_id)
    await rule_feedback.record_review(db, incorrect=[candidate])
    return candidate


async def manual_categorize(db: AsyncSession, staging_id: int, subcategory_id: int) -> CategorizationCandidate:
    """Categorize a row by hand, recorded as an accepted MANUAL candidate."""
    row = await _load_open_row(db, staging_id)
    subcategory = await db.get(Subcategory, subcategory_id)
    if subcategory is None:
        raise ValidationError(f"Unknown subcategory {subcategory_id}")
    row.check_transition(StagingStatus.APPROVED)

    pending = await rule_feedback.pending_candidates(db, staging_id)
    await lifecycle.reject_pending(
        db,
        CategorizationCandidate,
        CategorizationCandidate.staging_transaction_id == staging_id,
    )
    await rule_feedback.record_review(
        db,
        correct=[c for c in pending if c.suggested_subcategory_id == subcategory.id],
        incorrect=[c for c in pending if c.suggested_subcategory_id != subcategory.id],
    )
    candidate = build_candidate(
        staging_id,
        Suggestion(
            subcategory_id=subcategory.id,
            subcategory_name=subcategory.name,
            confidence=1.0,
            source="manual",
            tag=MANUAL_TAG,
        ),
        preselected=True,
    )
    candidate.decision = CandidateDecision.ACCEPTED
    candidate.decided_at = utcnow()
    db.add(candidate)
    _apply_category(row, subcategory.id)
    await db.flush()

    logger.info("Manual categorization", staging_id=staging_id, subcategory_id=subcategory_id)
    return candidate


async def run_auto_accept_on_staging(
    db: AsyncSession,
    *,
    auto_accept_map: AutoAcceptMap | None = None,
) -> AutoAcceptRunResult:
    """Categorize every uncategorized row with an auto-accept hit, without review.

    The matched keywords are returned, not counted; record them after commit.
    """
    auto_accept_map = auto_accept_map or get_auto_accept_map()
    matcher = CategorizationMatcher(db, rules=[], auto_accept_map=auto_accept_map, similarity_retriever=None)

    accepted = 0
    failures: list[RowFailure] = []
    merchant_keywords: list[str] = []
    row_ids = await uncategorized_row_ids(db)
    for row_id in row_ids:
        row = await db.get(StagingTransaction, row_id)
        suggestion = await matcher.auto_accept(row)
        if suggestion is None:
            continue
        try:
            row.check_transition(StagingStatus.APPROVED)
        except ValidationError as exc:
            failures.append(RowFailure.from_exception(row_id, exc))
            continue
        await lifecycle.reject_pending(
            db,
            CategorizationCandidate,
            CategorizationCandidate.staging_transaction_id == row_id,
        )
        candidate = build_candidate(row_id, suggestion, preselected=True)
        candidate.decision = CandidateDecision.ACCEPTED
        candidate.decided_at = utcnow()
        db.add(candidate)
        _apply_category(row, suggestion.subcategory_id)
        if suggestion.merchant_keyword:
            merchant_keywords.append(suggestion.merchant_keyword)
        accepted += 1

    await db.flush()
    logger.info("Auto-accept pass finished", scanned=len(row_ids), accepted=accepted, failures=len(failures))
    return AutoAcceptRunResult(
        scanned=len(row_ids),
        accepted=accepted,
        failures=failures,
        merchant_keywords=merchant_keywords,
    )


async def list_categorization_candidates(
    db: AsyncSession,
    *,
    pending_only: bool = True,
    staging_id: int | None = None,
) -> list[CategorizationCandidate]:
    stmt = select(CategorizationCandidate)
    if pending_only:
        stmt = stmt.where(CategorizationCandidate.decision.is_(None))
    if staging_id is not None:
        stmt = stmt.where(CategorizationCandidate.staging_transaction_id == staging_id)
    result = await db.execute(
        stmt.order_by(
            CategorizationCandidate.staging_transaction_id,
            CategorizationCandidate.confidence.desc(),
            CategorizationCandidate.id,
        ).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def clear_categorization_candidates(db: AsyncSession) -> int:
    """Delete every pending categorization candidate. Decided ones are kept."""
    result = await db.execute(
        delete(CategorizationCandidate)
        .where(CategorizationCandidate.decision.is_(None))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0
