"""Engine facade: the operations the surrounding application calls.

Each operation runs in its own session and transaction; streaming
categorization opens one per row.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.database import get_session_maker
from reconciler.errors import NotFoundError
from reconciler.logger import get_logger
from reconciler.models import StagingTransaction
from reconciler.schemas.categorization import (
    AutoAcceptRunResult,
    CategorizationCandidateResponse,
    CategorizationParams,
    CategorizationProgress,
    CategorizationSuggestResult,
    RuleConflict,
    RulePerformance,
)
from reconciler.schemas.ledger import (
    BalanceAtDate,
    CommitResult,
    ReconcileBalanceResult,
    RecalculateBalanceResult,
)
from reconciler.schemas.pairing import (
    PairingCandidateResponse,
    PairingConfirmResult,
    PairingSuggestParams,
    PairingSuggestResult,
)
from reconciler.services import balances, categorization, commit, pairing, rule_feedback
from reconciler.services.auto_accept import AutoAcceptMap, get_auto_accept_map
from reconciler.services.collaborators import ScriptEvaluator, SimilarityRetriever, TieBreaker
from reconciler.services.rules import RuleEvaluator, load_rules

logger = get_logger(__name__)


class ReconciliationEngine:
    """Pairing, categorization, review decisions, commit and balance reconciliation."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        *,
        similarity_retriever: SimilarityRetriever | None = None,
        tie_breaker: TieBreaker | None = None,
        script_evaluator: ScriptEvaluator | None = None,
        auto_accept_map: AutoAcceptMap | None = None,
    ):
        self.session_maker = session_maker or get_session_maker()
        self.similarity_retriever = similarity_retriever
        self.tie_breaker = tie_breaker
        self.evaluator = RuleEvaluator(script_evaluator=script_evaluator)
        self._auto_accept_map = auto_accept_map
        logger.debug(
            "Reconciliation engine created",
            similarity_retriever=type(similarity_retriever).__name__ if similarity_retriever else None,
            tie_breaker=type(tie_breaker).__name__ if tie_breaker else None,
            script_evaluator=type(script_evaluator).__name__ if script_evaluator else None,
        )

    @property
    def auto_accept_map(self) -> AutoAcceptMap:
        return self._auto_accept_map or get_auto_accept_map()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One session, one transaction: commit on success, roll back on error."""
        async with self.session_maker() as db, db.begin():
            yield db

    def _matcher_options(self) -> dict:
        return {
            "evaluator": self.evaluator,
            "auto_accept_map": self.auto_accept_map,
            "similarity_retriever": self.similarity_retriever,
            "tie_breaker": self.tie_breaker,
        }

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    async def suggest_pairings(self, params: PairingSuggestParams | None = None) -> PairingSuggestResult:
        async with self.session() as db:
            return await pairing.suggest_pairings(db, params, evaluator=self.evaluator)

    async def confirm_pairing(self, left_id: int, right_id: int) -> PairingConfirmResult:
        async with self.session() as db:
            return await pairing.confirm_pairing(db, left_id, right_id)

    async def reject_pairing(self, left_id: int, right_id: int) -> PairingCandidateResponse:
        async with self.session() as db:
            candidate = await pairing.reject_pairing(db, left_id, right_id)
            return PairingCandidateResponse.model_validate(candidate)

    async def list_pairing_candidates(
        self, *, pending_only: bool = True, left_id: int | None = None
    ) -> list[PairingCandidateResponse]:
        async with self.session() as db:
            candidates = await pairing.list_pairing_candidates(db, pending_only=pending_only, left_id=left_id)
            return [PairingCandidateResponse.model_validate(c) for c in candidates]

    async def clear_pairing_candidates(self) -> int:
        async with self.session() as db:
            return await pairing.clear_pairing_candidates(db)

    # ------------------------------------------------------------------
    # Categorization
    # ------------------------------------------------------------------

    async def suggest_for_transaction(
        self, staging_id: int, params: CategorizationParams | None = None
    ) -> list[CategorizationCandidateResponse]:
        async with self.session() as db:
            row = await db.get(StagingTransaction, staging_id)
            if row is None:
                raise NotFoundError("Staging transaction", staging_id)
            matcher = categorization.CategorizationMatcher(db, rules=await load_rules(db), **self._matcher_options())
            candidates = await matcher.suggest_for_transaction(row, params)
            return [CategorizationCandidateResponse.model_validate(c) for c in candidates]

    async def suggest_categorizations(
        self, params: CategorizationParams | None = None
    ) -> CategorizationSuggestResult:
        async with self.session() as db:
            return await categorization.suggest_categorizations(db, params, **self._matcher_options())

    async def stream_categorizations(
        self,
        params: CategorizationParams | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[CategorizationProgress]:
        """Progress events per row; set `cancel` to stop before the next row."""
        async for event in categorization.stream_categorizations(
            self.session_maker, params, cancel=cancel, **self._matcher_options()
        ):
            yield event

    async def confirm_categorization(self, candidate_id: int) -> CategorizationCandidateResponse:
        async with self.session() as db:
            candidate = await categorization.confirm_categorization(db, candidate_id)
            response = CategorizationCandidateResponse.model_validate(candidate)
            merchant = categorization.auto_accept_keyword(candidate)
        if merchant:
            categorization.record_auto_accept_matches(self.auto_accept_map, [merchant])
        return response

    async def reject_categorization(self, candidate_id: int) -> CategorizationCandidateResponse:
        async with self.session() as db:
            candidate = await categorization.reject_categorization(db, candidate_id)
            return CategorizationCandidateResponse.model_validate(candidate)

    async def manual_categorize(self, staging_id: int, subcategory_id: int) -> CategorizationCandidateResponse:
        async with self.session() as db:
            candidate = await categorization.manual_categorize(db, staging_id, subcategory_id)
            return CategorizationCandidateResponse.model_validate(candidate)

    async def list_categorization_candidates(
        self, *, pending_only: bool = True, staging_id: int | None = None
    ) -> list[CategorizationCandidateResponse]:
        async with self.session() as db:
            candidates = await categorization.list_categorization_candidates(
                db, pending_only=pending_only, staging_id=staging_id
            )
            return [CategorizationCandidateResponse.model_validate(c) for c in candidates]

    async def clear_categorization_candidates(self) -> int:
        async with self.session() as db:
            return await categorization.clear_categorization_candidates(db)

    async def run_auto_accept_on_staging(self) -> AutoAcceptRunResult:
        async with self.session() as db:
            result = await categorization.run_auto_accept_on_staging(db, auto_accept_map=self.auto_accept_map)
        categorization.record_auto_accept_matches(self.auto_accept_map, result.merchant_keywords)
        return result

    # ------------------------------------------------------------------
    # Rule feedback
    # ------------------------------------------------------------------

    async def rule_performance(self, rule_id: str) -> RulePerformance:
        async with self.session() as db:
            return await rule_feedback.rule_performance(db, rule_id)

    async def low_precision_rules(self, threshold: float | None = None) -> list[RulePerformance]:
        async with self.session() as db:
            return await rule_feedback.low_precision_rules(db, threshold=threshold)

    async def find_rule_conflicts(self) -> list[RuleConflict]:
        async with self.session() as db:
            return await rule_feedback.find_rule_conflicts(db, evaluator=self.evaluator)

    # ------------------------------------------------------------------
    # Commit and balances
    # ------------------------------------------------------------------

    async def commit_all(self) -> CommitResult:
        async with self.session() as db:
            return await commit.commit_all(db)

    async def reconcile_balance(
        self, account_id: int, as_of_date: date, known_balance: int
    ) -> ReconcileBalanceResult:
        async with self.session() as db:
            return await balances.reconcile_balance(db, account_id, as_of_date, known_balance)

    async def recalculate_balance(self, account_id: int) -> RecalculateBalanceResult:
        async with self.session() as db:
            return await balances.recalculate_balance(db, account_id)

    async def recalculate_all_balances(self) -> list[RecalculateBalanceResult]:
        async with self.session() as db:
            return await balances.recalculate_all_balances(db)

    async def get_balance_at_date(self, account_id: int, as_of_date: date) -> BalanceAtDate:
        async with self.session() as db:
            return await balances.get_balance_at_date(db, account_id, as_of_date)

    async def delete_ledger_transaction(self, transaction_id: int) -> list[int]:
        async with self.session() as db:
            return await balances.delete_ledger_transaction(db, transaction_id)
