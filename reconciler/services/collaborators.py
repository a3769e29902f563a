"""Contracts for the engine's external collaborators.

The engine never talks to an LLM, vector store or script sandbox directly.
Each is a narrow async Protocol; calls go through `call_collaborator`, which
bounds them with a timeout and logs timing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

from reconciler.errors import CollaboratorTimeoutError
from reconciler.logger import get_logger, log_collaborator_call

if TYPE_CHECKING:
    from reconciler.models import StagingTransaction
    from reconciler.schemas.categorization import SimilarTransaction, TieBreakResult, TieCandidate

logger = get_logger(__name__)

T = TypeVar("T")


@runtime_checkable
class SimilarityRetriever(Protocol):
    """Read-only, best-effort lookup of past transactions resembling a row."""

    async def find_similar(
        self, transaction: StagingTransaction, *, limit: int
    ) -> list[SimilarTransaction]: ...


@runtime_checkable
class TieBreaker(Protocol):
    """Pick one winner among near-tied categorization candidates."""

    async def break_tie(
        self, transaction: StagingTransaction, candidates: list[TieCandidate]
    ) -> TieBreakResult: ...


@runtime_checkable
class ScriptEvaluator(Protocol):
    """Sandboxed boolean predicate over a transaction (and its linked row)."""

    async def eval_script(
        self,
        code: str,
        transaction: StagingTransaction,
        linked_transaction: StagingTransaction | None,
    ) -> bool: ...


async def call_collaborator(service: str, awaitable: Awaitable[T], *, timeout: float) -> T:
    """Await a collaborator call, converting a timeout into CollaboratorTimeoutError.

    Other exceptions from the collaborator propagate unchanged; callers decide
    how to degrade.
    """
    try:
        async with log_collaborator_call(service, logger=logger):
            return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as exc:
        raise CollaboratorTimeoutError(service, timeout) from exc
