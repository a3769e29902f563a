"""Candidate decisions: PENDING -> ACCEPTED | REJECTED.

Every decision is a conditional UPDATE keyed on ``decision IS NULL``. When two
requests race, exactly one UPDATE hits the row; the other sees rowcount 0 and
gets AlreadyDecidedError. Sibling rejection runs in the caller's transaction.
"""

from __future__ import annotations

from typing import TypeVar

from sqlalchemy import ColumnElement, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.errors import AlreadyDecidedError, NotFoundError
from reconciler.logger import get_logger
from reconciler.models import CandidateDecision, CategorizationCandidate, PairingCandidate
from reconciler.models.base import utcnow

logger = get_logger(__name__)

CandidateT = TypeVar("CandidateT", PairingCandidate, CategorizationCandidate)


async def decide(
    db: AsyncSession,
    model: type[CandidateT],
    candidate_id: int,
    decision: CandidateDecision,
) -> CandidateT:
    """Record `decision` on a pending candidate.

    Raises:
        NotFoundError: candidate does not exist
        AlreadyDecidedError: candidate was decided already (possibly concurrently)
    """
    result = await db.execute(
        update(model)
        .where(model.id == candidate_id)
        .where(model.decision.is_(None))
        .values(decision=decision, decided_at=utcnow(), version=model.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        existing = await db.get(model, candidate_id, populate_existing=True)
        if existing is None:
            raise NotFoundError(model.__name__, candidate_id)
        raise AlreadyDecidedError(
            f"{model.__name__} {candidate_id} already {existing.status.value}",
            candidate_id=candidate_id,
        )

    candidate = await db.get(model, candidate_id, populate_existing=True)
    logger.info(
        "Candidate decided",
        kind=model.__tablename__,
        candidate_id=candidate_id,
        decision=decision.value,
        version=candidate.version,
    )
    return candidate


async def reject_pending(
    db: AsyncSession,
    model: type[CandidateT],
    *criteria: ColumnElement[bool],
    exclude_id: int | None = None,
) -> int:
    """Reject every pending candidate matching `criteria`. Returns the count."""
    stmt = update(model).where(model.decision.is_(None), *criteria)
    if exclude_id is not None:
        stmt = stmt.where(model.id != exclude_id)
    result = await db.execute(
        stmt.values(
            decision=CandidateDecision.REJECTED,
            decided_at=utcnow(),
            version=model.version + 1,
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# =============================================================================
# Categorization
# =============================================================================


async def accept_categorization(
    db: AsyncSession, candidate_id: int
) -> tuple[CategorizationCandidate, int]:
    """Accept one categorization candidate and reject its pending siblings."""
    candidate = await decide(db, CategorizationCandidate, candidate_id, CandidateDecision.ACCEPTED)
    rejected = await reject_pending(
        db,
        CategorizationCandidate,
        CategorizationCandidate.staging_transaction_id == candidate.staging_transaction_id,
        exclude_id=candidate.id,
    )
    return candidate, rejected


async def reject_categorization(db: AsyncSession, candidate_id: int) -> CategorizationCandidate:
    return await decide(db, CategorizationCandidate, candidate_id, CandidateDecision.REJECTED)


# =============================================================================
# Pairing
# =============================================================================


def touches(*staging_ids: int) -> ColumnElement[bool]:
    """Pairing candidates referencing any of `staging_ids` on either side."""
    return or_(PairingCandidate.left_id.in_(staging_ids), PairingCandidate.right_id.in_(staging_ids))


async def find_pairing_candidate(db: AsyncSession, left_id: int, right_id: int) -> PairingCandidate | None:
    result = await db.execute(
        select(PairingCandidate)
        .where(PairingCandidate.left_id == left_id)
        .where(PairingCandidate.right_id == right_id)
    )
    return result.scalar_one_or_none()


async def accept_pairing(db: AsyncSession, candidate_id: int) -> tuple[PairingCandidate, int]:
    """Accept one pairing candidate and reject pending candidates touching either row."""
    candidate = await decide(db, PairingCandidate, candidate_id, CandidateDecision.ACCEPTED)
    rejected = await reject_pending(
        db,
        PairingCandidate,
        touches(candidate.left_id, candidate.right_id),
        exclude_id=candidate.id,
    )
    return candidate, rejected


async def reject_pairing(db: AsyncSession, candidate_id: int) -> PairingCandidate:
    return await decide(db, PairingCandidate, candidate_id, CandidateDecision.REJECTED)


async def close_candidates_for(db: AsyncSession, *staging_ids: int) -> int:
    """Reject every pending pairing and categorization candidate of imported rows."""
    pairings = await reject_pending(db, PairingCandidate, touches(*staging_ids))
    categorizations = await reject_pending(
        db,
        CategorizationCandidate,
        CategorizationCandidate.staging_transaction_id.in_(staging_ids),
    )
    return pairings + categorizations
