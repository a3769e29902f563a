"""Promote categorized staging rows to ledger transactions."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.errors import CommitConflictError, ReconcilerError, ValidationError
from reconciler.logger import async_log_timing, get_logger, log_exception
from reconciler.models import StagingStatus, StagingTransaction, Subcategory, TransactionType
from reconciler.models.base import utcnow
from reconciler.schemas.base import RowFailure
from reconciler.schemas.ledger import CommitResult, CommitRowResult
from reconciler.services import lifecycle
from reconciler.services.accounts import resolve_account_ids
from reconciler.services.balances import create_ledger_transaction

logger = get_logger(__name__)


@dataclass
class _PlannedLeg:
    row: StagingTransaction
    account_id: int
    type: TransactionType


async def eligible_rows(db: AsyncSession) -> list[StagingTransaction]:
    result = await db.execute(
        select(StagingTransaction)
        .where(StagingTransaction.categorized.is_(True))
        .where(StagingTransaction.imported_transaction_id.is_(None))
        .where(StagingTransaction.status.not_in((StagingStatus.IMPORTED, StagingStatus.REJECTED)))
        .order_by(StagingTransaction.transaction_date, StagingTransaction.id)
    )
    return list(result.scalars().all())


async def _plan(db: AsyncSession, row: StagingTransaction) -> list[_PlannedLeg]:
    """Validate a row (and its transfer partner) without writing anything."""
    if row.linked_staging_id is None:
        if row.mapped_subcategory_id is None:
            raise ValidationError(f"Staging transaction {row.id} has no subcategory")
        if await db.get(Subcategory, row.mapped_subcategory_id) is None:
            raise ValidationError(f"Unknown subcategory {row.mapped_subcategory_id}")
        rows = [row]
        kind = TransactionType.INCOME if row.amount >= 0 else TransactionType.EXPENSE
    else:
        partner = await db.get(StagingTransaction, row.linked_staging_id)
        if partner is None or partner.linked_staging_id != row.id:
            raise ValidationError(f"Staging transaction {row.id} has a broken transfer link")
        if partner.is_imported:
            raise ValidationError(f"Transfer partner {partner.id} was imported on its own")
        rows = [row, partner]
        kind = TransactionType.TRANSFER

    account_ids = await resolve_account_ids(db, rows)
    legs = []
    for leg_row in rows:
        leg_row.check_transition(StagingStatus.IMPORTED)
        account_id = account_ids[leg_row.id]
        if account_id is None:
            target = leg_row.mapped_account_id if leg_row.mapped_account_id is not None else leg_row.account_number
            raise ValidationError(f"Staging transaction {leg_row.id}: unknown account {target!r}")
        legs.append(_PlannedLeg(row=leg_row, account_id=account_id, type=kind))
    return legs


async def _claim(db: AsyncSession, row_id: int) -> None:
    """Mark a row IMPORTED unless someone else already did."""
    result = await db.execute(
        update(StagingTransaction)
        .where(StagingTransaction.id == row_id)
        .where(StagingTransaction.imported_transaction_id.is_(None))
        .where(StagingTransaction.status != StagingStatus.IMPORTED)
        .values(status=StagingStatus.IMPORTED, imported_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise CommitConflictError(row_id)


async def commit_row(db: AsyncSession, row: StagingTransaction) -> list[CommitRowResult]:
    """Commit one row, or both legs of a transfer. Validates before any write.

    Callers run this inside a savepoint; a failure after the claim must roll
    the claim back with it.
    """
    legs = await _plan(db, row)
    # Claim in id order so concurrent commits of one transfer collide on the first leg.
    for leg in sorted(legs, key=lambda planned: planned.row.id):
        await _claim(db, leg.row.id)
    await lifecycle.close_candidates_for(db, *(leg.row.id for leg in legs))

    created = []
    for leg in legs:
        txn = await create_ledger_transaction(
            db,
            account_id=leg.account_id,
            amount=leg.row.amount,
            type=leg.type,
            transaction_date=leg.row.transaction_date,
            description=leg.row.description,
            subcategory_id=leg.row.mapped_subcategory_id,
            staging_transaction_id=leg.row.id,
            transfer_group_id=leg.row.transfer_group_id,
        )
        created.append(txn)

    if len(created) == 2:
        created[0].linked_transaction_id = created[1].id
        created[1].linked_transaction_id = created[0].id

    for leg, txn in zip(legs, created, strict=True):
        await db.execute(
            update(StagingTransaction)
            .where(StagingTransaction.id == leg.row.id)
            .values(imported_transaction_id=txn.id)
            .execution_options(synchronize_session=False)
        )
    await db.flush()
    for leg in legs:
        await db.refresh(leg.row)

    return [CommitRowResult(staging_id=leg.row.id, ledger_ids=[t.id for t in created]) for leg in legs]


async def commit_all(db: AsyncSession) -> CommitResult:
    """Import every categorized, not-yet-imported staging row.

    Idempotent: imported rows are never eligible again. Each row commits in its
    own savepoint, so a row that fails is reported, left untouched and the
    batch continues; a row claimed by a concurrent commit is skipped.
    """
    committed: list[CommitRowResult] = []
    failures: list[RowFailure] = []
    skipped = 0
    done: set[int] = set()

    async with async_log_timing("commit_all", logger=logger) as ctx:
        for row in await eligible_rows(db):
            if row.id in done:
                continue
            try:
                async with db.begin_nested():
                    results = await commit_row(db, row)
            except CommitConflictError as exc:
                logger.warning("Staging row already imported, skipping", staging_id=exc.row_id)
                skipped += 1
                continue
            except ReconcilerError as exc:
                log_exception(logger, exc, "Row commit failed", level="warning", staging_id=row.id)
                failures.append(RowFailure.from_exception(row.id, exc))
                continue
            committed.extend(results)
            done.update(r.staging_id for r in results)

        ctx.update(imported=len(committed), skipped=skipped, failures=len(failures))

    return CommitResult(imported=len(committed), skipped=skipped, committed=committed, failures=failures)
