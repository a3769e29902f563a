"""Account balances and the ledger writes that move them.

Invariant: balance == initial_balance + sum(amount of the account's ledger transactions).
Writes adjust the cached balance incrementally; recalculate_balance rebuilds it.
"""

from datetime import date

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.errors import NotFoundError, ValidationError
from reconciler.logger import get_logger
from reconciler.models import Account, LedgerTransaction, TransactionStatus, TransactionType
from reconciler.schemas.ledger import BalanceAtDate, ReconcileBalanceResult, RecalculateBalanceResult

logger = get_logger(__name__)


async def _get_account(db: AsyncSession, account_id: int, *, for_update: bool = False) -> Account:
    stmt = select(Account).where(Account.id == account_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError("Account", account_id)
    return account


async def sum_transactions(db: AsyncSession, account_id: int, *, up_to: date | None = None) -> int:
    """Signed sum of the account's ledger amounts, optionally through `up_to` inclusive."""
    stmt = select(func.coalesce(func.sum(LedgerTransaction.amount), 0)).where(
        LedgerTransaction.account_id == account_id
    )
    if up_to is not None:
        stmt = stmt.where(LedgerTransaction.transaction_date <= up_to)
    return int((await db.execute(stmt)).scalar_one())


async def apply_balance_delta(db: AsyncSession, account_id: int, delta: int) -> None:
    if delta == 0:
        return
    await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance=Account.balance + delta)
        .execution_options(synchronize_session=False)
    )


async def create_ledger_transaction(
    db: AsyncSession,
    *,
    account_id: int,
    amount: int,
    transaction_date: date,
    type: TransactionType | None = None,
    description: str = "",
    subcategory_id: int | None = None,
    staging_transaction_id: int | None = None,
    transfer_group_id: str | None = None,
    linked_transaction_id: int | None = None,
) -> LedgerTransaction:
    """Insert a ledger row and move the account balance by its amount."""
    await _get_account(db, account_id)
    if type is None:
        type = TransactionType.INCOME if amount >= 0 else TransactionType.EXPENSE

    txn = LedgerTransaction(
        account_id=account_id,
        amount=amount,
        type=type,
        transaction_date=transaction_date,
        description=description,
        subcategory_id=subcategory_id,
        staging_transaction_id=staging_transaction_id,
        transfer_group_id=transfer_group_id,
        linked_transaction_id=linked_transaction_id,
    )
    db.add(txn)
    await db.flush()
    await apply_balance_delta(db, account_id, amount)
    return txn


async def delete_ledger_transaction(db: AsyncSession, transaction_id: int) -> list[int]:
    """Delete a ledger row (both legs for a transfer) and roll back their balance effect."""
    txn = await db.get(LedgerTransaction, transaction_id)
    if txn is None:
        raise NotFoundError("Ledger transaction", transaction_id)

    legs = [txn]
    if txn.transfer_group_id or txn.linked_transaction_id:
        clauses = [LedgerTransaction.id == txn.linked_transaction_id]
        if txn.transfer_group_id:
            clauses.append(LedgerTransaction.transfer_group_id == txn.transfer_group_id)
        result = await db.execute(
            select(LedgerTransaction).where(LedgerTransaction.id != txn.id).where(or_(*clauses))
        )
        legs.extend(result.scalars().all())

    for leg in legs:
        leg.linked_transaction_id = None
    await db.flush()

    deleted = []
    for leg in legs:
        await apply_balance_delta(db, leg.account_id, -leg.amount)
        deleted.append(leg.id)
        await db.delete(leg)
    await db.flush()

    logger.info("Ledger transaction deleted", transaction_ids=deleted)
    return deleted


async def recalculate_balance(db: AsyncSession, account_id: int) -> RecalculateBalanceResult:
    """Rebuild the cached balance from initial_balance and every ledger row."""
    account = await _get_account(db, account_id, for_update=True)
    previous = account.balance
    account.balance = account.initial_balance + await sum_transactions(db, account_id)
    await db.flush()

    if previous != account.balance:
        logger.warning(
            "Account balance drift corrected",
            account_id=account_id,
            previous_balance=previous,
            balance=account.balance,
        )
    return RecalculateBalanceResult(account_id=account_id, previous_balance=previous, balance=account.balance)


async def recalculate_all_balances(db: AsyncSession) -> list[RecalculateBalanceResult]:
    result = await db.execute(select(Account.id).order_by(Account.id))
    return [await recalculate_balance(db, account_id) for account_id in result.scalars().all()]


async def get_balance_at_date(db: AsyncSession, account_id: int, as_of_date: date) -> BalanceAtDate:
    account = await _get_account(db, account_id)
    balance = account.initial_balance + await sum_transactions(db, account_id, up_to=as_of_date)
    return BalanceAtDate(account_id=account_id, as_of_date=as_of_date, balance=balance)


async def reconcile_balance(
    db: AsyncSession,
    account_id: int,
    as_of_date: date,
    known_balance: int,
) -> ReconcileBalanceResult:
    """Adjust initial_balance so the computed balance at `as_of_date` equals `known_balance`.

    The current balance moves by the same delta. Ledger rows dated on or before
    `as_of_date` are marked reconciled; later rows are untouched.
    """
    account = await _get_account(db, account_id, for_update=True)
    if account.open_at and as_of_date < account.open_at:
        raise ValidationError(f"Account {account_id} opened after {as_of_date.isoformat()}")

    computed = account.initial_balance + await sum_transactions(db, account_id, up_to=as_of_date)
    delta = known_balance - computed
    previous_initial = account.initial_balance

    account.initial_balance = previous_initial + delta
    account.balance = account.initial_balance + await sum_transactions(db, account_id)

    marked = await db.execute(
        update(LedgerTransaction)
        .where(LedgerTransaction.account_id == account_id)
        .where(LedgerTransaction.transaction_date <= as_of_date)
        .values(is_reconciled=True, status=TransactionStatus.RECONCILED)
        .execution_options(synchronize_session=False)
    )
    await db.flush()

    logger.info(
        "Balance reconciled",
        account_id=account_id,
        as_of_date=as_of_date.isoformat(),
        known_balance=known_balance,
        delta=delta,
        initial_balance=account.initial_balance,
        balance=account.balance,
    )
    return ReconcileBalanceResult(
        account_id=account_id,
        as_of_date=as_of_date,
        known_balance=known_balance,
        computed_balance=computed,
        delta=delta,
        previous_initial_balance=previous_initial,
        initial_balance=account.initial_balance,
        balance=account.balance,
        reconciled_transactions=marked.rowcount or 0,
    )
