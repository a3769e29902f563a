"""Account lookups shared by pairing and commit."""

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models import Account, AccountLink, StagingTransaction, account_owners
from reconciler.services.scoring import AccountGraph


async def accounts_by_number(db: AsyncSession, numbers: Iterable[str | None]) -> dict[str, Account]:
    wanted = {n for n in numbers if n}
    if not wanted:
        return {}
    result = await db.execute(select(Account).where(Account.account_number.in_(wanted)))
    return {account.account_number: account for account in result.scalars()}


async def resolve_account_ids(
    db: AsyncSession, rows: Iterable[StagingTransaction]
) -> dict[int, int | None]:
    """Account id per staging row: the mapped account, else the account number's owner.

    A mapped id that names no account resolves to None.
    """
    rows = list(rows)
    by_number = await accounts_by_number(db, (r.account_number for r in rows if r.mapped_account_id is None))
    mapped_ids = {r.mapped_account_id for r in rows if r.mapped_account_id is not None}
    known_ids: set[int] = set()
    if mapped_ids:
        result = await db.execute(select(Account.id).where(Account.id.in_(mapped_ids)))
        known_ids = set(result.scalars().all())

    resolved: dict[int, int | None] = {}
    for row in rows:
        if row.mapped_account_id is not None:
            resolved[row.id] = row.mapped_account_id if row.mapped_account_id in known_ids else None
        else:
            account = by_number.get(row.account_number or "")
            resolved[row.id] = account.id if account else None
    return resolved


async def load_account_graph(db: AsyncSession) -> AccountGraph:
    """Registered account links and shared ownership, for account_relation()."""
    links = await db.execute(select(AccountLink.account_a_id, AccountLink.account_b_id))
    owners = await db.execute(select(account_owners.c.account_id, account_owners.c.owner_id))

    owners_by_account: dict[int, set[int]] = {}
    for account_id, owner_id in owners.all():
        owners_by_account.setdefault(account_id, set()).add(owner_id)

    return AccountGraph(
        links={frozenset((a, b)) for a, b in links.all()},
        owners_by_account={k: frozenset(v) for k, v in owners_by_account.items()},
    )
