"""Pydantic schemas for commit and balance reconciliation."""

from datetime import date

from pydantic import BaseModel, Field

from reconciler.schemas.base import RowFailure


class CommitRowResult(BaseModel):
    staging_id: int
    ledger_ids: list[int]


class CommitResult(BaseModel):
    imported: int
    skipped: int
    committed: list[CommitRowResult] = Field(default_factory=list)
    failures: list[RowFailure] = Field(default_factory=list)


class RecalculateBalanceResult(BaseModel):
    account_id: int
    previous_balance: int
    balance: int

    @property
    def changed(self) -> bool:
        return self.previous_balance != self.balance


class BalanceAtDate(BaseModel):
    account_id: int
    as_of_date: date
    balance: int


class ReconcileBalanceResult(BaseModel):
    account_id: int
    as_of_date: date
    known_balance: int
    computed_balance: int
    delta: int
    previous_initial_balance: int
    initial_balance: int
    balance: int
    reconciled_transactions: int
