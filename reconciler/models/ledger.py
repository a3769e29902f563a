"""Committed ledger transactions."""

from datetime import date
from enum import Enum

from sqlalchemy import BigInteger, Boolean, Date, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import IntIdMixin, TimestampMixin


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    CLEARED = "CLEARED"
    RECONCILED = "RECONCILED"


class LedgerTransaction(Base, IntIdMixin, TimestampMixin):
    """A committed transaction on an account.

    Transfers are two rows of opposite sign pointing at each other through
    linked_transaction_id and sharing a transfer_group_id.
    """

    __tablename__ = "ledger_transactions"

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, name="transaction_type_enum"), nullable=False
    )
    subcategory_id: Mapped[int | None] = mapped_column(
        ForeignKey("subcategories.id", ondelete="SET NULL"), nullable=True
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    linked_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True
    )
    transfer_group_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus, name="transaction_status_enum"),
        nullable=False,
        default=TransactionStatus.CLEARED,
    )
    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    staging_transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.id} {self.type.value} {self.amount}>"
