"""Account and owner models."""

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import BigInteger, Boolean, Column, Date, Enum, ForeignKey, Integer, String, Table, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reconciler.database import Base
from reconciler.models.base import IntIdMixin, TimestampMixin


class AccountType(str, enum.Enum):
    """Account type classification."""

    EVERYDAY = "EVERYDAY"
    SAVINGS = "SAVINGS"
    TRANSIT = "TRANSIT"
    SECURITIES = "SECURITIES"
    INVESTMENTS = "INVESTMENTS"
    PROJECTS = "PROJECTS"


account_owners = Table(
    "account_owners",
    Base.metadata,
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True),
    Column("owner_id", Integer, ForeignKey("owners.id", ondelete="CASCADE"), primary_key=True),
)


class Owner(Base, IntIdMixin):
    """A person who owns one or more accounts."""

    __tablename__ = "owners"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    accounts: Mapped[list[Account]] = relationship(secondary=account_owners, back_populates="owners")

    def __repr__(self) -> str:
        return f"<Owner {self.name}>"


class Account(Base, IntIdMixin, TimestampMixin):
    """
    A bank account in the personal ledger.

    `balance` is a cached value:
    balance == initial_balance + sum(amount of every ledger transaction on the account)
    """

    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True, index=True)
    type: Mapped[AccountType] = mapped_column(Enum(AccountType), nullable=False, default=AccountType.EVERYDAY)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AUD")
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    initial_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    open_at: Mapped[date] = mapped_column(Date, nullable=False, default=date.today)
    closed_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    owners: Mapped[list[Owner]] = relationship(secondary=account_owners, back_populates="accounts")

    def __repr__(self) -> str:
        return f"<Account {self.name} ({self.account_number})>"


class AccountLink(Base, IntIdMixin):
    """A registered pair of accounts that routinely transfer between each other.

    Stored with account_a_id < account_b_id so each pair has one row.
    """

    __tablename__ = "account_links"
    __table_args__ = (UniqueConstraint("account_a_id", "account_b_id", name="uq_account_links_pair"),)

    account_a_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    account_b_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)

    @classmethod
    def between(cls, first_id: int, second_id: int) -> AccountLink:
        low, high = sorted((first_id, second_id))
        return cls(account_a_id=low, account_b_id=high)
