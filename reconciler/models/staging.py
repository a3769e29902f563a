"""Staging transaction model: imported bank lines awaiting review."""

from datetime import date, datetime
from enum import Enum

from sqlalchemy import BigInteger, Boolean, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.errors import ValidationError
from reconciler.models.base import IntIdMixin, TimestampMixin


class StagingStatus(str, Enum):
    """Review status of a staging row."""

    PENDING = "PENDING"
    REVIEWED = "REVIEWED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IMPORTED = "IMPORTED"


# PENDING -> (REVIEWED) -> APPROVED|REJECTED -> IMPORTED. IMPORTED is terminal.
_ALLOWED_TRANSITIONS: dict[StagingStatus, frozenset[StagingStatus]] = {
    StagingStatus.PENDING: frozenset(
        {StagingStatus.REVIEWED, StagingStatus.APPROVED, StagingStatus.REJECTED, StagingStatus.IMPORTED}
    ),
    StagingStatus.REVIEWED: frozenset({StagingStatus.APPROVED, StagingStatus.REJECTED, StagingStatus.IMPORTED}),
    StagingStatus.APPROVED: frozenset({StagingStatus.APPROVED, StagingStatus.IMPORTED}),
    StagingStatus.REJECTED: frozenset({StagingStatus.REJECTED, StagingStatus.PENDING}),
    StagingStatus.IMPORTED: frozenset(),
}


class StagingTransaction(Base, IntIdMixin, TimestampMixin):
    """An imported, not-yet-committed bank line."""

    __tablename__ = "staging_transactions"

    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # signed, minor units
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    posted_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    subcategory_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[StagingStatus] = mapped_column(
        SQLEnum(StagingStatus, name="staging_status_enum"),
        nullable=False,
        default=StagingStatus.PENDING,
    )
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Pairing
    linked_staging_id: Mapped[int | None] = mapped_column(
        ForeignKey("staging_transactions.id", ondelete="SET NULL"), nullable=True
    )
    transfer_group_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    # Categorization
    categorized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    mapped_subcategory_id: Mapped[int | None] = mapped_column(
        ForeignKey("subcategories.id", ondelete="SET NULL"), nullable=True
    )
    mapped_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )

    # Commit
    imported_transaction_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def is_imported(self) -> bool:
        return self.status == StagingStatus.IMPORTED or self.imported_transaction_id is not None

    def check_transition(self, status: StagingStatus) -> None:
        """Raise ValidationError unless the review lifecycle allows `status` next."""
        if status == self.status and status != StagingStatus.IMPORTED:
            return
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValidationError(
                f"Staging transaction {self.id}: illegal transition {self.status.value} -> {status.value}"
            )

    def transition_to(self, status: StagingStatus) -> None:
        self.check_transition(status)
        self.status = status

    def __repr__(self) -> str:
        return f"<StagingTransaction {self.id} {self.amount} {self.description!r}>"
