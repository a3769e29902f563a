"""Pairing and categorization candidates awaiting a user decision."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import IntIdMixin, utcnow


class CandidateDecision(str, Enum):
    """Terminal decision on a candidate. No decision means PENDING."""

    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class CandidateStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class _DecisionMixin:
    decision: Mapped[CandidateDecision | None] = mapped_column(
        SQLEnum(CandidateDecision, name="candidate_decision_enum"), nullable=True, index=True
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Bumped on every decision; optimistic concurrency guard.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    preselected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def status(self) -> CandidateStatus:
        if self.decision is None:
            return CandidateStatus.PENDING
        return CandidateStatus(self.decision.value)

    @property
    def is_pending(self) -> bool:
        return self.decision is None


class PairingCandidate(Base, IntIdMixin, _DecisionMixin):
    """Proposed transfer pairing of a debit row (left) with a credit row (right)."""

    __tablename__ = "pairing_candidates"
    __table_args__ = (UniqueConstraint("left_id", "right_id", name="uq_pairing_candidates_pair"),)

    left_id: Mapped[int] = mapped_column(
        ForeignKey("staging_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    right_id: Mapped[int] = mapped_column(
        ForeignKey("staging_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # Scores are non-monetary; floats are acceptable for display/analysis.
    reasons: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<PairingCandidate {self.left_id}<->{self.right_id} {self.score:.2f} {self.status.value}>"


class CategorizationCandidate(Base, IntIdMixin, _DecisionMixin):
    """Proposed subcategory for one staging row."""

    __tablename__ = "categorization_candidates"

    staging_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("staging_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    suggested_subcategory_id: Mapped[int] = mapped_column(
        ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False
    )
    suggested_subcategory_name: Mapped[str] = mapped_column(String(100), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reasons: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    rule_tags: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CategorizationCandidate {self.id} row={self.staging_transaction_id} "
            f"{self.suggested_subcategory_name} {self.confidence:.2f} {self.status.value}>"
        )
