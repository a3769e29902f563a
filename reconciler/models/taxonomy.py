"""Subcategory taxonomy and categorization rule models."""

from sqlalchemy import Boolean, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.database import Base
from reconciler.models.base import IntIdMixin, TimestampMixin


class Subcategory(Base, IntIdMixin):
    """Leaf of the user's category taxonomy; the unit transactions are classified into."""

    __tablename__ = "subcategories"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    category_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Subcategory {self.name}>"


class CategorizationRule(Base, TimestampMixin):
    """Composite rule assigning a subcategory with a static confidence.

    `conditions` holds a ConditionGroup document; it is validated into
    reconciler.schemas.rules models before evaluation.
    """

    __tablename__ = "categorization_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    subcategory_id: Mapped[int] = mapped_column(
        ForeignKey("subcategories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.8)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Review feedback. Incremented in place by reconciler.services.rule_feedback.
    match_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    correct_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    incorrect_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def precision(self) -> float | None:
        """Share of reviewed suggestions that were confirmed; None before any review."""
        reviewed = (self.correct_count or 0) + (self.incorrect_count or 0)
        if not reviewed:
            return None
        return (self.correct_count or 0) / reviewed

    def __repr__(self) -> str:
        return f"<CategorizationRule {self.id} -> {self.subcategory_id}>"
