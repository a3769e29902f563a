"""Pydantic schemas for categorization suggestions and streaming progress."""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

from reconciler.models.candidate import CandidateStatus
from reconciler.schemas.base import BaseResponse, CamelModel, RowFailure


class CategorizationParams(BaseModel):
    top_k: int = Field(default=3, ge=1, le=20)
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class SimilarTransaction(CamelModel):
    """A historical ledger transaction resembling the row being categorized."""

    transaction_id: int
    description: str
    amount: int
    transaction_date: date
    subcategory_id: int
    subcategory_name: str | None = None
    similarity: float = Field(ge=0.0, le=1.0)


class CategorizationReasons(CamelModel):
    """Evidence stored on CategorizationCandidate.reasons."""

    source: Literal["auto_accept", "rule", "similarity", "manual"]
    rule_names: list[str] = Field(default_factory=list)
    merged_from: int = 0
    all_matches: list[dict] = Field(default_factory=list)
    similar_transactions: int = 0
    similar_transactions_list: list[SimilarTransaction] = Field(default_factory=list)
    merchant_keyword: str | None = None
    tie_breaker_winner: bool | None = None
    tie_breaker_reasoning: str | None = None


class TieCandidate(BaseModel):
    """What the tie-breaker sees for one tied suggestion."""

    subcategory_id: int
    subcategory_name: str
    confidence: float
    priority: int
    rule_names: list[str] = Field(default_factory=list)


class TieBreakResult(BaseModel):
    subcategory_id: int
    reasoning: str = ""


class CategorizationCandidateResponse(BaseResponse):
    id: int
    staging_transaction_id: int
    suggested_subcategory_id: int
    suggested_subcategory_name: str
    score: float
    confidence: float
    reasons: dict
    rule_tags: str | None
    preselected: bool
    status: CandidateStatus
    version: int
    decided_at: datetime | None
    created_at: datetime


class CategorizationSuggestResult(BaseModel):
    processed: int
    candidates_generated: int
    failures: list[RowFailure] = Field(default_factory=list)
    cancelled: bool = False


class CategorizationProgress(BaseModel):
    """One event of a streaming categorization run."""

    event: Literal["progress", "error", "complete"]
    processed: int
    total: int
    staging_id: int | None = None
    candidates: int = 0
    error: RowFailure | None = None
    cancelled: bool = False


class AutoAcceptRunResult(BaseModel):
    scanned: int
    accepted: int
    failures: list[RowFailure] = Field(default_factory=list)
    merchant_keywords: list[str] = Field(default_factory=list)


class RulePerformance(BaseResponse):
    """Review feedback for one rule and what to do about it."""

    rule_id: str
    rule_name: str
    subcategory_id: int
    enabled: bool
    match_count: int
    correct_count: int
    incorrect_count: int
    precision: float | None = None
    status: Literal["unreviewed", "healthy", "low_precision"]
    recommendation: str


class RuleConflict(BaseModel):
    """An enabled rule that matched rows also matched by rules for other subcategories."""

    rule_id: str
    rule_name: str
    subcategory_id: int
    conflicts_with: list[str] = Field(default_factory=list)
    staging_ids: list[int] = Field(default_factory=list)
