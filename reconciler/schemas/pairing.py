"""Pydantic schemas for transfer pairing."""

from datetime import datetime

from pydantic import BaseModel, Field

from reconciler.models.candidate import CandidateStatus
from reconciler.schemas.base import BaseResponse, CamelModel


class PairingSuggestParams(BaseModel):
    """Knobs for one pairing run. Unset values come from config/matching.yaml."""

    date_window_days: int | None = Field(default=None, ge=0, le=366)
    amount_tolerance_cents: int | None = Field(default=None, ge=0)
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int = Field(default=3, ge=1, le=50)


class PairingReasons(CamelModel):
    """Score breakdown stored on PairingCandidate.reasons."""

    amount_score: float
    date_score: float
    desc_score: float
    account_relation: float
    keyword_bonus: float
    amt_diff_cents: int
    days: int
    rule_bonus: float | None = None
    rule_matched: bool | None = None
    rule_id: str | None = None
    rule_name: str | None = None
    rule_subcategory: int | None = None
    rule_confidence: float | None = None
    manual: bool | None = None


class PairingCandidateResponse(BaseResponse):
    id: int
    left_id: int
    right_id: int
    score: float
    reasons: dict
    preselected: bool
    status: CandidateStatus
    version: int
    decided_at: datetime | None
    created_at: datetime


class PairingSuggestResult(BaseModel):
    debits: int
    credits: int
    pairs_generated: int
    candidates: list[PairingCandidateResponse] = Field(default_factory=list)


class PairingConfirmResult(BaseModel):
    candidate_id: int
    left_id: int
    right_id: int
    transfer_group_id: str
    rejected_siblings: int
    rejected_categorizations: int = 0
