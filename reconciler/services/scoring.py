"""Pure scoring functions for transfer pairing. Every score is in [0, 1]."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from difflib import SequenceMatcher

from reconciler.services.matching_config import MatchingConfig

MERCHANT_SKIP_WORDS = frozenset(
    {
        "ref",
        "txn",
        "trn",
        "pos",
        "atm",
        "eft",
        "ibk",
        "ibt",
        "payment",
        "transfer",
        "debit",
        "credit",
        "card",
        "visa",
        "mastercard",
        "purchase",
        "value",
        "date",
    }
)


def normalize_text(value: str) -> str:
    """Normalize text for similarity comparison."""
    cleaned = re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def amount_score(diff_cents: int, tolerance_cents: int) -> float:
    """1 at an exact match, falling linearly to 0 at the tolerance."""
    diff = abs(diff_cents)
    if tolerance_cents <= 0:
        return 1.0 if diff == 0 else 0.0
    return 1.0 - min(1.0, diff / tolerance_cents)


def date_score(days: int, window_days: int) -> float:
    """Score date proximity; zero outside the window."""
    # Scoring tiers:
    # - Same day: 1.0
    # - Next day: 0.95 (typical settlement lag between banks)
    # - Within 3 days: 0.85
    # - Within the window: 0.70
    days = abs(days)
    if days > window_days:
        return 0.0
    if days == 0:
        return 1.0
    if days == 1:
        return 0.95
    if days <= 3:
        return 0.85
    return 0.70


def description_score(a: str | None, b: str | None) -> float:
    """0.6 x sequence ratio + 0.4 x token Jaccard over normalized text."""
    if not a or not b:
        return 0.0
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    shared = tokens_a & tokens_b
    if not shared:
        return 0.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    token_score = len(shared) / len(tokens_a | tokens_b)
    return round(clamp(0.6 * ratio + 0.4 * token_score), 4)


def extract_merchant_tokens(description: str | None) -> list[str]:
    """Extract up to 3 significant words, skipping bank codes and generic terms."""
    if not description:
        return []
    tokens = []
    for word in normalize_text(description).split():
        if len(word) < 3:
            continue
        if word.isdigit():
            continue
        if word in MERCHANT_SKIP_WORDS:
            continue
        tokens.append(word)
        if len(tokens) >= 3:
            break
    return tokens


def has_transfer_keyword(description: str | None, keywords: Iterable[str]) -> bool:
    if not description:
        return False
    text = f" {normalize_text(description)} "
    return any(f" {normalize_text(keyword)} " in text for keyword in keywords)


def keyword_bonus(left: str | None, right: str | None, config: MatchingConfig) -> float:
    """Full bonus if both legs mention a transfer keyword, half if one does."""
    hits = sum(has_transfer_keyword(d, config.transfer_keywords) for d in (left, right))
    return config.keyword_bonus * hits / 2


@dataclass
class AccountGraph:
    """Which accounts are related: registered links and shared owners."""

    links: set[frozenset[int]] = field(default_factory=set)
    owners_by_account: Mapping[int, frozenset[int]] = field(default_factory=dict)

    def related(self, first: int | None, second: int | None) -> bool:
        if first is None or second is None or first == second:
            return False
        if frozenset((first, second)) in self.links:
            return True
        return bool(
            self.owners_by_account.get(first, frozenset()) & self.owners_by_account.get(second, frozenset())
        )


def account_relation(first: int | None, second: int | None, graph: AccountGraph) -> float:
    return 1.0 if graph.related(first, second) else 0.0


@dataclass(frozen=True)
class PairScore:
    amount: float
    date: float
    description: float
    account: float
    keyword: float
    rule: float
    amt_diff_cents: int
    days: int

    def composite(self, config: MatchingConfig) -> float:
        total = (
            self.amount * config.weight_amount
            + self.date * config.weight_date
            + self.description * config.weight_description
            + self.account * config.weight_account
            + self.keyword
            + self.rule
        )
        return round(clamp(total), 4)
