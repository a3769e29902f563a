"""Scoring weights and thresholds for pairing and categorization."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

import yaml

from reconciler.config import settings
from reconciler.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchingConfig:
    """Runtime configuration for matching.

    Weights are fixed per process; requests only tune thresholds and windows.
    """

    weight_amount: float
    weight_date: float
    weight_description: float
    weight_account: float
    keyword_bonus: float
    rule_bonus: float
    amount_tolerance_cents: int
    date_window_days: int
    pairing_min_score: float
    categorization_min_confidence: float
    transfer_keywords: tuple[str, ...]


TRANSFER_KEYWORDS = (
    "transfer",
    "xfer",
    "tfr",
    "internal",
    "to savings",
    "from savings",
    "to everyday",
    "from everyday",
    "osko",
    "payid",
    "bpay",
)

DEFAULT_CONFIG = MatchingConfig(
    weight_amount=0.45,
    weight_date=0.25,
    weight_description=0.05,
    weight_account=0.25,
    keyword_bonus=0.05,
    rule_bonus=0.10,
    amount_tolerance_cents=300,
    date_window_days=7,
    pairing_min_score=0.5,
    categorization_min_confidence=0.0,
    transfer_keywords=TRANSFER_KEYWORDS,
)

_config_cache: MatchingConfig | None = None


def _from_yaml(path: Path, base: MatchingConfig) -> MatchingConfig:
    raw = yaml.safe_load(path.read_text()) or {}
    pairing = raw.get("pairing", {})
    weights = pairing.get("weights", {})
    bonuses = pairing.get("bonuses", {})
    tolerances = pairing.get("tolerances", {})
    categorization = raw.get("categorization", {})
    keywords = pairing.get("transfer_keywords")

    return MatchingConfig(
        weight_amount=float(weights.get("amount", base.weight_amount)),
        weight_date=float(weights.get("date", base.weight_date)),
        weight_description=float(weights.get("description", base.weight_description)),
        weight_account=float(weights.get("account", base.weight_account)),
        keyword_bonus=float(bonuses.get("keyword", base.keyword_bonus)),
        rule_bonus=float(bonuses.get("rule", base.rule_bonus)),
        amount_tolerance_cents=int(tolerances.get("amount_cents", base.amount_tolerance_cents)),
        date_window_days=int(tolerances.get("date_days", base.date_window_days)),
        pairing_min_score=float(pairing.get("min_score", base.pairing_min_score)),
        categorization_min_confidence=float(
            categorization.get("min_confidence", base.categorization_min_confidence)
        ),
        transfer_keywords=tuple(k.lower() for k in keywords) if keywords else base.transfer_keywords,
    )


def load_matching_config(force_reload: bool = False) -> MatchingConfig:
    """Load matching configuration from YAML if available.

    Caches the result to avoid repeated disk I/O.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    config_path = settings.matching_config_path

    if config_path.exists():
        try:
            config = _from_yaml(config_path, config)
        except (OSError, yaml.YAMLError, TypeError, ValueError, AttributeError) as e:
            logger.warning(
                "Failed to load matching config - using defaults",
                config_path=str(config_path),
                error=str(e),
                error_type=type(e).__name__,
            )

    min_score_env = os.getenv("PAIRING_MIN_SCORE")
    min_confidence_env = os.getenv("CATEGORIZATION_MIN_CONFIDENCE")
    if min_score_env:
        config = replace(config, pairing_min_score=float(min_score_env))
    if min_confidence_env:
        config = replace(config, categorization_min_confidence=float(min_confidence_env))

    _config_cache = config
    return config
