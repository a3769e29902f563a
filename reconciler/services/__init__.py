"""Services package."""

from reconciler.services.auto_accept import AutoAcceptMap, get_auto_accept_map, set_auto_accept_map
from reconciler.services.balances import (
    create_ledger_transaction,
    delete_ledger_transaction,
    get_balance_at_date,
    recalculate_all_balances,
    recalculate_balance,
    reconcile_balance,
)
from reconciler.services.categorization import (
    CategorizationMatcher,
    confirm_categorization,
    manual_categorize,
    reject_categorization,
    run_auto_accept_on_staging,
    stream_categorizations,
    suggest_categorizations,
)
from reconciler.services.commit import commit_all
from reconciler.services.matching_config import MatchingConfig, load_matching_config
from reconciler.services.pairing import confirm_pairing, reject_pairing, suggest_pairings
from reconciler.services.rules import RuleEvaluator, RuleMatch, load_rules

__all__ = [
    "AutoAcceptMap",
    "CategorizationMatcher",
    "MatchingConfig",
    "RuleEvaluator",
    "RuleMatch",
    "commit_all",
    "confirm_categorization",
    "confirm_pairing",
    "create_ledger_transaction",
    "delete_ledger_transaction",
    "get_auto_accept_map",
    "get_balance_at_date",
    "load_matching_config",
    "load_rules",
    "manual_categorize",
    "recalculate_all_balances",
    "recalculate_balance",
    "reconcile_balance",
    "reject_categorization",
    "reject_pairing",
    "run_auto_accept_on_staging",
    "set_auto_accept_map",
    "stream_categorizations",
    "suggest_categorizations",
    "suggest_pairings",
]
