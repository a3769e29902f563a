"""SQLAlchemy models package."""

from reconciler.models.account import Account, AccountLink, AccountType, Owner, account_owners
from reconciler.models.candidate import (
    CandidateDecision,
    CandidateStatus,
    CategorizationCandidate,
    PairingCandidate,
)
from reconciler.models.ledger import LedgerTransaction, TransactionStatus, TransactionType
from reconciler.models.staging import StagingStatus, StagingTransaction
from reconciler.models.taxonomy import CategorizationRule, Subcategory

__all__ = [
    "Account",
    "AccountLink",
    "AccountType",
    "CandidateDecision",
    "CandidateStatus",
    "CategorizationCandidate",
    "CategorizationRule",
    "LedgerTransaction",
    "Owner",
    "PairingCandidate",
    "StagingStatus",
    "StagingTransaction",
    "Subcategory",
    "TransactionStatus",
    "TransactionType",
    "account_owners",
]
