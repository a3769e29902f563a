"""Tests for transfer pairing."""

from datetime import date

import pytest

from reconciler.errors import AlreadyDecidedError, NotFoundError, ValidationError
from reconciler.models import CandidateStatus, CategorizationCandidate, StagingStatus
from reconciler.schemas.pairing import PairingSuggestParams
from reconciler.services import pairing
from tests.factories import (
    AccountFactory,
    AccountLinkFactory,
    CategorizationCandidateFactory,
    CategorizationRuleFactory,
    OwnerFactory,
    StagingTransactionFactory,
    SubcategoryFactory,
)


async def _transfer(db, *, credit_day: int = 6, credit_amount: int = 10000):
    owner = await OwnerFactory.create_async(db)
    everyday = await AccountFactory.create_async(db, name="Everyday", owners=[owner])
    savings = await AccountFactory.create_async(db, name="Savings", owners=[owner])
    debit = await StagingTransactionFactory.create_async(
        db,
        description="TRANSFER TO SAVINGS",
        amount=-10000,
        transaction_date=date(2024, 1, 5),
        account_number=everyday.account_number,
    )
    credit = await StagingTransactionFactory.create_async(
        db,
        description="TRANSFER FROM EVERYDAY",
        amount=credit_amount,
        transaction_date=date(2024, 1, credit_day),
        account_number=savings.account_number,
    )
    return debit, credit


@pytest.mark.asyncio
async def test_transfer_between_owned_accounts_scores_high(db) -> None:
    debit, credit = await _transfer(db)

    result = await pairing.suggest_pairings(db)

    assert result.debits == 1
    assert result.credits == 1
    assert result.pairs_generated == 1
    candidate = result.candidates[0]
    assert (candidate.left_id, candidate.right_id) == (debit.id, credit.id)
    assert candidate.score >= 0.9
    assert candidate.preselected is True
    assert candidate.status == CandidateStatus.PENDING
    assert candidate.reasons["days"] == 1
    assert candidate.reasons["amtDiffCents"] == 0
    assert candidate.reasons["accountRelation"] == 1.0
    assert candidate.reasons["keywordBonus"] == pytest.approx(0.05)
    assert "ruleMatched" not in candidate.reasons


@pytest.mark.asyncio
async def test_transfer_scores_high_without_matching_descriptions(db) -> None:
    owner = await OwnerFactory.create_async(db)
    everyday = await AccountFactory.create_async(db, owners=[owner])
    savings = await AccountFactory.create_async(db, owners=[owner])
    await StagingTransactionFactory.create_async(
        db,
        description="PAYMENT 8812",
        amount=-10000,
        transaction_date=date(2024, 1, 5),
        account_number=everyday.account_number,
    )
    await StagingTransactionFactory.create_async(
        db,
        description="DEPOSIT ABC",
        amount=10000,
        transaction_date=date(2024, 1, 6),
        account_number=savings.account_number,
    )

    candidate = (await pairing.suggest_pairings(db)).candidates[0]

    assert candidate.reasons["keywordBonus"] == 0.0
    assert candidate.reasons["descScore"] < 0.5
    assert candidate.score >= 0.9375


@pytest.mark.asyncio
async def test_registered_account_link_counts_as_relation(db) -> None:
    first = await AccountFactory.create_async(db)
    second = await AccountFactory.create_async(db)
    await AccountLinkFactory.create_async(db, account_a_id=second.id, account_b_id=first.id)
    await StagingTransactionFactory.create_async(db, amount=-500, account_number=first.account_number)
    await StagingTransactionFactory.create_async(db, amount=500, account_number=second.account_number)

    result = await pairing.suggest_pairings(db)

    assert result.candidates[0].reasons["accountRelation"] == 1.0


@pytest.mark.asyncio
async def test_candidates_outside_tolerance_or_window_are_skipped(db) -> None:
    await _transfer(db, credit_amount=10500)
    assert (await pairing.suggest_pairings(db)).pairs_generated == 0

    wide = await pairing.suggest_pairings(db, PairingSuggestParams(amount_tolerance_cents=1000))
    assert wide.pairs_generated == 1

    narrow = await pairing.suggest_pairings(
        db, PairingSuggestParams(amount_tolerance_cents=1000, date_window_days=0)
    )
    assert narrow.pairs_generated == 0


@pytest.mark.asyncio
async def test_same_account_rows_are_never_paired(db) -> None:
    account = await AccountFactory.create_async(db)
    await StagingTransactionFactory.create_async(db, amount=-2500, account_number=account.account_number)
    await StagingTransactionFactory.create_async(db, amount=2500, account_number=account.account_number)

    assert (await pairing.suggest_pairings(db)).pairs_generated == 0


@pytest.mark.asyncio
async def test_top_k_keeps_best_and_preselects_first(db) -> None:
    debit, near = await _transfer(db)
    far = await StagingTransactionFactory.create_async(
        db, description="DEPOSIT", amount=10000, transaction_date=date(2024, 1, 10)
    )

    result = await pairing.suggest_pairings(db, PairingSuggestParams(min_score=0.0))
    assert [c.right_id for c in result.candidates] == [near.id, far.id]
    assert [c.preselected for c in result.candidates] == [True, False]

    limited = await pairing.suggest_pairings(db, PairingSuggestParams(min_score=0.0, top_k=1))
    assert [c.right_id for c in limited.candidates] == [near.id]
    assert len(await pairing.list_pairing_candidates(db)) == 1


@pytest.mark.asyncio
async def test_pairing_rule_adds_bonus(db) -> None:
    subcategory = await SubcategoryFactory.create_async(db, name="Internal transfer")
    await CategorizationRuleFactory.create_async(
        db,
        id="transfer-pair",
        name="Savings sweep",
        subcategory_id=subcategory.id,
        confidence=0.95,
        conditions={
            "criteria": [
                {"type": "flow", "direction": "OUT"},
                {"type": "linked", "conditions": {"criteria": [{"type": "keywords", "values": ["from everyday"]}]}},
            ]
        },
    )
    await _transfer(db)

    reasons = (await pairing.suggest_pairings(db)).candidates[0].reasons

    assert reasons["ruleMatched"] is True
    assert reasons["ruleId"] == "transfer-pair"
    assert reasons["ruleName"] == "Savings sweep"
    assert reasons["ruleBonus"] == pytest.approx(0.10)


@pytest.mark.asyncio
async def test_confirm_links_rows_and_rejects_siblings(db) -> None:
    debit, credit = await _transfer(db)
    other_credit = await StagingTransactionFactory.create_async(
        db, description="TRANSFER FROM EVERYDAY", amount=10000, transaction_date=date(2024, 1, 7)
    )
    await pairing.suggest_pairings(db)

    result = await pairing.confirm_pairing(db, debit.id, credit.id)

    assert result.rejected_siblings == 1
    for row, other in ((debit, credit), (credit, debit)):
        assert row.linked_staging_id == other.id
        assert row.transfer_group_id == result.transfer_group_id
        assert row.status == StagingStatus.APPROVED
        assert row.categorized is True

    decided = {
        (c.left_id, c.right_id): c.status for c in await pairing.list_pairing_candidates(db, pending_only=False)
    }
    assert decided[(debit.id, credit.id)] == CandidateStatus.ACCEPTED
    assert decided[(debit.id, other_credit.id)] == CandidateStatus.REJECTED


@pytest.mark.asyncio
async def test_confirm_twice_fails(db) -> None:
    debit, credit = await _transfer(db)
    await pairing.suggest_pairings(db)
    await pairing.confirm_pairing(db, debit.id, credit.id)

    with pytest.raises(AlreadyDecidedError):
        await pairing.confirm_pairing(db, debit.id, credit.id)


@pytest.mark.asyncio
async def test_confirm_without_candidate_records_manual_pairing(db) -> None:
    debit, credit = await _transfer(db, credit_day=20)

    result = await pairing.confirm_pairing(db, debit.id, credit.id)

    [candidate] = await pairing.list_pairing_candidates(db, pending_only=False)
    assert candidate.id == result.candidate_id
    assert candidate.status == CandidateStatus.ACCEPTED
    assert candidate.reasons["manual"] is True
    assert candidate.reasons["days"] == 15


@pytest.mark.asyncio
async def test_confirm_validates_direction_and_existence(db) -> None:
    debit, credit = await _transfer(db)

    with pytest.raises(ValidationError):
        await pairing.confirm_pairing(db, credit.id, debit.id)
    with pytest.raises(NotFoundError):
        await pairing.confirm_pairing(db, debit.id, 9999)


@pytest.mark.asyncio
async def test_rejected_pair_is_not_proposed_again(db) -> None:
    debit, credit = await _transfer(db)
    await pairing.suggest_pairings(db)

    rejected = await pairing.reject_pairing(db, debit.id, credit.id)
    assert rejected.status == CandidateStatus.REJECTED

    again = await pairing.suggest_pairings(db)
    assert again.pairs_generated == 0
    assert len(await pairing.list_pairing_candidates(db, pending_only=False)) == 1


@pytest.mark.asyncio
async def test_reject_unknown_pair(db) -> None:
    with pytest.raises(NotFoundError):
        await pairing.reject_pairing(db, 1, 2)


@pytest.mark.asyncio
async def test_regeneration_replaces_pending_and_clear_keeps_decided(db) -> None:
    debit, credit = await _transfer(db)
    await pairing.suggest_pairings(db)
    second = await pairing.suggest_pairings(db)

    pending = await pairing.list_pairing_candidates(db)
    assert [c.id for c in pending] == [second.candidates[0].id]

    await pairing.reject_pairing(db, debit.id, credit.id)
    assert await pairing.clear_pairing_candidates(db) == 0
    assert len(await pairing.list_pairing_candidates(db, pending_only=False, left_id=debit.id)) == 1


@pytest.mark.asyncio
async def test_paired_rows_are_not_suggested_again(db) -> None:
    debit, credit = await _transfer(db)
    await pairing.confirm_pairing(db, debit.id, credit.id)

    result = await pairing.suggest_pairings(db)

    assert result.debits == 0
    assert result.credits == 0


@pytest.mark.asyncio
async def test_confirm_rejects_pending_categorizations_of_both_rows(db) -> None:
    groceries = await SubcategoryFactory.create_async(db, name="Groceries")
    debit, credit = await _transfer(db)
    suggestions = [
        await CategorizationCandidateFactory.create_async(
            db, staging_transaction_id=row.id, suggested_subcategory_id=groceries.id
        )
        for row in (debit, credit)
    ]

    result = await pairing.confirm_pairing(db, debit.id, credit.id)

    assert result.rejected_categorizations == 2
    for suggestion in suggestions:
        closed = await db.get(CategorizationCandidate, suggestion.id, populate_existing=True)
        assert closed.status == CandidateStatus.REJECTED
