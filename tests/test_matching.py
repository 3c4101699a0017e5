from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal

from bankrecon.models.models import CandidateKind, TransactionDirection
from bankrecon.services.rules import default_rule
from bankrecon.utils.matching import rank_candidates, select_best_match
from bankrecon.utils.scoring import BankTxn, Candidate

RULE = default_rule()


def make_txn(direction=TransactionDirection.CREDIT) -> BankTxn:
    return BankTxn(
        id=1,
        amount=Decimal("500.00"),
        direction=direction,
        transaction_date=datetime(2024, 3, 5),
        reference="ORD-77",
        counterparty_name="Globex",
    )


def cand(cid: int, *, amount="500.00", reference="ORD-77", kind=CandidateKind.INVOICE, party="Globex") -> Candidate:
    return Candidate(
        kind=kind,
        id=cid,
        reference=reference,
        amount=Decimal(amount),
        date=datetime(2024, 3, 5),
        counterparty_name=party,
    )


def test_empty_candidates():
    result = select_best_match(make_txn(), [], RULE)
    assert result.candidate is None
    assert result.score == 0
    assert not result.qualified


def test_single_candidate_below_threshold_keeps_score():
    weak = cand(1, reference="OTHER", party=None)  # amount 20 + date 10
    result = select_best_match(make_txn(), [weak], RULE)
    assert result.candidate is None
    assert result.score == 30


def test_highest_score_wins():
    result = select_best_match(make_txn(), [cand(1, amount="100"), cand(2)], RULE)
    assert result.candidate.id == 2
    assert result.score == 100
    assert result.breakdown.total == 100


def test_ties_keep_input_order():
    first = cand(1, kind=CandidateKind.INVOICE)
    second = cand(2, kind=CandidateKind.PAYMENT)
    result = select_best_match(make_txn(), [first, second], RULE)
    assert result.candidate is first


def test_threshold_is_inclusive():
    result = select_best_match(make_txn(), [cand(1, party=None)], replace(RULE, min_match_score=90))
    assert result.score == 90
    assert result.qualified


def test_debit_transactions_are_not_scored():
    result = select_best_match(make_txn(TransactionDirection.DEBIT), [cand(1)], RULE)
    assert result.candidate is None
    assert result.score == 0


def test_rank_candidates_sorts_filters_and_truncates():
    cands = [cand(1, reference="X", party=None), cand(2), cand(3, amount="1"), cand(4, amount="498")]
    ranked = rank_candidates(make_txn(), cands, RULE, min_score=30, limit=2)
    assert [s.candidate.id for s in ranked] == [2, 4]
    assert ranked[0].score >= ranked[1].score

    everything = rank_candidates(make_txn(), cands, RULE, min_score=0, limit=10)
    assert len(everything) == 4
