from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from bankrecon.models.models import CandidateKind, TransactionDirection
from bankrecon.utils.dates import days_between
from bankrecon.utils.similarity import bigram_similarity

COUNTERPARTY_SIMILARITY_THRESHOLD = 0.7


def _norm(s: str | None) -> str:
    return (s or "").lower().strip()


@dataclass(frozen=True)
class BankTxn:
    id: int
    amount: Decimal
    direction: TransactionDirection
    transaction_date: datetime
    reference: str | None = None
    counterparty_name: str | None = None
    description: str | None = None

    @classmethod
    def from_record(cls, record: Any) -> BankTxn:
        return cls(
            id=record.id,
            amount=Decimal(str(record.amount)),
            direction=TransactionDirection(record.direction),
            transaction_date=record.transaction_date,
            reference=record.reference,
            counterparty_name=record.counterparty_name,
            description=record.description,
        )


@dataclass(frozen=True)
class Candidate:
    """Read-only projection of an open receivable or an unreconciled payment."""

    kind: CandidateKind
    id: int
    reference: str | None
    amount: Decimal
    date: datetime
    counterparty_name: str | None = None


@dataclass(frozen=True)
class ScoringRule:
    rule_id: int | None
    amount_tolerance_percent: float
    date_tolerance_days: int
    min_match_score: int
    auto_match_score: int
    reference_weight: int
    exact_amount_weight: int
    fuzzy_amount_weight: int
    date_proximity_weight: int
    counterparty_weight: int

    @classmethod
    def from_source(cls, source: Any, rule_id: int | None = None) -> ScoringRule:
        """Build from anything carrying the rule fields (a MatchingRule row or Settings)."""
        return cls(
            rule_id=rule_id,
            amount_tolerance_percent=float(source.amount_tolerance_percent),
            date_tolerance_days=int(source.date_tolerance_days),
            min_match_score=int(source.min_match_score),
            auto_match_score=int(source.auto_match_score),
            reference_weight=int(source.reference_weight),
            exact_amount_weight=int(source.exact_amount_weight),
            fuzzy_amount_weight=int(source.fuzzy_amount_weight),
            date_proximity_weight=int(source.date_proximity_weight),
            counterparty_weight=int(source.counterparty_weight),
        )

    @property
    def weight_sum(self) -> int:
        return (
            self.reference_weight
            + self.exact_amount_weight
            + self.fuzzy_amount_weight
            + self.date_proximity_weight
            + self.counterparty_weight
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    reference_score: float
    amount_score: float
    date_score: float
    counterparty_score: float
    total: int

    def as_dict(self) -> dict[str, float]:
        return {
            "reference": self.reference_score,
            "amount": self.amount_score,
            "date": self.date_score,
            "counterparty": self.counterparty_score,
            "total": self.total,
        }


def reference_score(txn_ref: str | None, cand_ref: str | None, weight: int) -> float:
    a, b = _norm(txn_ref), _norm(cand_ref)
    if not a or not b:
        return 0.0
    return float(weight) if (a in b or b in a) else 0.0


def amount_score(bank_amount: Decimal, candidate_amount: Decimal, rule: ScoringRule) -> float:
    if bank_amount == candidate_amount:
        return float(rule.exact_amount_weight)
    if candidate_amount == 0:
        return 0.0
    diff_percent = abs(bank_amount - candidate_amount) / abs(candidate_amount) * 100
    if diff_percent <= Decimal(str(rule.amount_tolerance_percent)):
        return float(rule.fuzzy_amount_weight)
    return 0.0


def date_score(bank_date: datetime, candidate_date: datetime, rule: ScoringRule) -> float:
    d = days_between(bank_date, candidate_date)
    tolerance = rule.date_tolerance_days
    if d > tolerance:
        return 0.0
    if tolerance == 0:
        return float(rule.date_proximity_weight)
    return max(0.0, rule.date_proximity_weight * (1.0 - d / tolerance))


def counterparty_score(bank_party: str | None, candidate_party: str | None, weight: int) -> float:
    a, b = _norm(bank_party), _norm(candidate_party)
    if not a or not b:
        return 0.0
    if a in b or b in a:
        return float(weight)
    sim = bigram_similarity(a, b)
    if sim > COUNTERPARTY_SIMILARITY_THRESHOLD:
        return weight * sim
    return 0.0


def compute_score(txn: BankTxn, candidate: Candidate, rule: ScoringRule) -> ScoreBreakdown:
    """Deterministic additive scoring. Total ranges 0..weight_sum.

    Factors are independent, so a transaction can still qualify on amount
    and date alone:
    - Reference: full weight on case-insensitive containment either way
    - Amount: exact weight, else fuzzy weight within the tolerance percent
    - Date proximity: linear decay to 0 at the date tolerance
    - Counterparty: containment, else weighted bigram similarity above 0.7
    """
    ref = reference_score(txn.reference, candidate.reference, rule.reference_weight)
    amt = amount_score(txn.amount, candidate.amount, rule)
    dt = date_score(txn.transaction_date, candidate.date, rule)
    cp = counterparty_score(txn.counterparty_name, candidate.counterparty_name, rule.counterparty_weight)

    total = int(math.floor(ref + amt + dt + cp + 0.5))
    return ScoreBreakdown(reference_score=ref, amount_score=amt, date_score=dt, counterparty_score=cp, total=total)


def score(txn: BankTxn, candidate: Candidate, rule: ScoringRule) -> int:
    return compute_score(txn, candidate, rule).total
