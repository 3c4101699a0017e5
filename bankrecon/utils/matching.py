from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from bankrecon.models.models import TransactionDirection
from bankrecon.utils.scoring import BankTxn, Candidate, ScoreBreakdown, ScoringRule, compute_score


@dataclass(frozen=True)
class MatchResult:
    candidate: Candidate | None
    score: int
    breakdown: ScoreBreakdown | None = None

    @property
    def qualified(self) -> bool:
        return self.candidate is not None


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    breakdown: ScoreBreakdown

    @property
    def score(self) -> int:
        return self.breakdown.total


def _eligible(txn: BankTxn, candidates: Sequence[Candidate]) -> Sequence[Candidate]:
    # Receivables and payments only settle against money coming in.
    if txn.direction != TransactionDirection.CREDIT:
        return ()
    return candidates


def select_best_match(txn: BankTxn, candidates: Sequence[Candidate], rule: ScoringRule) -> MatchResult:
    """Pick the highest-scoring candidate at or above ``rule.min_match_score``.

    Ties keep the first candidate in input order. When the best score is
    below the threshold the candidate is dropped but the score is kept.
    """
    best: Candidate | None = None
    best_breakdown: ScoreBreakdown | None = None
    best_score = 0

    for cand in _eligible(txn, candidates):
        sb = compute_score(txn, cand, rule)
        if best is None or sb.total > best_score:
            best, best_breakdown, best_score = cand, sb, sb.total

    if best is None or best_score < rule.min_match_score:
        return MatchResult(candidate=None, score=best_score, breakdown=best_breakdown)
    return MatchResult(candidate=best, score=best_score, breakdown=best_breakdown)


def rank_candidates(
    txn: BankTxn,
    candidates: Sequence[Candidate],
    rule: ScoringRule,
    *,
    min_score: int = 30,
    limit: int = 10,
) -> list[ScoredCandidate]:
    scored = [ScoredCandidate(candidate=c, breakdown=compute_score(txn, c, rule)) for c in _eligible(txn, candidates)]
    scored.sort(key=lambda s: s.score, reverse=True)
    return [s for s in scored if s.score >= min_score][:limit]
