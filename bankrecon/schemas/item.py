from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from bankrecon.models.models import CandidateKind, ItemStatus, MatchMethod
from bankrecon.schemas.common import OrmBase, Pagination


class ItemOut(OrmBase):
    id: int
    batch_id: int
    bank_transaction_id: int
    rule_id: int | None
    bank_amount: Decimal
    bank_date: datetime
    bank_description: str | None
    matched_candidate_kind: CandidateKind | None
    matched_candidate_id: int | None
    matched_amount: Decimal | None
    match_score: int
    match_method: MatchMethod | None
    status: ItemStatus
    resolved_by: str | None
    resolved_at: datetime | None
    applied_at: datetime | None
    notes: str | None


class ItemPage(BaseModel):
    items: list[ItemOut]
    pagination: Pagination


class TransitionOut(OrmBase):
    id: int
    item_id: int
    from_status: ItemStatus | None
    to_status: ItemStatus
    actor: str
    reason: str | None
    detail_json: str
    created_at: datetime


class ApplyMatchRequest(BaseModel):
    resolved_by: str = Field(min_length=1, max_length=128)


class ManualMatchRequest(BaseModel):
    candidate_kind: CandidateKind
    candidate_id: int
    notes: str | None = Field(default=None, max_length=500)
    resolved_by: str = Field(min_length=1, max_length=128)


class ExceptionRequest(BaseModel):
    notes: str = Field(max_length=500)
    resolved_by: str = Field(min_length=1, max_length=128)


class UnmatchRequest(BaseModel):
    reason: str = Field(max_length=500)
    by: str = Field(min_length=1, max_length=128)


class ReopenRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    by: str = Field(min_length=1, max_length=128)


class CandidateOut(BaseModel):
    kind: CandidateKind
    id: int
    reference: str | None
    amount: Decimal
    date: datetime
    counterparty_name: str | None
    score: int
    breakdown: dict[str, float]
