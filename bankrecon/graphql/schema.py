from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

import strawberry
from fastapi import Depends
from sqlalchemy.orm import Session
from strawberry.fastapi import BaseContext, GraphQLRouter
from strawberry.types import Info

from bankrecon.api.deps import get_orchestrator
from bankrecon.db.deps import get_db
from bankrecon.models.models import (
    BatchStatus,
    CandidateKind,
    ItemStatus,
    MatchingRule,
    ReconciliationBatch,
    ReconciliationItem,
)
from bankrecon.schemas.batch import BatchWindow
from bankrecon.schemas.rule import MatchingRuleCreate, MatchingRuleUpdate
from bankrecon.services.batches import BatchService
from bankrecon.services.items import ItemService
from bankrecon.services.orchestrator import BatchOrchestrator
from bankrecon.services.rules import RuleStore


# ---------------------------
# GraphQL context (per request)
# ---------------------------

class Context(BaseContext):
    def __init__(self, db: Session, orchestrator: BatchOrchestrator) -> None:
        super().__init__()
        self.db = db
        self.orchestrator = orchestrator


async def get_context(
    db: Session = Depends(get_db),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> Context:
    return Context(db=db, orchestrator=orchestrator)


# ---------------------------
# GraphQL Types
# ---------------------------

GBatchStatus = strawberry.enum(BatchStatus, name="BatchStatus")
GItemStatus = strawberry.enum(ItemStatus, name="ItemStatus")
GCandidateKind = strawberry.enum(CandidateKind, name="CandidateKind")


@strawberry.type
class ItemType:
    id: int
    batch_id: int
    bank_transaction_id: int
    bank_amount: float
    bank_date: datetime
    bank_description: str | None
    matched_candidate_kind: GCandidateKind | None
    matched_candidate_id: int | None
    match_score: int
    status: GItemStatus
    resolved_by: str | None
    notes: str | None


@strawberry.type
class BatchType:
    id: int
    business_id: int
    batch_number: str
    start_date: datetime
    end_date: datetime
    status: GBatchStatus
    total_transactions: int
    matched_count: int
    unmatched_count: int
    manual_count: int
    failed_count: int
    items: list[ItemType]


@strawberry.type
class StatusCountType:
    status: str
    count: int


@strawberry.type
class SummaryType:
    period: str
    batch_count: int
    total_transactions: int
    matched_count: int
    unmatched_count: int
    manual_match_count: int
    auto_match_rate_percent: int
    items_by_status: list[StatusCountType]


@strawberry.type
class TransitionType:
    id: int
    from_status: GItemStatus | None
    to_status: GItemStatus
    actor: str
    reason: str | None
    created_at: datetime


@strawberry.type
class CandidateType:
    kind: GCandidateKind
    id: int
    reference: str | None
    amount: float
    date: datetime
    counterparty_name: str | None
    score: int


@strawberry.type
class RuleType:
    id: int
    business_id: int
    name: str
    description: str | None
    priority: int
    is_active: bool
    amount_tolerance_percent: float
    date_tolerance_days: int
    min_match_score: int
    auto_match_score: int
    reference_weight: int
    exact_amount_weight: int
    fuzzy_amount_weight: int
    date_proximity_weight: int
    counterparty_weight: int


@strawberry.type
class ActionResultType:
    item_id: int
    status: GItemStatus
    changed: bool


@strawberry.type
class AutoRunType:
    total: int
    processed: int
    errors: int
    batch_ids: list[int]


@strawberry.input
class BatchWindowInput:
    start_date: datetime | None = None
    end_date: datetime | None = None


@strawberry.input
class ManualMatchInput:
    candidate_kind: GCandidateKind
    candidate_id: int
    notes: str | None = None


@strawberry.input
class RuleInput:
    name: str | None = None
    description: str | None = None
    priority: int | None = None
    amount_tolerance_percent: float | None = None
    date_tolerance_days: int | None = None
    min_match_score: int | None = None
    auto_match_score: int | None = None
    reference_weight: int | None = None
    exact_amount_weight: int | None = None
    fuzzy_amount_weight: int | None = None
    date_proximity_weight: int | None = None
    counterparty_weight: int | None = None


def rule_fields(input: RuleInput) -> dict:
    return {k: v for k, v in vars(input).items() if v is not None}


def to_item(i: ReconciliationItem) -> ItemType:
    return ItemType(
        id=i.id,
        batch_id=i.batch_id,
        bank_transaction_id=i.bank_transaction_id,
        bank_amount=float(i.bank_amount),
        bank_date=i.bank_date,
        bank_description=i.bank_description,
        matched_candidate_kind=i.matched_candidate_kind,
        matched_candidate_id=i.matched_candidate_id,
        match_score=i.match_score,
        status=i.status,
        resolved_by=i.resolved_by,
        notes=i.notes,
    )


def to_batch(b: ReconciliationBatch, items: list[ReconciliationItem] | None = None) -> BatchType:
    return BatchType(
        id=b.id,
        business_id=b.business_id,
        batch_number=b.batch_number,
        start_date=b.start_date,
        end_date=b.end_date,
        status=b.status,
        total_transactions=b.total_transactions,
        matched_count=b.matched_count,
        unmatched_count=b.unmatched_count,
        manual_count=b.manual_count,
        failed_count=b.failed_count,
        items=[to_item(i) for i in items or []],
    )


def to_rule(r: MatchingRule) -> RuleType:
    return RuleType(
        id=r.id,
        business_id=r.business_id,
        name=r.name,
        description=r.description,
        priority=r.priority,
        is_active=r.is_active,
        amount_tolerance_percent=r.amount_tolerance_percent,
        date_tolerance_days=r.date_tolerance_days,
        min_match_score=r.min_match_score,
        auto_match_score=r.auto_match_score,
        reference_weight=r.reference_weight,
        exact_amount_weight=r.exact_amount_weight,
        fuzzy_amount_weight=r.fuzzy_amount_weight,
        date_proximity_weight=r.date_proximity_weight,
        counterparty_weight=r.counterparty_weight,
    )


def to_result(item: ReconciliationItem, changed: bool = True) -> ActionResultType:
    return ActionResultType(item_id=item.id, status=item.status, changed=changed)


@contextmanager
def atomic(info: Info) -> Iterator[Session]:
    """Roll back a failed mutation.

    Strawberry reports resolver errors in the response body, so they never
    reach ``get_db`` and its commit would keep the partial writes.
    """
    db = info.context.db
    try:
        yield db
    except Exception:
        db.rollback()
        raise


# ---------------------------
# Query
# ---------------------------

@strawberry.type
class Query:
    @strawberry.field
    def batch(self, info: Info, batch_id: int) -> BatchType:
        b = BatchService(info.context.db).get_batch(batch_id, with_items=True)
        return to_batch(b, b.items)

    @strawberry.field
    def unmatched_items(self, info: Info, batch_id: int, page: int = 1, limit: int = 20) -> list[ItemType]:
        items, _ = BatchService(info.context.db).list_unmatched_items(batch_id=batch_id, page=page, limit=limit)
        return [to_item(i) for i in items]

    @strawberry.field
    def item_history(self, info: Info, item_id: int) -> list[TransitionType]:
        return [
            TransitionType(
                id=t.id,
                from_status=t.from_status,
                to_status=t.to_status,
                actor=t.actor,
                reason=t.reason,
                created_at=t.created_at,
            )
            for t in ItemService(info.context.db).history(item_id)
        ]

    @strawberry.field
    def item_candidates(self, info: Info, item_id: int) -> list[CandidateType]:
        return [
            CandidateType(
                kind=s.candidate.kind,
                id=s.candidate.id,
                reference=s.candidate.reference,
                amount=float(s.candidate.amount),
                date=s.candidate.date,
                counterparty_name=s.candidate.counterparty_name,
                score=s.score,
            )
            for s in ItemService(info.context.db).suggest_candidates(item_id)
        ]

    @strawberry.field
    def rules(self, info: Info, business_id: int, include_inactive: bool = False) -> list[RuleType]:
        store = RuleStore(info.context.db)
        return [to_rule(r) for r in store.list_rules(business_id=business_id, include_inactive=include_inactive)]

    @strawberry.field
    def summary(self, info: Info, business_id: int, period: str = "month") -> SummaryType:
        if period not in ("week", "month", "year"):
            raise ValueError("period must be one of week, month, year")
        s = BatchService(info.context.db).get_summary(business_id=business_id, period=period)
        return SummaryType(
            period=s.period,
            batch_count=s.batch_count,
            total_transactions=s.total_transactions,
            matched_count=s.matched_count,
            unmatched_count=s.unmatched_count,
            manual_match_count=s.manual_match_count,
            auto_match_rate_percent=s.auto_match_rate_percent,
            items_by_status=[StatusCountType(status=k, count=v) for k, v in sorted(s.items_by_status.items())],
        )


# ---------------------------
# Mutation
# ---------------------------

@strawberry.type
class Mutation:
    @strawberry.field
    def start_batch(self, info: Info, business_id: int, window: BatchWindowInput | None = None) -> BatchType:
        w = BatchWindow(start_date=window.start_date, end_date=window.end_date) if window else None
        return to_batch(info.context.orchestrator.start_batch(business_id, w))

    @strawberry.field
    def auto_run(self, info: Info, window: BatchWindowInput | None = None) -> AutoRunType:
        w = BatchWindow(start_date=window.start_date, end_date=window.end_date) if window else None
        out = info.context.orchestrator.run_for_all_businesses(w)
        return AutoRunType(total=out.total, processed=out.processed, errors=out.errors,
                           batch_ids=[b.id for b in out.batches])

    @strawberry.field
    def apply_match(self, info: Info, item_id: int, resolved_by: str) -> ActionResultType:
        with atomic(info) as db:
            item, changed = ItemService(db).apply_match(item_id, resolved_by)
        return to_result(item, changed)

    @strawberry.field
    def manual_match(self, info: Info, item_id: int, input: ManualMatchInput, resolved_by: str) -> ActionResultType:
        with atomic(info) as db:
            item = ItemService(db).manual_match(
                item_id,
                candidate_kind=CandidateKind(input.candidate_kind.value),
                candidate_id=input.candidate_id,
                notes=input.notes,
                resolved_by=resolved_by,
            )
        return to_result(item)

    @strawberry.field
    def mark_exception(self, info: Info, item_id: int, notes: str, resolved_by: str) -> ActionResultType:
        with atomic(info) as db:
            return to_result(ItemService(db).mark_exception(item_id, notes=notes, resolved_by=resolved_by))

    @strawberry.field
    def unmatch(self, info: Info, item_id: int, reason: str, by: str) -> ActionResultType:
        with atomic(info) as db:
            return to_result(ItemService(db).unmatch(item_id, reason=reason, by=by))

    @strawberry.field
    def reopen(self, info: Info, item_id: int, by: str, reason: str | None = None) -> ActionResultType:
        with atomic(info) as db:
            return to_result(ItemService(db).reopen(item_id, by=by, reason=reason))

    @strawberry.field
    def create_rule(self, info: Info, business_id: int, input: RuleInput) -> RuleType:
        with atomic(info) as db:
            rule = RuleStore(db).create_rule(business_id=business_id, data=MatchingRuleCreate(**rule_fields(input)))
            return to_rule(rule)

    @strawberry.field
    def update_rule(self, info: Info, rule_id: int, input: RuleInput) -> RuleType:
        with atomic(info) as db:
            return to_rule(RuleStore(db).update_rule(rule_id, MatchingRuleUpdate(**rule_fields(input))))

    @strawberry.field
    def deactivate_rule(self, info: Info, rule_id: int) -> RuleType:
        with atomic(info) as db:
            return to_rule(RuleStore(db).deactivate_rule(rule_id))


schema = strawberry.Schema(query=Query, mutation=Mutation)
graphql_router = GraphQLRouter(schema, context_getter=get_context)
