from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, NoReturn

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from bankrecon.config import settings
from bankrecon.errors import ConflictError, IntegrityViolation, NotFoundError, ValidationError
from bankrecon.models.models import (
    SYSTEM_ACTOR,
    BankTransaction,
    CandidateKind,
    Invoice,
    InvoiceStatus,
    ItemStatus,
    ItemTransition,
    MatchMethod,
    Payment,
    ReconciliationBatch,
    ReconciliationItem,
)
from bankrecon.services.batches import BatchService
from bankrecon.services.repositories import SqlCandidateRepository
from bankrecon.services.rules import RuleStore
from bankrecon.utils.dates import utcnow
from bankrecon.utils.matching import MatchResult, ScoredCandidate, rank_candidates
from bankrecon.utils.scoring import BankTxn, ScoringRule
from bankrecon.utils.serialization import json_loads_or_empty, stable_json_dumps

logger = logging.getLogger(__name__)

MANUAL_MATCH_FROM = (ItemStatus.UNMATCHED, ItemStatus.MATCHED, ItemStatus.PENDING)
UNMATCH_FROM = (ItemStatus.APPLIED, ItemStatus.MANUALLY_MATCHED)


def candidate_key(kind: CandidateKind, candidate_id: int) -> str:
    return f"{kind.value}:{candidate_id}"


class ItemService:
    """Lifecycle of reconciliation items.

    Every public mutation is meant to run inside one database transaction:
    the item change, its audit row, the reconciled flags on the bank
    transaction and the candidate, and the batch counters commit together.
    Counters always describe current states: ``matched_count`` counts
    APPLIED items, ``manual_count`` the ones an operator applied, and
    ``unmatched_count`` is ``total - matched``.
    """

    def __init__(self, db: Session) -> None:
        self.db = db
        self.batches = BatchService(db)

    # ---------------------------
    # Reads
    # ---------------------------

    def get_item(self, item_id: int) -> ReconciliationItem:
        item = self.db.get(ReconciliationItem, item_id)
        if item is None:
            raise NotFoundError("Reconciliation item not found")
        return item

    def history(self, item_id: int) -> list[ItemTransition]:
        self.get_item(item_id)
        stmt = select(ItemTransition).where(ItemTransition.item_id == item_id).order_by(ItemTransition.id)
        return list(self.db.scalars(stmt))

    def suggest_candidates(self, item_id: int, rule: ScoringRule | None = None) -> list[ScoredCandidate]:
        item = self.get_item(item_id)
        business_id = item.batch.business_id
        txn = self.db.get(BankTransaction, item.bank_transaction_id)
        if txn is None:
            raise NotFoundError("Bank transaction not found")

        effective = rule or RuleStore(self.db).effective_rule(business_id)
        candidates = SqlCandidateRepository(self.db).candidates(
            business_id=business_id,
            start=txn.transaction_date - timedelta(days=settings.candidate_days_before),
            end=txn.transaction_date + timedelta(days=settings.candidate_days_after),
        )
        return rank_candidates(
            BankTxn.from_record(txn),
            candidates,
            effective,
            min_score=settings.suggestion_min_score,
            limit=settings.suggestion_limit,
        )

    # ---------------------------
    # Transitions
    # ---------------------------

    def create_item(self, *, batch_id: int, txn: BankTxn, result: MatchResult, rule: ScoringRule) -> ReconciliationItem:
        status = ItemStatus.MATCHED if result.qualified else ItemStatus.UNMATCHED
        cand = result.candidate
        item = ReconciliationItem(
            batch_id=batch_id,
            bank_transaction_id=txn.id,
            rule_id=rule.rule_id,
            bank_amount=txn.amount,
            bank_date=txn.transaction_date,
            bank_description=txn.description,
            matched_candidate_kind=cand.kind if cand else None,
            matched_candidate_id=cand.id if cand else None,
            matched_amount=cand.amount if cand else None,
            match_score=result.score,
            match_method=MatchMethod.AUTO if cand else None,
            status=status,
        )
        self.db.add(item)
        self.db.flush()

        detail: dict[str, Any] = {"score": result.score}
        if result.breakdown is not None:
            detail["breakdown"] = result.breakdown.as_dict()
        if cand is not None:
            detail["candidate"] = candidate_key(cand.kind, cand.id)
        self._record(item, None, status, SYSTEM_ACTOR, detail=detail)

        self.batches.adjust_counters(batch_id, total_transactions=1, unmatched_count=1)
        self._flush()
        return item

    def auto_apply(self, item_id: int, rule: ScoringRule) -> bool:
        """Apply a freshly matched item when its score reaches the auto threshold."""
        item = self.get_item(item_id)
        if item.status != ItemStatus.MATCHED or item.match_score < rule.auto_match_score:
            return False
        self._apply(item, actor=SYSTEM_ACTOR, method=MatchMethod.AUTO)
        return True

    def apply_match(self, item_id: int, resolved_by: str) -> tuple[ReconciliationItem, bool]:
        """Apply the item's matched candidate. Returns ``(item, changed)``.

        Applying an APPLIED item again is a no-op.
        """
        item = self.get_item(item_id)
        if item.status == ItemStatus.APPLIED:
            if item.matched_candidate_id is None:
                self._integrity_error(item, "applied item has no matched candidate")
            return item, False
        if item.matched_candidate_id is None or item.matched_candidate_kind is None:
            raise ConflictError("No match to apply")
        if item.status not in (ItemStatus.MATCHED, ItemStatus.MANUALLY_MATCHED):
            raise ConflictError(f"Item in status {item.status.value} cannot be applied")

        method = MatchMethod.AUTO if resolved_by == SYSTEM_ACTOR else MatchMethod.MANUAL
        self._apply(item, actor=resolved_by, method=method)
        return item, True

    def manual_match(
        self,
        item_id: int,
        *,
        candidate_kind: CandidateKind,
        candidate_id: int,
        resolved_by: str,
        notes: str | None = None,
    ) -> ReconciliationItem:
        item = self.get_item(item_id)
        if item.status not in MANUAL_MATCH_FROM:
            raise ConflictError(f"Item in status {item.status.value} cannot be matched manually")

        batch = self.db.get(ReconciliationBatch, item.batch_id)
        cand = SqlCandidateRepository(self.db).get_candidate(
            business_id=batch.business_id, kind=candidate_kind, candidate_id=candidate_id
        )
        if cand is None:
            raise NotFoundError(f"{candidate_kind.value.title()} {candidate_id} not found")

        previous = item.status
        item.matched_candidate_kind = cand.kind
        item.matched_candidate_id = cand.id
        item.matched_amount = cand.amount
        item.match_score = 100
        item.match_method = MatchMethod.MANUAL
        item.notes = notes
        self._record(item, previous, ItemStatus.MANUALLY_MATCHED, resolved_by, reason=notes,
                     detail={"candidate": candidate_key(cand.kind, cand.id)})
        self._flush()

        self._apply(item, actor=resolved_by, method=MatchMethod.MANUAL)
        logger.info("Manual match applied", extra={"item_id": item.id, "candidate": candidate_key(cand.kind, cand.id), "actor": resolved_by})
        return item

    def mark_exception(self, item_id: int, *, notes: str, resolved_by: str) -> ReconciliationItem:
        if not (notes or "").strip():
            raise ValidationError("Notes are required to mark an exception")
        item = self.get_item(item_id)
        if item.status == ItemStatus.APPLIED:
            raise ConflictError("Applied items must be unmatched before they can be marked as exceptions")

        previous = item.status
        item.notes = notes
        item.resolved_by = resolved_by
        item.resolved_at = utcnow()
        self._record(item, previous, ItemStatus.EXCEPTION, resolved_by, reason=notes)
        self._flush()
        logger.info("Item marked as exception", extra={"item_id": item.id, "actor": resolved_by})
        return item

    def reopen(self, item_id: int, *, by: str, reason: str | None = None) -> ReconciliationItem:
        item = self.get_item(item_id)
        if item.status != ItemStatus.EXCEPTION:
            raise ConflictError("Only exceptions can be reopened")
        item.resolved_by = None
        item.resolved_at = None
        if reason:
            item.notes = reason
        self._record(item, ItemStatus.EXCEPTION, ItemStatus.PENDING, by, reason=reason)
        self._flush()
        return item

    def unmatch(self, item_id: int, *, reason: str, by: str) -> ReconciliationItem:
        """Reverse an applied match and return the item to PENDING."""
        if not (reason or "").strip():
            raise ValidationError("A reason is required to unmatch")
        item = self.get_item(item_id)
        if item.status not in UNMATCH_FROM or item.applied_at is None:
            raise ConflictError("Item is not matched")
        if item.matched_candidate_id is None or item.matched_candidate_kind is None:
            self._integrity_error(item, "applied item has no matched candidate")

        kind, cand_id = item.matched_candidate_kind, item.matched_candidate_id
        key = candidate_key(kind, cand_id)

        res = self.db.execute(
            update(BankTransaction)
            .where(
                and_(
                    BankTransaction.id == item.bank_transaction_id,
                    BankTransaction.is_reconciled.is_(True),
                    BankTransaction.reconciled_with == key,
                )
            )
            .values(is_reconciled=False, reconciled_with=None, reconciled_at=None)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Bank transaction is no longer reconciled against this item's candidate")

        if kind == CandidateKind.INVOICE:
            prior = self._prior_invoice_status(item)
            res = self.db.execute(
                update(Invoice)
                .where(and_(Invoice.id == cand_id, Invoice.reconciled.is_(True)))
                .values(reconciled=False, status=prior)
                .execution_options(synchronize_session=False)
            )
        else:
            res = self.db.execute(
                update(Payment)
                .where(and_(Payment.id == cand_id, Payment.reconciled.is_(True)))
                .values(reconciled=False)
                .execution_options(synchronize_session=False)
            )
        if res.rowcount != 1:
            raise ConflictError(f"{key} is not reconciled")

        was_manual = item.match_method == MatchMethod.MANUAL
        self.batches.adjust_counters(
            item.batch_id, matched_count=-1, unmatched_count=1, manual_count=-1 if was_manual else 0
        )

        previous = item.status
        item.matched_candidate_kind = None
        item.matched_candidate_id = None
        item.matched_amount = None
        item.match_score = 0
        item.match_method = None
        item.resolved_by = None
        item.resolved_at = None
        item.applied_at = None
        item.notes = reason
        self._record(item, previous, ItemStatus.PENDING, by, reason=reason, detail={"candidate": key})
        self._flush()
        logger.info("Match removed", extra={"item_id": item.id, "candidate": key, "actor": by})
        return item

    # ---------------------------
    # Internals
    # ---------------------------

    def _apply(self, item: ReconciliationItem, *, actor: str, method: MatchMethod) -> None:
        if item.matched_candidate_id is None or item.matched_candidate_kind is None:
            self._integrity_error(item, "apply reached without a matched candidate")

        kind, cand_id = item.matched_candidate_kind, item.matched_candidate_id
        key = candidate_key(kind, cand_id)
        now = utcnow()

        res = self.db.execute(
            update(BankTransaction)
            .where(and_(BankTransaction.id == item.bank_transaction_id, BankTransaction.is_reconciled.is_(False)))
            .values(is_reconciled=True, reconciled_with=key, reconciled_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError("Bank transaction is already reconciled")

        detail: dict[str, Any] = {"candidate": key, "method": method.value}
        if kind == CandidateKind.INVOICE:
            prior = self.db.scalar(select(Invoice.status).where(Invoice.id == cand_id))
            detail["candidate_prior_status"] = prior.value if prior else None
            res = self.db.execute(
                update(Invoice)
                .where(and_(Invoice.id == cand_id, Invoice.reconciled.is_(False)))
                .values(reconciled=True, status=InvoiceStatus.paid)
                .execution_options(synchronize_session=False)
            )
        else:
            res = self.db.execute(
                update(Payment)
                .where(and_(Payment.id == cand_id, Payment.reconciled.is_(False)))
                .values(reconciled=True)
                .execution_options(synchronize_session=False)
            )
        if res.rowcount != 1:
            raise ConflictError(f"{key} is already reconciled")

        self.batches.adjust_counters(
            item.batch_id,
            matched_count=1,
            unmatched_count=-1,
            manual_count=1 if method == MatchMethod.MANUAL else 0,
        )

        previous = item.status
        item.match_method = method
        item.resolved_by = actor
        item.resolved_at = now
        item.applied_at = now
        self._record(item, previous, ItemStatus.APPLIED, actor, detail=detail)
        self._flush()
        logger.info("Match applied", extra={"item_id": item.id, "candidate": key, "actor": actor})

    def _prior_invoice_status(self, item: ReconciliationItem) -> InvoiceStatus:
        stmt = (
            select(ItemTransition.detail_json)
            .where(and_(ItemTransition.item_id == item.id, ItemTransition.to_status == ItemStatus.APPLIED))
            .order_by(ItemTransition.id.desc())
            .limit(1)
        )
        prior = json_loads_or_empty(self.db.scalar(stmt)).get("candidate_prior_status")
        return InvoiceStatus(prior) if prior else InvoiceStatus.open

    def _record(
        self,
        item: ReconciliationItem,
        from_status: ItemStatus | None,
        to_status: ItemStatus,
        actor: str,
        *,
        reason: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        item.status = to_status
        self.db.add(
            ItemTransition(
                item_id=item.id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                reason=reason,
                detail_json=stable_json_dumps(detail or {}),
            )
        )

    def _flush(self) -> None:
        try:
            self.db.flush()
        except StaleDataError as e:
            raise ConflictError("Item was modified concurrently; re-fetch and retry") from e

    def _integrity_error(self, item: ReconciliationItem, message: str) -> NoReturn:
        logger.error("Reconciliation integrity violation: %s", message, extra={"item_id": item.id, "status": item.status.value})
        raise IntegrityViolation(f"Item {item.id}: {message}")
