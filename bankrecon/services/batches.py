from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session, selectinload

from bankrecon.config import settings
from bankrecon.errors import NotFoundError, ValidationError
from bankrecon.models.models import (
    BatchFailure,
    BatchStatus,
    Business,
    ItemStatus,
    ReconciliationBatch,
    ReconciliationItem,
)
from bankrecon.schemas.batch import SummaryOut, SummaryPeriod
from bankrecon.schemas.common import Pagination
from bankrecon.utils.dates import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

UNRESOLVED_STATUSES = (ItemStatus.UNMATCHED, ItemStatus.PENDING)

PERIOD_DAYS = {"week": 7, "month": 30, "year": 365}
MAX_PAGE_LIMIT = 100


def batch_number_prefix(day: datetime, prefix: str | None = None) -> str:
    return f"{prefix or settings.batch_prefix}{day:%Y%m%d}"


class BatchService:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------------------------
    # Creation and lifecycle
    # ---------------------------

    def next_batch_number(self, *, business_id: int, now: datetime | None = None, offset: int = 0) -> str:
        """``<prefix><YYYYMMDD><NNNN>``; the sequence counts that day's batches for the business.

        Concurrent starters can compute the same number; the unique
        constraint rejects one of them and the caller retries with an offset.
        """
        prefix = batch_number_prefix(now or utcnow())
        count = self.db.scalar(
            select(func.count(ReconciliationBatch.id)).where(
                and_(
                    ReconciliationBatch.business_id == business_id,
                    ReconciliationBatch.batch_number.startswith(prefix),
                )
            )
        )
        return f"{prefix}{(count or 0) + 1 + offset:04d}"

    def create_batch(
        self,
        *,
        business_id: int,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        attempt: int = 0,
    ) -> ReconciliationBatch:
        if self.db.get(Business, business_id) is None:
            raise NotFoundError("Business not found")
        now = utcnow()
        end = as_naive_utc(end_date) if end_date else now
        start = as_naive_utc(start_date) if start_date else now - timedelta(days=settings.default_window_days)

        batch = ReconciliationBatch(
            business_id=business_id,
            batch_number=self.next_batch_number(business_id=business_id, now=now, offset=attempt),
            start_date=start,
            end_date=end,
            status=BatchStatus.IN_PROGRESS,
            started_at=now,
            completed_at=None,
            error=None,
        )
        self.db.add(batch)
        self.db.flush()
        return batch

    def adjust_counters(self, batch_id: int, **deltas: int) -> None:
        """Atomic in-database increments, e.g. ``adjust_counters(1, matched_count=1, unmatched_count=-1)``."""
        values = {name: getattr(ReconciliationBatch, name) + delta for name, delta in deltas.items() if delta}
        if not values:
            return
        self.db.execute(update(ReconciliationBatch).where(ReconciliationBatch.id == batch_id).values(**values))

    def record_failure(self, *, batch_id: int, bank_transaction_id: int, error: str) -> BatchFailure:
        failure = BatchFailure(batch_id=batch_id, bank_transaction_id=bank_transaction_id, error=error)
        self.db.add(failure)
        self.adjust_counters(batch_id, failed_count=1)
        self.db.flush()
        return failure

    def mark_completed(self, batch_id: int) -> ReconciliationBatch:
        batch = self.get_batch(batch_id)
        batch.status = BatchStatus.COMPLETED
        batch.completed_at = utcnow()
        self.db.flush()
        return batch

    def mark_failed(self, batch_id: int, error: str) -> ReconciliationBatch:
        batch = self.get_batch(batch_id)
        batch.status = BatchStatus.FAILED
        batch.error = error
        batch.completed_at = utcnow()
        self.db.flush()
        return batch

    # ---------------------------
    # Queries
    # ---------------------------

    def get_batch(self, batch_id: int, *, with_items: bool = False) -> ReconciliationBatch:
        stmt = select(ReconciliationBatch).where(ReconciliationBatch.id == batch_id)
        if with_items:
            stmt = stmt.options(selectinload(ReconciliationBatch.items), selectinload(ReconciliationBatch.failures))
        batch = self.db.scalar(stmt)
        if batch is None:
            raise NotFoundError("Batch not found")
        # counters are written with UPDATE statements; don't trust the identity map
        self.db.refresh(batch, attribute_names=[
            "status", "total_transactions", "matched_count", "unmatched_count",
            "manual_count", "failed_count", "error", "completed_at",
        ])
        return batch

    def list_batches(self, *, business_id: int) -> list[ReconciliationBatch]:
        stmt = (
            select(ReconciliationBatch)
            .where(ReconciliationBatch.business_id == business_id)
            .order_by(ReconciliationBatch.started_at.desc(), ReconciliationBatch.id.desc())
        )
        return list(self.db.scalars(stmt))

    def list_unmatched_items(self, *, batch_id: int, page: int = 1, limit: int = 20) -> tuple[list[ReconciliationItem], Pagination]:
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_LIMIT}")
        self.get_batch(batch_id)
        where = and_(ReconciliationItem.batch_id == batch_id, ReconciliationItem.status.in_(UNRESOLVED_STATUSES))

        total = self.db.scalar(select(func.count(ReconciliationItem.id)).where(where)) or 0
        stmt = (
            select(ReconciliationItem)
            .where(where)
            .order_by(ReconciliationItem.bank_date.desc(), ReconciliationItem.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = list(self.db.scalars(stmt))
        return items, Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))

    def get_summary(self, *, business_id: int, period: SummaryPeriod = "month", now: datetime | None = None) -> SummaryOut:
        since = (now or utcnow()) - timedelta(days=PERIOD_DAYS[period])
        in_period = and_(ReconciliationBatch.business_id == business_id, ReconciliationBatch.started_at >= since)

        row = self.db.execute(
            select(
                func.count(ReconciliationBatch.id),
                func.coalesce(func.sum(ReconciliationBatch.total_transactions), 0),
                func.coalesce(func.sum(ReconciliationBatch.matched_count), 0),
                func.coalesce(func.sum(ReconciliationBatch.unmatched_count), 0),
                func.coalesce(func.sum(ReconciliationBatch.manual_count), 0),
            ).where(in_period)
        ).one()
        batch_count, total, matched, unmatched, manual = (int(v) for v in row)

        by_status = self.db.execute(
            select(ReconciliationItem.status, func.count(ReconciliationItem.id))
            .join(ReconciliationBatch, ReconciliationItem.batch_id == ReconciliationBatch.id)
            .where(in_period)
            .group_by(ReconciliationItem.status)
        ).all()

        rate = 0
        if total > 0:
            rate = int(math.floor((matched - manual) / total * 100 + 0.5))

        return SummaryOut(
            period=period,
            batch_count=batch_count,
            total_transactions=total,
            matched_count=matched,
            unmatched_count=unmatched,
            manual_match_count=manual,
            auto_match_rate_percent=rate,
            items_by_status={status.value: count for status, count in by_status},
        )
