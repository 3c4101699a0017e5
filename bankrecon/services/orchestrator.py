from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from bankrecon.config import settings
from bankrecon.db.session import SessionLocal, session_scope
from bankrecon.errors import ConflictError, NotFoundError, ReconciliationError, UpstreamUnavailable
from bankrecon.models.models import BatchStatus, MatchingRule, ReconciliationBatch
from bankrecon.schemas.batch import BatchWindow
from bankrecon.services.batches import BatchService
from bankrecon.services.events import BATCH_COMPLETED, BATCH_FAILED, EventPublisher, build_event_publisher
from bankrecon.services.items import ItemService
from bankrecon.services.repositories import BankFeed, CandidateRepository, SqlBankFeed, SqlCandidateRepository
from bankrecon.services.rules import RuleStore
from bankrecon.utils.dates import utcnow
from bankrecon.utils.matching import select_best_match
from bankrecon.utils.scoring import BankTxn, ScoringRule

logger = logging.getLogger(__name__)


@dataclass
class AutoRunResult:
    total: int
    processed: int = 0
    errors: int = 0
    batches: list[ReconciliationBatch] = field(default_factory=list)


class BatchRunner:
    """Runs batch jobs off the request path."""

    def submit(self, fn: Callable[..., object], *args: object) -> Future:
        raise NotImplementedError

    def shutdown(self, wait: bool = True) -> None:
        return None


class ThreadPoolRunner(BatchRunner):
    def __init__(self, max_workers: int | None = None) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers or settings.worker_count, thread_name_prefix="recon-batch")

    def submit(self, fn: Callable[..., object], *args: object) -> Future:
        return self._pool.submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


class InlineRunner(BatchRunner):
    """Runs the job before ``submit`` returns; the future carries its outcome."""

    def submit(self, fn: Callable[..., object], *args: object) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as e:
            future.set_exception(e)
        return future


class BatchOrchestrator:
    """Creates batches and drives matching for each bank transaction.

    Holds configuration and collaborators only; all state lives in the
    database and every unit of work opens its own session.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        runner: BatchRunner | None = None,
        publisher: EventPublisher | None = None,
        bank_feed_factory: Callable[..., BankFeed] | None = None,
        candidates_factory: Callable[..., CandidateRepository] | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.runner = runner or ThreadPoolRunner()
        self.publisher = publisher or build_event_publisher()
        self.bank_feed_factory = bank_feed_factory or SqlBankFeed
        self.candidates_factory = candidates_factory or SqlCandidateRepository
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.futures: OrderedDict[int, Future] = OrderedDict()

    def _business_lock(self, business_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(business_id, threading.Lock())

    # ---------------------------
    # Entry points
    # ---------------------------

    def start_batch(self, business_id: int, window: BatchWindow | None = None) -> ReconciliationBatch:
        """Persist an IN_PROGRESS batch and hand processing to the runner."""
        window = window or BatchWindow()
        batch = None
        for attempt in range(settings.batch_number_attempts):
            try:
                with session_scope(self.session_factory) as db:
                    batch = BatchService(db).create_batch(
                        business_id=business_id,
                        start_date=window.start_date,
                        end_date=window.end_date,
                        attempt=attempt,
                    )
                break
            except IntegrityError:
                logger.warning("Batch number collision, retrying", extra={"business_id": business_id, "attempt": attempt})
        if batch is None:
            raise ConflictError("Could not allocate a unique batch number")

        logger.info(
            "Reconciliation batch started",
            extra={"batch_id": batch.id, "batch_number": batch.batch_number, "business_id": business_id},
        )
        self._track(batch.id, self.runner.submit(self.process_batch, batch.id))
        return batch

    def _track(self, batch_id: int, future: Future) -> None:
        with self._locks_guard:
            self.futures[batch_id] = future
            while len(self.futures) > settings.tracked_batches:
                self.futures.popitem(last=False)

    def run_for_all_businesses(self, window: BatchWindow | None = None) -> AutoRunResult:
        """Start one batch for every business with an active matching rule.

        Defaults to the trailing ``auto_run_window_hours``. A failing business
        is logged and counted; the rest still run.
        """
        if window is None:
            end = utcnow()
            window = BatchWindow(start_date=end - timedelta(hours=settings.auto_run_window_hours), end_date=end)
        with session_scope(self.session_factory) as db:
            business_ids = sorted(
                db.scalars(select(MatchingRule.business_id).where(MatchingRule.is_active.is_(True)).distinct())
            )

        result = AutoRunResult(total=len(business_ids))
        for business_id in business_ids:
            try:
                result.batches.append(self.start_batch(business_id, window))
                result.processed += 1
            except ReconciliationError as e:
                result.errors += 1
                logger.warning(
                    "Auto reconciliation failed for business",
                    extra={"business_id": business_id, "error": str(e)},
                )
        logger.info(
            "Auto reconciliation run finished",
            extra={"total": result.total, "processed": result.processed, "errors": result.errors},
        )
        return result

    # ---------------------------
    # Processing
    # ---------------------------

    def process_batch(self, batch_id: int) -> ReconciliationBatch:
        with session_scope(self.session_factory) as db:
            batch = BatchService(db).get_batch(batch_id)
            business_id = batch.business_id
            start, end = batch.start_date, batch.end_date
            if batch.status != BatchStatus.IN_PROGRESS:
                raise ConflictError(f"Batch {batch.batch_number} is already {batch.status.value}")

        with self._business_lock(business_id):
            try:
                with session_scope(self.session_factory) as db:
                    rule = RuleStore(db).effective_rule(business_id)
                    transactions = self.bank_feed_factory(db).unreconciled_transactions(
                        business_id=business_id, start=start, end=end
                    )

                for txn in transactions:
                    self._process_transaction(batch_id, business_id, txn, rule)

                with session_scope(self.session_factory) as db:
                    batch = BatchService(db).mark_completed(batch_id)
            except Exception as e:
                self._fail(batch_id, e)
                raise

        logger.info(
            "Reconciliation batch completed",
            extra={
                "batch_id": batch_id,
                "total_transactions": batch.total_transactions,
                "matched_count": batch.matched_count,
                "unmatched_count": batch.unmatched_count,
                "failed_count": batch.failed_count,
            },
        )
        self.publisher.publish(
            BATCH_COMPLETED,
            {"batch_id": batch_id, "matched_count": batch.matched_count, "unmatched_count": batch.unmatched_count},
        )
        return batch

    def _process_transaction(self, batch_id: int, business_id: int, txn: BankTxn, rule: ScoringRule) -> None:
        try:
            with session_scope(self.session_factory) as db:
                candidates = self.candidates_factory(db).candidates(
                    business_id=business_id,
                    start=txn.transaction_date - timedelta(days=settings.candidate_days_before),
                    end=txn.transaction_date + timedelta(days=settings.candidate_days_after),
                )
                result = select_best_match(txn, candidates, rule)
                item = ItemService(db).create_item(batch_id=batch_id, txn=txn, result=result, rule=rule)
                item_id = item.id
        except (UpstreamUnavailable, TimeoutError) as e:
            logger.warning(
                "Bank transaction could not be processed",
                extra={"batch_id": batch_id, "bank_transaction_id": txn.id, "error": str(e)},
            )
            with session_scope(self.session_factory) as db:
                BatchService(db).record_failure(batch_id=batch_id, bank_transaction_id=txn.id, error=str(e) or type(e).__name__)
            return

        if not result.qualified or result.score < rule.auto_match_score:
            return
        try:
            with session_scope(self.session_factory) as db:
                ItemService(db).auto_apply(item_id, rule)
        except ConflictError as e:
            # another batch or operator got there first; the item stays MATCHED for review
            logger.warning("Auto-apply skipped", extra={"batch_id": batch_id, "item_id": item_id, "error": str(e)})

    def _fail(self, batch_id: int, error: Exception) -> None:
        logger.exception("Batch reconciliation failed", extra={"batch_id": batch_id})
        message = str(error) or type(error).__name__
        with session_scope(self.session_factory) as db:
            BatchService(db).mark_failed(batch_id, message)
        self.publisher.publish(BATCH_FAILED, {"batch_id": batch_id, "error": message})

    def wait(self, batch_id: int, timeout: float | None = None) -> ReconciliationBatch:
        """Block until a batch started by this orchestrator finishes."""
        with self._locks_guard:
            future = self.futures.get(batch_id)
        if future is None:
            raise NotFoundError(f"Batch {batch_id} is not tracked by this orchestrator")
        return future.result(timeout=timeout)

