from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeout
from sqlalchemy.orm import Session, selectinload

from bankrecon.errors import UpstreamUnavailable
from bankrecon.models.models import (
    BankTransaction,
    CandidateKind,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
)
from bankrecon.utils.dates import as_naive_utc
from bankrecon.utils.scoring import BankTxn, Candidate

logger = logging.getLogger(__name__)


class CandidateRepository:
    """Read-only source of open receivables and unreconciled payments."""

    def unmatched_receivables(self, *, business_id: int, start: datetime, end: datetime) -> list[Candidate]:
        raise NotImplementedError

    def unmatched_payments(self, *, business_id: int, start: datetime, end: datetime) -> list[Candidate]:
        raise NotImplementedError

    def candidates(self, *, business_id: int, start: datetime, end: datetime) -> list[Candidate]:
        # Receivables first, then payments; selector ties depend on this order.
        return [
            *self.unmatched_receivables(business_id=business_id, start=start, end=end),
            *self.unmatched_payments(business_id=business_id, start=start, end=end),
        ]


class BankFeed:
    def unreconciled_transactions(self, *, business_id: int, start: datetime, end: datetime) -> list[BankTxn]:
        raise NotImplementedError


def invoice_candidate(inv: Invoice) -> Candidate:
    return Candidate(
        kind=CandidateKind.INVOICE,
        id=inv.id,
        reference=inv.invoice_number,
        amount=Decimal(str(inv.amount)),
        date=as_naive_utc(inv.invoice_date),
        counterparty_name=inv.counterparty_name,
    )


def payment_candidate(pay: Payment) -> Candidate:
    reference = pay.transaction_ref or (pay.invoice.invoice_number if pay.invoice else None)
    return Candidate(
        kind=CandidateKind.PAYMENT,
        id=pay.id,
        reference=reference,
        amount=Decimal(str(pay.amount)),
        date=pay.paid_at,
        counterparty_name=pay.counterparty_name,
    )


class SqlCandidateRepository(CandidateRepository):
    def __init__(self, db: Session) -> None:
        self.db = db

    def unmatched_receivables(self, *, business_id: int, start: datetime, end: datetime) -> list[Candidate]:
        stmt = (
            select(Invoice)
            .where(
                and_(
                    Invoice.business_id == business_id,
                    Invoice.status.in_([InvoiceStatus.open, InvoiceStatus.partially_paid]),
                    Invoice.reconciled.is_(False),
                    Invoice.invoice_date >= start.date(),
                    Invoice.invoice_date <= end.date(),
                )
            )
            .order_by(Invoice.id)
        )
        try:
            return [invoice_candidate(inv) for inv in self.db.scalars(stmt)]
        except (OperationalError, PoolTimeout) as e:
            raise UpstreamUnavailable(f"receivables lookup failed: {e}") from e

    def unmatched_payments(self, *, business_id: int, start: datetime, end: datetime) -> list[Candidate]:
        stmt = (
            select(Payment)
            .options(selectinload(Payment.invoice))
            .where(
                and_(
                    Payment.business_id == business_id,
                    Payment.status == PaymentStatus.completed,
                    Payment.reconciled.is_(False),
                    Payment.paid_at >= start,
                    Payment.paid_at <= end,
                )
            )
            .order_by(Payment.id)
        )
        try:
            return [payment_candidate(p) for p in self.db.scalars(stmt)]
        except (OperationalError, PoolTimeout) as e:
            raise UpstreamUnavailable(f"payments lookup failed: {e}") from e

    def get_candidate(self, *, business_id: int, kind: CandidateKind, candidate_id: int) -> Candidate | None:
        if kind == CandidateKind.INVOICE:
            inv = self.db.get(Invoice, candidate_id)
            if inv is None or inv.business_id != business_id:
                return None
            return invoice_candidate(inv)
        pay = self.db.get(Payment, candidate_id)
        if pay is None or pay.business_id != business_id:
            return None
        return payment_candidate(pay)


class SqlBankFeed(BankFeed):
    def __init__(self, db: Session) -> None:
        self.db = db

    def unreconciled_transactions(self, *, business_id: int, start: datetime, end: datetime) -> list[BankTxn]:
        stmt = (
            select(BankTransaction)
            .where(
                and_(
                    BankTransaction.business_id == business_id,
                    BankTransaction.is_reconciled.is_(False),
                    BankTransaction.transaction_date >= start,
                    BankTransaction.transaction_date <= end,
                )
            )
            .order_by(BankTransaction.transaction_date, BankTransaction.id)
        )
        try:
            rows = list(self.db.scalars(stmt))
        except (OperationalError, PoolTimeout) as e:
            raise UpstreamUnavailable(f"bank feed lookup failed: {e}") from e
        logger.debug("Loaded %d unreconciled bank transactions", len(rows), extra={"business_id": business_id})
        return [BankTxn.from_record(r) for r in rows]
