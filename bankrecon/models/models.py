from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bankrecon.db.base import Base
from bankrecon.utils.dates import utcnow


class TransactionDirection(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class InvoiceStatus(str, enum.Enum):
    open = "open"
    partially_paid = "partially_paid"
    paid = "paid"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class CandidateKind(str, enum.Enum):
    INVOICE = "INVOICE"
    PAYMENT = "PAYMENT"


class BatchStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ItemStatus(str, enum.Enum):
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    MANUALLY_MATCHED = "MANUALLY_MATCHED"
    APPLIED = "APPLIED"
    EXCEPTION = "EXCEPTION"
    PENDING = "PENDING"


class MatchMethod(str, enum.Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


SYSTEM_ACTOR = "SYSTEM"


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ---------------------------
# Records owned by other subsystems; read here and flagged on reconciliation
# ---------------------------

class BankTransaction(Base):
    __tablename__ = "bank_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)

    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    direction: Mapped[TransactionDirection] = mapped_column(Enum(TransactionDirection), nullable=False, default=TransactionDirection.CREDIT)
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    reconciled_with: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("business_id", "external_id", name="uq_tx_business_external_id"),
        Index("ix_tx_business_reconciled_date", "business_id", "is_reconciled", "transaction_date"),
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)

    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    counterparty_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[InvoiceStatus] = mapped_column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.open, server_default=InvoiceStatus.open.value)
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    __table_args__ = (
        Index("ix_invoices_business_status", "business_id", "status"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)

    transaction_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    counterparty_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.completed)
    reconciled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    invoice: Mapped[Invoice | None] = relationship()


# ---------------------------
# Reconciliation state
# ---------------------------

class MatchingRule(Base):
    __tablename__ = "matching_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")

    amount_tolerance_percent: Mapped[float] = mapped_column(Float, nullable=False)
    date_tolerance_days: Mapped[int] = mapped_column(Integer, nullable=False)
    min_match_score: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_match_score: Mapped[int] = mapped_column(Integer, nullable=False)

    reference_weight: Mapped[int] = mapped_column(Integer, nullable=False)
    exact_amount_weight: Mapped[int] = mapped_column(Integer, nullable=False)
    fuzzy_amount_weight: Mapped[int] = mapped_column(Integer, nullable=False)
    date_proximity_weight: Mapped[int] = mapped_column(Integer, nullable=False)
    counterparty_weight: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_rules_business_active_priority", "business_id", "is_active", "priority"),
    )


class ReconciliationBatch(Base):
    __tablename__ = "reconciliation_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[int] = mapped_column(ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_number: Mapped[str] = mapped_column(String(32), nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(Enum(BatchStatus), nullable=False, default=BatchStatus.IN_PROGRESS)

    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    manual_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    items: Mapped[list[ReconciliationItem]] = relationship(
        back_populates="batch",
        order_by=lambda: [ReconciliationItem.status, ReconciliationItem.id],
    )
    failures: Mapped[list[BatchFailure]] = relationship(back_populates="batch", order_by="BatchFailure.id")

    __table_args__ = (
        UniqueConstraint("business_id", "batch_number", name="uq_batch_business_number"),
        Index("ix_batch_business_started", "business_id", "started_at"),
    )


class ReconciliationItem(Base):
    __tablename__ = "reconciliation_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("reconciliation_batches.id", ondelete="CASCADE"), nullable=False, index=True)
    bank_transaction_id: Mapped[int] = mapped_column(ForeignKey("bank_transactions.id"), nullable=False, index=True)
    rule_id: Mapped[int | None] = mapped_column(ForeignKey("matching_rules.id"), nullable=True)

    bank_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    bank_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    bank_description: Mapped[str | None] = mapped_column(Text, nullable=True)

    matched_candidate_kind: Mapped[CandidateKind | None] = mapped_column(Enum(CandidateKind), nullable=True)
    matched_candidate_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    matched_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    match_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    match_method: Mapped[MatchMethod | None] = mapped_column(Enum(MatchMethod), nullable=True)

    status: Mapped[ItemStatus] = mapped_column(Enum(ItemStatus), nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    batch: Mapped[ReconciliationBatch] = relationship(back_populates="items")
    transitions: Mapped[list[ItemTransition]] = relationship(back_populates="item", order_by="ItemTransition.id")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("batch_id", "bank_transaction_id", name="uq_item_batch_transaction"),
        Index("ix_item_batch_status", "batch_id", "status"),
    )


class ItemTransition(Base):
    """Append-only audit trail of item state changes."""

    __tablename__ = "reconciliation_item_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("reconciliation_items.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status: Mapped[ItemStatus | None] = mapped_column(Enum(ItemStatus), nullable=True)
    to_status: Mapped[ItemStatus] = mapped_column(Enum(ItemStatus), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    detail_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    item: Mapped[ReconciliationItem] = relationship(back_populates="transitions")


class BatchFailure(Base):
    __tablename__ = "reconciliation_batch_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("reconciliation_batches.id", ondelete="CASCADE"), nullable=False, index=True)
    bank_transaction_id: Mapped[int] = mapped_column(ForeignKey("bank_transactions.id"), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    batch: Mapped[ReconciliationBatch] = relationship(back_populates="failures")
