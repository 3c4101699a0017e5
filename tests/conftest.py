from __future__ import annotations

import os

# the app module builds its default engine at import time
os.environ.setdefault("RECON_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("RECON_EVENT_PUBLISHER", "disabled")

from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bankrecon.db.base import Base
from bankrecon.db.deps import get_db
from bankrecon.db.session import session_scope
from bankrecon.main import create_app
from bankrecon.models import models  # noqa: F401
from bankrecon.models.models import (
    BankTransaction,
    Business,
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    TransactionDirection,
)
from bankrecon.services.events import InMemoryPublisher
from bankrecon.services.orchestrator import BatchOrchestrator, InlineRunner


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, class_=Session, expire_on_commit=False, autoflush=False)
    engine.dispose()


class Seeder:
    """Inserts the externally owned records the engine reads. Every call commits."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _add(self, obj):
        with session_scope(self.session_factory) as db:
            db.add(obj)
            db.flush()
            return obj.id

    def business(self, name: str = "Acme Ltd") -> int:
        return self._add(Business(name=name))

    def bank_txn(
        self,
        business_id: int,
        *,
        amount: str | Decimal,
        when: datetime,
        reference: str | None = None,
        counterparty: str | None = None,
        direction: TransactionDirection = TransactionDirection.CREDIT,
        description: str | None = None,
    ) -> int:
        return self._add(
            BankTransaction(
                business_id=business_id,
                amount=Decimal(str(amount)),
                direction=direction,
                transaction_date=when,
                reference=reference,
                counterparty_name=counterparty,
                description=description,
            )
        )

    def invoice(
        self,
        business_id: int,
        *,
        amount: str | Decimal,
        on: date,
        number: str | None = None,
        counterparty: str | None = None,
        status: InvoiceStatus = InvoiceStatus.open,
    ) -> int:
        return self._add(
            Invoice(
                business_id=business_id,
                amount=Decimal(str(amount)),
                invoice_date=on,
                invoice_number=number,
                counterparty_name=counterparty,
                status=status,
            )
        )

    def payment(
        self,
        business_id: int,
        *,
        amount: str | Decimal,
        paid_at: datetime,
        transaction_ref: str | None = None,
        invoice_id: int | None = None,
        counterparty: str | None = None,
        status: PaymentStatus = PaymentStatus.completed,
    ) -> int:
        return self._add(
            Payment(
                business_id=business_id,
                amount=Decimal(str(amount)),
                paid_at=paid_at,
                transaction_ref=transaction_ref,
                invoice_id=invoice_id,
                counterparty_name=counterparty,
                status=status,
            )
        )

    def get(self, model, pk):
        with session_scope(self.session_factory) as db:
            return db.get(model, pk)


@pytest.fixture()
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture()
def business(seed) -> int:
    return seed.business()


@pytest.fixture()
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture()
def orchestrator(session_factory, publisher) -> BatchOrchestrator:
    return BatchOrchestrator(session_factory=session_factory, runner=InlineRunner(), publisher=publisher)


@pytest.fixture()
def client(session_factory, orchestrator) -> TestClient:
    app = create_app(orchestrator)

    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
