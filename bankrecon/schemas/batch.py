from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, model_validator

from bankrecon.models.models import BatchStatus
from bankrecon.schemas.common import OrmBase
from bankrecon.schemas.item import ItemOut


class BatchWindow(BaseModel):
    start_date: datetime | None = None
    end_date: datetime | None = None

    @model_validator(mode="after")
    def _ordered(self) -> BatchWindow:
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class BatchOut(OrmBase):
    id: int
    business_id: int
    batch_number: str
    start_date: datetime
    end_date: datetime
    status: BatchStatus
    total_transactions: int
    matched_count: int
    unmatched_count: int
    manual_count: int
    failed_count: int
    error: str | None
    started_at: datetime
    completed_at: datetime | None


class BatchFailureOut(OrmBase):
    id: int
    bank_transaction_id: int
    error: str
    created_at: datetime


class BatchDetailOut(BatchOut):
    items: list[ItemOut]
    failures: list[BatchFailureOut]


SummaryPeriod = Literal["week", "month", "year"]


class SummaryOut(BaseModel):
    period: SummaryPeriod
    batch_count: int
    total_transactions: int
    matched_count: int
    unmatched_count: int
    manual_match_count: int
    auto_match_rate_percent: int
    items_by_status: dict[str, int]


class AutoRunOut(BaseModel):
    total: int
    processed: int
    errors: int
    batch_ids: list[int]
