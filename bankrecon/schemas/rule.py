from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from bankrecon.config import settings
from bankrecon.errors import ValidationError
from bankrecon.schemas.common import OrmBase

WEIGHT_FIELDS = (
    "reference_weight",
    "exact_amount_weight",
    "fuzzy_amount_weight",
    "date_proximity_weight",
    "counterparty_weight",
)


def check_rule_values(values: dict[str, Any]) -> None:
    """Cross-field checks shared by create and partial update."""
    total = sum(int(values[f]) for f in WEIGHT_FIELDS)
    if total > 100:
        raise ValidationError(f"Matching weights must sum to at most 100 (got {total})")
    if int(values["min_match_score"]) > int(values["auto_match_score"]):
        raise ValidationError("min_match_score cannot exceed auto_match_score")


class MatchingRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    priority: int = Field(default=10, ge=1, le=100)

    amount_tolerance_percent: float = Field(default=settings.amount_tolerance_percent, ge=0, le=10)
    date_tolerance_days: int = Field(default=settings.date_tolerance_days, ge=0, le=30)
    min_match_score: int = Field(default=settings.min_match_score, ge=0, le=100)
    auto_match_score: int = Field(default=settings.auto_match_score, ge=0, le=100)

    reference_weight: int = Field(default=settings.reference_weight, ge=0, le=100)
    exact_amount_weight: int = Field(default=settings.exact_amount_weight, ge=0, le=100)
    fuzzy_amount_weight: int = Field(default=settings.fuzzy_amount_weight, ge=0, le=100)
    date_proximity_weight: int = Field(default=settings.date_proximity_weight, ge=0, le=100)
    counterparty_weight: int = Field(default=settings.counterparty_weight, ge=0, le=100)

    @model_validator(mode="after")
    def _consistent(self) -> MatchingRuleCreate:
        check_rule_values(self.model_dump())
        return self


class MatchingRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    priority: int | None = Field(default=None, ge=1, le=100)

    amount_tolerance_percent: float | None = Field(default=None, ge=0, le=10)
    date_tolerance_days: int | None = Field(default=None, ge=0, le=30)
    min_match_score: int | None = Field(default=None, ge=0, le=100)
    auto_match_score: int | None = Field(default=None, ge=0, le=100)

    reference_weight: int | None = Field(default=None, ge=0, le=100)
    exact_amount_weight: int | None = Field(default=None, ge=0, le=100)
    fuzzy_amount_weight: int | None = Field(default=None, ge=0, le=100)
    date_proximity_weight: int | None = Field(default=None, ge=0, le=100)
    counterparty_weight: int | None = Field(default=None, ge=0, le=100)


class MatchingRuleOut(OrmBase):
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
    created_at: datetime
    updated_at: datetime
