from __future__ import annotations

from pydantic import BaseModel, Field


class OrmBase(BaseModel):
    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    total: int
    pages: int


class ActionResult(BaseModel):
    success: bool = True
    item_id: int
    status: str
    changed: bool = True
