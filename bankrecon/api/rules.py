from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from bankrecon.db.deps import get_db
from bankrecon.errors import NotFoundError, ValidationError
from bankrecon.schemas.rule import MatchingRuleCreate, MatchingRuleOut, MatchingRuleUpdate
from bankrecon.services.rules import RuleStore

router = APIRouter(tags=["matching-rules"])


@router.post("/businesses/{business_id}/reconciliation/rules", response_model=MatchingRuleOut, status_code=status.HTTP_201_CREATED)
def create_rule(business_id: int, payload: MatchingRuleCreate, db: Session = Depends(get_db)):
    return RuleStore(db).create_rule(business_id=business_id, data=payload)


@router.get("/businesses/{business_id}/reconciliation/rules", response_model=list[MatchingRuleOut])
def list_rules(
    business_id: int,
    db: Session = Depends(get_db),
    include_inactive: bool = Query(default=False),
):
    return RuleStore(db).list_rules(business_id=business_id, include_inactive=include_inactive)


@router.patch("/reconciliation/rules/{rule_id}", response_model=MatchingRuleOut)
def update_rule(rule_id: int, payload: MatchingRuleUpdate, db: Session = Depends(get_db)):
    try:
        return RuleStore(db).update_rule(rule_id, payload)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Matching rule not found")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("/reconciliation/rules/{rule_id}", response_model=MatchingRuleOut)
def deactivate_rule(rule_id: int, db: Session = Depends(get_db)):
    try:
        return RuleStore(db).deactivate_rule(rule_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Matching rule not found")
