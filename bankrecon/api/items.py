from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from bankrecon.db.deps import get_db
from bankrecon.errors import ConflictError, NotFoundError, UpstreamUnavailable, ValidationError
from bankrecon.schemas.common import ActionResult
from bankrecon.schemas.item import (
    ApplyMatchRequest,
    CandidateOut,
    ExceptionRequest,
    ItemOut,
    ManualMatchRequest,
    ReopenRequest,
    TransitionOut,
    UnmatchRequest,
)
from bankrecon.services.items import ItemService

router = APIRouter(prefix="/reconciliation/items", tags=["reconciliation-items"])


@router.get("/{item_id}", response_model=ItemOut)
def get_item(item_id: int, db: Session = Depends(get_db)):
    try:
        return ItemService(db).get_item(item_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Reconciliation item not found")


@router.get("/{item_id}/history", response_model=list[TransitionOut])
def get_history(item_id: int, db: Session = Depends(get_db)):
    try:
        return ItemService(db).history(item_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Reconciliation item not found")


@router.get("/{item_id}/candidates", response_model=list[CandidateOut])
def suggest_candidates(item_id: int, db: Session = Depends(get_db)):
    try:
        ranked = ItemService(db).suggest_candidates(item_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UpstreamUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [
        CandidateOut(
            kind=s.candidate.kind,
            id=s.candidate.id,
            reference=s.candidate.reference,
            amount=s.candidate.amount,
            date=s.candidate.date,
            counterparty_name=s.candidate.counterparty_name,
            score=s.score,
            breakdown=s.breakdown.as_dict(),
        )
        for s in ranked
    ]


@router.post("/{item_id}/apply", response_model=ActionResult)
def apply_match(item_id: int, payload: ApplyMatchRequest, db: Session = Depends(get_db)):
    try:
        item, changed = ItemService(db).apply_match(item_id, payload.resolved_by)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Reconciliation item not found")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ActionResult(item_id=item.id, status=item.status.value, changed=changed)


@router.post("/{item_id}/manual-match", response_model=ActionResult)
def manual_match(item_id: int, payload: ManualMatchRequest, db: Session = Depends(get_db)):
    try:
        item = ItemService(db).manual_match(
            item_id,
            candidate_kind=payload.candidate_kind,
            candidate_id=payload.candidate_id,
            notes=payload.notes,
            resolved_by=payload.resolved_by,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ActionResult(item_id=item.id, status=item.status.value)


@router.post("/{item_id}/exception", response_model=ActionResult)
def mark_exception(item_id: int, payload: ExceptionRequest, db: Session = Depends(get_db)):
    try:
        item = ItemService(db).mark_exception(item_id, notes=payload.notes, resolved_by=payload.resolved_by)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Reconciliation item not found")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ActionResult(item_id=item.id, status=item.status.value)


@router.post("/{item_id}/unmatch", response_model=ActionResult)
def unmatch(item_id: int, payload: UnmatchRequest, db: Session = Depends(get_db)):
    try:
        item = ItemService(db).unmatch(item_id, reason=payload.reason, by=payload.by)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Reconciliation item not found")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ActionResult(item_id=item.id, status=item.status.value)


@router.post("/{item_id}/reopen", response_model=ActionResult)
def reopen(item_id: int, payload: ReopenRequest, db: Session = Depends(get_db)):
    try:
        item = ItemService(db).reopen(item_id, by=payload.by, reason=payload.reason)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Reconciliation item not found")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ActionResult(item_id=item.id, status=item.status.value)
