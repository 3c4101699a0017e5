from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from bankrecon.api.deps import get_orchestrator
from bankrecon.db.deps import get_db
from bankrecon.errors import ConflictError, NotFoundError, ValidationError
from bankrecon.schemas.batch import AutoRunOut, BatchDetailOut, BatchOut, BatchWindow, SummaryOut, SummaryPeriod
from bankrecon.schemas.item import ItemOut, ItemPage
from bankrecon.services.batches import MAX_PAGE_LIMIT, BatchService
from bankrecon.services.orchestrator import BatchOrchestrator

router = APIRouter(tags=["reconciliation"])


@router.post("/businesses/{business_id}/reconciliation/batches", response_model=BatchOut, status_code=status.HTTP_202_ACCEPTED)
def start_batch(
    business_id: int,
    payload: BatchWindow | None = None,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.start_batch(business_id, payload)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Business not found")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/reconciliation/auto-run", response_model=AutoRunOut)
def auto_run(payload: BatchWindow | None = None, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.run_for_all_businesses(payload)
    return AutoRunOut(
        total=result.total,
        processed=result.processed,
        errors=result.errors,
        batch_ids=[b.id for b in result.batches],
    )


@router.get("/businesses/{business_id}/reconciliation/batches", response_model=list[BatchOut])
def list_batches(business_id: int, db: Session = Depends(get_db)):
    return BatchService(db).list_batches(business_id=business_id)


@router.get("/reconciliation/batches/{batch_id}", response_model=BatchDetailOut)
def get_batch(batch_id: int, db: Session = Depends(get_db)):
    try:
        return BatchService(db).get_batch(batch_id, with_items=True)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")


@router.get("/reconciliation/batches/{batch_id}/unmatched", response_model=ItemPage)
def list_unmatched_items(
    batch_id: int,
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_LIMIT),
):
    try:
        items, pagination = BatchService(db).list_unmatched_items(batch_id=batch_id, page=page, limit=limit)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Batch not found")
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return ItemPage(items=[ItemOut.model_validate(i) for i in items], pagination=pagination)


@router.get("/businesses/{business_id}/reconciliation/summary", response_model=SummaryOut)
def get_summary(
    business_id: int,
    db: Session = Depends(get_db),
    period: SummaryPeriod = Query(default="month"),
):
    return BatchService(db).get_summary(business_id=business_id, period=period)
