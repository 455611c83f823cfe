"""Payment batch endpoints (administrators create, release and cancel)."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status

from settlement.models import (
    Actor,
    BatchDetail,
    BatchStatus,
    CancelBatchRequest,
    CreateBatchRequest,
    PaymentBatch,
)
from settlement.routes.deps import get_actor
from settlement.workflow.batches import BatchManager

router = APIRouter(prefix="/api")


def _get_manager(request: Request) -> BatchManager:
    """Retrieve the batch manager from application state."""
    return request.app.state.manager


@router.post("/batches", response_model=PaymentBatch, status_code=status.HTTP_201_CREATED)
def create_batch(
    body: CreateBatchRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> PaymentBatch:
    """Create a weekly batch with its verification session.

    Declared sync so the optional advisory HTTP calls run in the threadpool.
    """
    return _get_manager(request).create_batch(
        business_id=body.business_id,
        week_number=body.week_number,
        year_number=body.year_number,
        transactions=body.transactions,
        actor=actor,
        deadline=body.deadline,
        auto_approval_enabled=body.auto_approval_enabled,
        release=body.release,
    )


@router.get("/batches", response_model=List[PaymentBatch])
async def list_batches(
    request: Request,
    business_id: Optional[str] = None,
    batch_status: Optional[BatchStatus] = None,
    actor: Actor = Depends(get_actor),
) -> List[PaymentBatch]:
    return _get_manager(request).list_batches(actor, business_id=business_id, status=batch_status)


@router.get("/batches/{batch_id}", response_model=BatchDetail)
async def get_batch(
    batch_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> BatchDetail:
    return _get_manager(request).get_batch(batch_id, actor)


@router.post("/batches/{batch_id}/release", response_model=PaymentBatch)
async def release_batch(
    batch_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> PaymentBatch:
    return _get_manager(request).release_batch(batch_id, actor)


@router.post("/batches/{batch_id}/cancel", response_model=PaymentBatch)
async def cancel_batch(
    batch_id: str,
    body: CancelBatchRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> PaymentBatch:
    return _get_manager(request).cancel_batch(batch_id, actor, body.reason)


@router.post("/batches/{batch_id}/recompute", response_model=PaymentBatch)
async def recompute_totals(
    batch_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> PaymentBatch:
    return _get_manager(request).recompute_totals(batch_id, actor)
