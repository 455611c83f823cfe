"""Individual verification item decisions and administrator overrides."""

from fastapi import APIRouter, Depends, Request

from settlement.models import Actor, DecideItemRequest, OverrideItemRequest, VerificationItem
from settlement.routes.deps import get_actor
from settlement.workflow.sessions import SessionWorkflow

router = APIRouter(prefix="/api")


def _get_workflow(request: Request) -> SessionWorkflow:
    return request.app.state.workflow


@router.patch("/items/{item_id}", response_model=VerificationItem)
async def decide_item(
    item_id: str,
    body: DecideItemRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> VerificationItem:
    """Record the owning business's decision on one transaction."""
    return _get_workflow(request).decide_item(
        item_id,
        actor,
        verified=body.verified,
        decision=body.verification_decision,
        rejection_reason=body.rejection_reason,
        business_notes=body.business_notes,
    )


@router.post("/items/{item_id}/override", response_model=VerificationItem)
async def override_item(
    item_id: str,
    body: OverrideItemRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> VerificationItem:
    """Administrator correction of an already decided item."""
    return _get_workflow(request).override_item(
        item_id,
        actor,
        verified=body.verified,
        override_reason=body.override_reason,
        decision=body.verification_decision,
        rejection_reason=body.rejection_reason,
        business_notes=body.business_notes,
    )
