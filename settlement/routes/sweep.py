"""Scheduler hooks: deadline sweep and reminder dispatch."""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request

from settlement.models import Actor, SweepRequest, SweepResult
from settlement.routes.deps import get_actor, require_admin
from settlement.workflow.sweep import DeadlineSweeper

router = APIRouter(prefix="/api")


def _get_sweeper(request: Request) -> DeadlineSweeper:
    return request.app.state.sweeper


@router.post("/sweep", response_model=SweepResult)
async def sweep_deadlines(
    request: Request,
    body: Optional[SweepRequest] = None,
    actor: Actor = Depends(get_actor),
) -> SweepResult:
    """Auto-approve or expire every session whose deadline has passed."""
    require_admin(actor)
    return _get_sweeper(request).sweep_deadlines(body.now if body else None)


@router.post("/reminders", response_model=Dict[str, int])
async def dispatch_reminders(
    request: Request,
    body: Optional[SweepRequest] = None,
    actor: Actor = Depends(get_actor),
) -> Dict[str, int]:
    require_admin(actor)
    return {"sent": _get_sweeper(request).dispatch_deadline_reminders(body.now if body else None)}
