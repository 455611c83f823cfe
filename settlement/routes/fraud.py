"""Fraud assessment and pattern history lookups."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from settlement.errors import PermissionDenied
from settlement.fraud.engine import FraudScorer
from settlement.models import Actor, ActorType, FraudAssessment, FraudPatternRecord
from settlement.routes.deps import get_actor, require_admin

router = APIRouter(prefix="/api")


def _get_scorer(request: Request) -> FraudScorer:
    return request.app.state.scorer


@router.get("/fraud/assessments", response_model=List[FraudAssessment])
async def list_assessments(
    request: Request,
    batch_id: Optional[str] = Query(default=None),
    transaction_id: Optional[str] = Query(default=None),
    actor: Actor = Depends(get_actor),
) -> List[FraudAssessment]:
    require_admin(actor)
    return request.app.state.store.list_assessments(batch_id=batch_id, transaction_id=transaction_id)


@router.get("/fraud/patterns/{business_id}", response_model=List[FraudPatternRecord])
async def get_pattern_history(
    business_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> List[FraudPatternRecord]:
    """Patterns detected in a business's past batches, most recent first."""
    if actor.actor_type == ActorType.BUSINESS_USER and actor.business_id != business_id:
        raise PermissionDenied("Pattern history belongs to another business")
    return _get_scorer(request).get_historical_patterns(business_id)
