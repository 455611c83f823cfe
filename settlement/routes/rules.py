"""Threshold configuration endpoints for reading and updating verification rules."""

from fastapi import APIRouter, Depends, Request

from settlement.models import Actor, RiskThresholds, VerificationConfig
from settlement.routes.deps import get_actor, require_admin

router = APIRouter(prefix="/api")


def apply_config(state, config: VerificationConfig) -> None:
    """Point every component at ``config`` so the next operation uses it."""
    state.config = config
    state.scorer.config = config
    state.manager.config = config
    state.workflow.config = config
    state.sweeper.config = config


@router.get("/rules", response_model=VerificationConfig)
async def get_rules(request: Request) -> VerificationConfig:
    """Return the current verification thresholds."""
    return request.app.state.config


@router.put("/rules", response_model=VerificationConfig)
async def update_rules(
    new_config: VerificationConfig,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> VerificationConfig:
    """Replace the verification thresholds.

    Sessions already past their deadline are judged against the new
    ceilings on the next sweep.
    """
    require_admin(actor)
    apply_config(request.app.state, new_config)
    return new_config


@router.get("/rules/risk-thresholds", response_model=RiskThresholds)
async def get_risk_thresholds(request: Request) -> RiskThresholds:
    return RiskThresholds(**request.app.state.scorer.get_risk_thresholds())


@router.put("/rules/risk-thresholds", response_model=RiskThresholds)
async def update_risk_thresholds(
    body: RiskThresholds,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> RiskThresholds:
    require_admin(actor)
    scorer = request.app.state.scorer
    thresholds = scorer.set_risk_thresholds(body.low_risk_max, body.high_risk_min)
    apply_config(request.app.state, scorer.config)
    return RiskThresholds(**thresholds)
