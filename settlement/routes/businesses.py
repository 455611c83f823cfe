"""Business registration. Batches can only be created for known businesses."""

from typing import Dict

from fastapi import APIRouter, Depends, Request, status

from settlement.models import Actor, RegisterBusinessRequest
from settlement.routes.deps import get_actor, require_admin

router = APIRouter(prefix="/api")


@router.post("/businesses", status_code=status.HTTP_201_CREATED)
async def register_business(
    body: RegisterBusinessRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> Dict[str, str]:
    require_admin(actor)
    request.app.state.store.register_business(body.business_id, body.name)
    return {"business_id": body.business_id, "name": body.name or body.business_id}
