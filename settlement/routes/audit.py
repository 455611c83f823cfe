"""Audit log endpoint for compliance review."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from settlement.audit import AuditRecorder
from settlement.models import Actor, AuditEvent, AuditEventType
from settlement.routes.deps import get_actor, require_admin

router = APIRouter(prefix="/api")


def _get_audit(request: Request) -> AuditRecorder:
    """Retrieve the audit recorder from application state."""
    return request.app.state.audit


@router.get("/audit", response_model=List[AuditEvent])
async def get_audit_log(
    request: Request,
    batch_id: Optional[str] = Query(default=None),
    session_id: Optional[str] = Query(default=None),
    transaction_id: Optional[str] = Query(default=None),
    event_type: Optional[AuditEventType] = Query(default=None),
    from_date: Optional[datetime] = Query(default=None),
    to_date: Optional[datetime] = Query(default=None),
    actor: Actor = Depends(get_actor),
) -> List[AuditEvent]:
    """Retrieve audit events with optional filters.

    Filters:
      - batch_id / session_id / transaction_id: exact match on the subject
      - event_type: one audit event type
      - from_date: events created at or after this value
      - to_date: events created at or before this value
    """
    require_admin(actor)
    return _get_audit(request).history(
        batch_id=batch_id,
        session_id=session_id,
        transaction_id=transaction_id,
        event_type=event_type,
        since=from_date,
        until=to_date,
    )
