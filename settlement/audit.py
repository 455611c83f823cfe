"""Append-only audit recorder.

Every session/batch transition, item decision, upload and fraud assessment
is written here. The log is the system of record for why a batch ended up
approved, so events are never mutated or deleted.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from settlement.models import Actor, AuditEvent, AuditEventType
from settlement.storage.memory import MemoryStore

logger = structlog.get_logger(__name__)


class AuditRecorder:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def record(
        self,
        event_type: AuditEventType,
        actor: Actor,
        description: str,
        *,
        business_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            business_id=business_id or actor.business_id,
            batch_id=batch_id,
            session_id=session_id,
            transaction_id=transaction_id,
            description=description,
            metadata=metadata or {},
        )
        self.store.add_audit(event)
        logger.info(
            "audit_event",
            event_type=event_type.value,
            actor_type=actor.actor_type.value,
            actor_id=actor.actor_id,
            batch_id=batch_id,
            session_id=session_id,
            transaction_id=transaction_id,
        )
        return event

    def history(
        self,
        batch_id: Optional[str] = None,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        return self.store.get_audit_log(
            batch_id=batch_id,
            session_id=session_id,
            transaction_id=transaction_id,
            event_type=event_type,
            since=since,
            until=until,
        )
