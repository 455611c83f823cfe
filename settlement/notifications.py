"""Notification dispatch.

Delivery itself (email, push) is an external collaborator behind the
``NotificationSender`` protocol. The dispatcher wraps it so that a delivery
failure is logged and audited as ``notification_failed`` but never raised:
a broken mail relay must not block a batch transition.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import structlog

from settlement.audit import AuditRecorder
from settlement.models import (
    SYSTEM_ACTOR,
    AuditEventType,
    NotificationType,
    VerificationSession,
)

logger = structlog.get_logger(__name__)


class NotificationSender(Protocol):
    def send(self, business_id: str, notification_type: NotificationType, payload: Dict[str, Any]) -> None: ...


class OutboxSender:
    """Keeps delivered notifications in memory. Used by default and in tests."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def send(self, business_id: str, notification_type: NotificationType, payload: Dict[str, Any]) -> None:
        self.sent.append(
            {"business_id": business_id, "type": notification_type, "payload": payload}
        )


class NotificationDispatcher:
    def __init__(self, sender: NotificationSender, audit: AuditRecorder) -> None:
        self.sender = sender
        self.audit = audit

    def send(
        self,
        business_id: str,
        notification_type: NotificationType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        batch_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> bool:
        """Deliver one notification. Returns False (after auditing) on failure."""
        payload = payload or {}
        try:
            self.sender.send(business_id, notification_type, payload)
        except Exception as exc:
            # Delivery is best effort; the failure is recorded, not propagated
            logger.warning(
                "notification_failed",
                business_id=business_id,
                notification_type=notification_type.value,
                error=str(exc),
            )
            self.audit.record(
                AuditEventType.NOTIFICATION_FAILED,
                SYSTEM_ACTOR,
                f"Failed to deliver {notification_type.value} notification",
                business_id=business_id,
                batch_id=batch_id,
                session_id=session_id,
                metadata={"notification_type": notification_type.value, "error": str(exc)},
            )
            return False

        logger.info(
            "notification_sent",
            business_id=business_id,
            notification_type=notification_type.value,
        )
        self.audit.record(
            AuditEventType.NOTIFICATION_SENT,
            SYSTEM_ACTOR,
            f"Sent {notification_type.value} notification",
            business_id=business_id,
            batch_id=batch_id,
            session_id=session_id,
            metadata={"notification_type": notification_type.value},
        )
        return True

    def send_deadline_reminder(
        self,
        session: VerificationSession,
        notification_type: NotificationType,
        now: datetime,
    ) -> bool:
        payload = {
            "session_id": session.id,
            "deadline": session.deadline.isoformat(),
            "pending_transactions": session.pending_transactions,
            "sent_at": now.isoformat(),
        }
        return self.send(
            session.business_id,
            notification_type,
            payload,
            batch_id=session.payment_batch_id,
            session_id=session.id,
        )
