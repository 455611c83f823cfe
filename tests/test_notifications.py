"""Tests for notification dispatch and the audit trail it leaves."""

from datetime import timedelta

from settlement.models import AuditEventType, NotificationType, VerificationSession
from settlement.notifications import NotificationDispatcher
from tests.conftest import BUSINESS_ID, NOW


class FailingSender:
    def send(self, business_id, notification_type, payload):
        raise ConnectionError("smtp relay down")


class TestNotificationDispatcher:
    def test_sent_and_audited(self, notifier, outbox, store):
        assert notifier.send(BUSINESS_ID, NotificationType.BATCH_CREATED, {"batch_id": "b1"}, batch_id="b1")
        assert len(outbox.sent) == 1
        events = store.get_audit_log(event_type=AuditEventType.NOTIFICATION_SENT)
        assert len(events) == 1
        assert events[0].batch_id == "b1"

    def test_failure_is_recorded_not_raised(self, audit, store):
        dispatcher = NotificationDispatcher(FailingSender(), audit)
        assert dispatcher.send(BUSINESS_ID, NotificationType.WARNING_24_HOUR) is False
        events = store.get_audit_log(event_type=AuditEventType.NOTIFICATION_FAILED)
        assert len(events) == 1
        assert "smtp relay down" in events[0].metadata["error"]

    def test_deadline_reminder_payload(self, notifier, outbox):
        session = VerificationSession(
            payment_batch_id="b1",
            business_id=BUSINESS_ID,
            deadline=NOW + timedelta(hours=3),
            total_transactions=4,
            verified_transactions=1,
        )
        notifier.send_deadline_reminder(session, NotificationType.WARNING_4_HOUR, NOW)
        sent = outbox.sent[0]
        assert sent["type"] == NotificationType.WARNING_4_HOUR
        assert sent["payload"]["pending_transactions"] == 3
