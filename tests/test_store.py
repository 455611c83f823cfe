"""Tests for the in-memory storage."""

from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.errors import ConflictError, StorageUnavailable
from settlement.models import (
    ActorType,
    AuditEvent,
    AuditEventType,
    BatchStatus,
    Decision,
    PaymentBatch,
    SessionStatus,
    VerificationItem,
    VerificationSession,
)
from tests.conftest import BUSINESS_ID, NOW


def make_records(week=10, amounts=("100.00", "250.50")):
    batch = PaymentBatch(business_id=BUSINESS_ID, week_number=week, year_number=2026, deadline=NOW + timedelta(days=7))
    session = VerificationSession(payment_batch_id=batch.id, business_id=BUSINESS_ID, deadline=batch.deadline)
    items = [
        VerificationItem(
            verification_session_id=session.id,
            transaction_id=f"VCL-{i}",
            transaction_amount=Decimal(a),
            transaction_time=NOW - timedelta(days=1),
        )
        for i, a in enumerate(amounts)
    ]
    return batch, session, items


DECIDED = {"verified": True, "verification_decision": Decision.APPROVED}


class TestCreateBatch:
    def test_totals_computed(self, store):
        batch, session, items = make_records()
        created = store.create_batch(batch, session, items)
        assert created.total_transactions == 2
        assert created.total_amount == Decimal("350.50")
        assert store.get_session(session.id).total_transactions == 2

    def test_duplicate_week_rejected(self, store):
        store.create_batch(*make_records())
        with pytest.raises(ConflictError) as exc_info:
            store.create_batch(*make_records())
        assert exc_info.value.code == "BATCH_ALREADY_EXISTS"

    def test_cancel_frees_slot(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        store.update_batch_if(batch.id, BatchStatus.DRAFT, None, {"status": BatchStatus.CANCELLED})
        store.create_batch(*make_records())

    def test_returns_copies(self, store):
        batch, session, items = make_records()
        created = store.create_batch(batch, session, items)
        created.status = BatchStatus.COMPLETED
        assert store.get_batch(batch.id).status == BatchStatus.DRAFT


class TestConditionalWrites:
    def test_session_compare_and_swap(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        current = store.get_session(session.id)
        updated = store.update_session_if(
            session.id, SessionStatus.NOT_STARTED, current.version, {"status": SessionStatus.DOWNLOADED}
        )
        assert updated.version == current.version + 1
        with pytest.raises(ConflictError):
            store.update_session_if(
                session.id, SessionStatus.NOT_STARTED, current.version, {"status": SessionStatus.EXPIRED}
            )

    def test_decide_only_once(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        assert store.decide_item_if_undecided(items[0].id, DECIDED) is not None
        assert store.decide_item_if_undecided(items[0].id, DECIDED) is None
        refreshed = store.get_session(session.id)
        assert refreshed.verified_transactions == 1
        assert refreshed.approved_count == 1

    def test_counter_change_bumps_version(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        before = store.get_session(session.id).version
        store.decide_item_if_undecided(items[0].id, DECIDED)
        assert store.get_session(session.id).version == before + 1

    def test_decide_all_undecided(self, store):
        batch, session, items = make_records(amounts=("1", "2", "3"))
        store.create_batch(batch, session, items)
        store.decide_item_if_undecided(items[0].id, {"verified": False, "verification_decision": Decision.REJECTED})
        decided = store.decide_all_undecided(session.id, DECIDED)
        assert [i.transaction_id for i in decided] == ["VCL-1", "VCL-2"]
        refreshed = store.get_session(session.id)
        assert (refreshed.approved_count, refreshed.rejected_count) == (2, 1)

    def test_override_replaces_decision(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        store.decide_item_if_undecided(items[0].id, DECIDED)
        store.override_item(items[0].id, {"verified": False, "verification_decision": Decision.REJECTED})
        refreshed = store.get_session(session.id)
        assert (refreshed.approved_count, refreshed.rejected_count) == (0, 1)


class TestQueries:
    def test_sessions_past_deadline(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        assert store.sessions_past_deadline(NOW) == []
        assert [s.id for s in store.sessions_past_deadline(NOW + timedelta(days=7))] == [session.id]

    def test_find_item(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        assert store.find_item(session.id, "VCL-1").id == items[1].id
        assert store.find_item(session.id, "VCL-999") is None

    def test_recompute_totals(self, store):
        batch, session, items = make_records()
        store.create_batch(batch, session, items)
        assert store.recompute_batch_totals(batch.id).total_amount == Decimal("350.50")


class TestAuditLog:
    def _event(self, event_type, **kwargs):
        return AuditEvent(
            event_type=event_type,
            actor_type=ActorType.SYSTEM,
            actor_id="system",
            description="test",
            **kwargs,
        )

    def test_filters(self, store):
        store.add_audit(self._event(AuditEventType.BATCH_CREATED, batch_id="b1"))
        store.add_audit(self._event(AuditEventType.TRANSACTION_APPROVED, batch_id="b1", transaction_id="t1"))
        store.add_audit(self._event(AuditEventType.BATCH_CREATED, batch_id="b2"))
        assert len(store.get_audit_log()) == 3
        assert len(store.get_audit_log(batch_id="b1")) == 2
        assert len(store.get_audit_log(transaction_id="t1")) == 1
        assert len(store.get_audit_log(event_type=AuditEventType.BATCH_CREATED)) == 2

    def test_time_range(self, store):
        store.add_audit(self._event(AuditEventType.BATCH_CREATED, created_at=NOW - timedelta(hours=2)))
        store.add_audit(self._event(AuditEventType.BATCH_CREATED, created_at=NOW))
        assert len(store.get_audit_log(since=NOW - timedelta(hours=1))) == 1
        assert len(store.get_audit_log(until=NOW - timedelta(hours=1))) == 1


class TestAvailability:
    def test_unavailable_store_raises(self, store):
        store.available = False
        with pytest.raises(StorageUnavailable):
            store.list_batches()
