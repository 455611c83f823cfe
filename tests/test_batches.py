"""Tests for batch creation, release and cancellation."""

from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.errors import ConflictError, NotFound, PermissionDenied, StateError, ValidationFailed
from settlement.models import (
    AuditEventType,
    BatchStatus,
    NotificationType,
    Recommendation,
    SessionStatus,
    VerificationConfig,
)
from settlement.workflow.batches import validate_week_year
from tests.conftest import (
    ADMIN,
    BUSINESS,
    BUSINESS_ID,
    NOW,
    OTHER_BUSINESS,
    create_batch,
    make_transaction,
    make_transactions,
)


class TestCreateBatch:
    def test_creates_batch_session_and_items(self, manager, store):
        batch, session, items = create_batch(manager, make_transactions(3))
        assert batch.status == BatchStatus.PENDING_VERIFICATION
        assert batch.total_transactions == 3
        assert batch.total_amount == Decimal("750")
        assert batch.deadline == NOW + timedelta(days=7)
        assert session.status == SessionStatus.NOT_STARTED
        assert session.total_transactions == 3
        assert [i.transaction_id for i in items] == ["VCL-001", "VCL-002", "VCL-003"]
        assert all(i.recommendation == Recommendation.APPROVE for i in items)

    def test_items_carry_risk(self, manager):
        txns = [make_transaction("VCL-001"), make_transaction("VCL-002", amount="50000", phone="9999")]
        _, _, items = create_batch(manager, txns)
        assert items[1].risk_score > 70
        assert items[1].recommendation == Recommendation.REJECT

    def test_csv_written(self, manager, files):
        batch, _, _ = create_batch(manager)
        assert batch.csv_file_path == f"{BUSINESS_ID}/2026-W10/{batch.id}/batch.csv"
        assert files.load_text(batch.csv_file_path).startswith("transaction_id,customer_feedback_id")

    def test_assessments_stored(self, manager, store):
        batch, _, _ = create_batch(manager)
        detail = manager.get_batch(batch.id, ADMIN)
        assert detail.fraud_assessment is not None
        assert detail.fraud_assessment.transaction_id is None
        assert len(store.list_assessments(batch_id=batch.id)) == 3

    def test_audited_and_notified(self, manager, store, outbox):
        batch, _, _ = create_batch(manager)
        types = [e.event_type for e in store.get_audit_log(batch_id=batch.id)]
        assert AuditEventType.BATCH_CREATED in types
        assert AuditEventType.SESSION_CREATED in types
        assert AuditEventType.FRAUD_ASSESSMENT_COMPLETED in types
        assert AuditEventType.BATCH_RELEASED in types
        assert outbox.sent[0]["type"] == NotificationType.BATCH_CREATED

    def test_patterns_saved(self, manager, scorer):
        txns = [
            make_transaction(tx_id=f"T-{i}", phone=f"{i:04d}", when=NOW - timedelta(hours=3, seconds=30 * i))
            for i in range(5)
        ]
        create_batch(manager, txns)
        history = scorer.get_historical_patterns(BUSINESS_ID)
        assert history[0].patterns_detected == ["time_clustering"]

    def test_draft_when_not_released(self, manager, outbox):
        batch, _, _ = create_batch(manager, release=False)
        assert batch.status == BatchStatus.DRAFT
        assert outbox.sent == []

    def test_duplicate_week_rejected(self, manager):
        create_batch(manager)
        with pytest.raises(ConflictError) as exc_info:
            create_batch(manager)
        assert exc_info.value.code == "BATCH_ALREADY_EXISTS"

    def test_previous_year_rejected_by_default(self, manager):
        with pytest.raises(ValidationFailed) as exc_info:
            create_batch(manager, week=52, year=2025)
        assert exc_info.value.code == "INVALID_WEEK_YEAR"
        assert exc_info.value.details == {"week_number": 52, "year_number": 2025}

    def test_configured_minimum_year(self, manager):
        manager.config = VerificationConfig(min_batch_year=2025)
        batch, _, _ = create_batch(manager, week=52, year=2025)
        assert batch.year_number == 2025

    def test_unknown_business(self, manager):
        with pytest.raises(NotFound) as exc_info:
            manager.create_batch("ghost", 10, 2026, make_transactions(1), ADMIN)
        assert exc_info.value.code == "BUSINESS_NOT_FOUND"

    def test_business_cannot_create(self, manager):
        with pytest.raises(PermissionDenied):
            manager.create_batch(BUSINESS_ID, 10, 2026, make_transactions(1), BUSINESS)

    def test_empty_batch(self, manager):
        with pytest.raises(ValidationFailed) as exc_info:
            manager.create_batch(BUSINESS_ID, 10, 2026, [], ADMIN)
        assert exc_info.value.code == "EMPTY_BATCH"

    def test_duplicate_transaction_ids(self, manager):
        txns = [make_transaction("VCL-001"), make_transaction("VCL-001", phone="9999")]
        with pytest.raises(ValidationFailed) as exc_info:
            manager.create_batch(BUSINESS_ID, 10, 2026, txns, ADMIN)
        assert exc_info.value.code == "DUPLICATE_TRANSACTION"
        assert exc_info.value.details["transaction_ids"] == ["VCL-001"]

    def test_deadline_in_past(self, manager):
        with pytest.raises(ValidationFailed) as exc_info:
            manager.create_batch(BUSINESS_ID, 10, 2026, make_transactions(1), ADMIN, deadline=NOW)
        assert exc_info.value.code == "INVALID_DEADLINE"


class TestValidateWeekYear:
    def test_valid(self):
        validate_week_year(53, 2026, 2024)

    def test_week_53_missing_in_2025(self):
        with pytest.raises(ValidationFailed) as exc_info:
            validate_week_year(53, 2025, 2024)
        assert exc_info.value.code == "INVALID_WEEK_YEAR"

    def test_week_zero(self):
        with pytest.raises(ValidationFailed):
            validate_week_year(0, 2026, 2024)

    def test_year_too_old(self):
        with pytest.raises(ValidationFailed):
            validate_week_year(10, 2023, 2024)


class TestReleaseAndCancel:
    def test_release_draft(self, manager):
        batch, _, _ = create_batch(manager, release=False)
        released = manager.release_batch(batch.id, ADMIN)
        assert released.status == BatchStatus.PENDING_VERIFICATION

    def test_release_twice_rejected(self, manager):
        batch, _, _ = create_batch(manager)
        with pytest.raises(StateError):
            manager.release_batch(batch.id, ADMIN)

    def test_cancel_untouched_batch(self, manager, store):
        batch, _, _ = create_batch(manager)
        cancelled = manager.cancel_batch(batch.id, ADMIN, "wrong week")
        assert cancelled.status == BatchStatus.CANCELLED
        events = store.get_audit_log(event_type=AuditEventType.BATCH_CANCELLED)
        assert events[0].metadata["reason"] == "wrong week"
        # The week is free again
        create_batch(manager)

    def test_cancel_after_decisions_rejected(self, manager, workflow):
        batch, _, items = create_batch(manager)
        workflow.decide_item(items[0].id, BUSINESS, verified=True)
        with pytest.raises(StateError) as exc_info:
            manager.cancel_batch(batch.id, ADMIN, "too late")
        assert exc_info.value.code == "VERIFICATION_STARTED"

    def test_business_cannot_cancel(self, manager):
        batch, _, _ = create_batch(manager)
        with pytest.raises(PermissionDenied):
            manager.cancel_batch(batch.id, BUSINESS, "nope")


class TestReads:
    def test_business_sees_only_own_batches(self, manager):
        create_batch(manager)
        assert len(manager.list_batches(BUSINESS)) == 1
        assert manager.list_batches(OTHER_BUSINESS) == []
        assert len(manager.list_batches(ADMIN)) == 1

    def test_business_cannot_read_other_batch(self, manager):
        batch, _, _ = create_batch(manager)
        with pytest.raises(PermissionDenied):
            manager.get_batch(batch.id, OTHER_BUSINESS)

    def test_filter_by_status(self, manager):
        create_batch(manager)
        create_batch(manager, week=11, release=False)
        assert len(manager.list_batches(ADMIN, status=BatchStatus.DRAFT)) == 1


class TestRecomputeTotals:
    def test_rebuilds_from_items(self, manager, store):
        batch, _, _ = create_batch(manager)
        current = store.get_batch(batch.id)
        store.update_batch_if(
            batch.id, current.status, current.version, {"total_amount": Decimal("1"), "total_transactions": 7}
        )
        rebuilt = manager.recompute_totals(batch.id, ADMIN)
        assert rebuilt.total_amount == Decimal("500")
        assert rebuilt.total_transactions == 2

    def test_business_cannot_recompute(self, manager):
        batch, _, _ = create_batch(manager)
        with pytest.raises(PermissionDenied):
            manager.recompute_totals(batch.id, BUSINESS)

    def test_unknown_batch(self, manager):
        with pytest.raises(NotFound):
            manager.recompute_totals("missing", ADMIN)
