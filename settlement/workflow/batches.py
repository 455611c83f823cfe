"""Payment batch manager.

Creates a batch together with its verification session and items, runs the
fraud assessment over the batch, writes the downloadable CSV, and handles
release and cancellation. Uniqueness of (business, week, year) is enforced
atomically by the store.
"""

from collections import Counter
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence

import structlog

from settlement.audit import AuditRecorder
from settlement.deadlines import calculate_deadline
from settlement.errors import NotFound, PermissionDenied, StateError, ValidationFailed
from settlement.fraud.engine import FraudScorer
from settlement.ingest.export import encode_batch_csv
from settlement.models import (
    Actor,
    ActorType,
    AuditEventType,
    BatchDetail,
    BatchStatus,
    FraudAssessment,
    NotificationType,
    PaymentBatch,
    Recommendation,
    SessionStatus,
    TERMINAL_BATCH_STATUSES,
    TransactionRecord,
    VerificationConfig,
    VerificationItem,
    VerificationSession,
    utcnow,
)
from settlement.notifications import NotificationDispatcher
from settlement.storage.files import FileStore, batch_csv_path
from settlement.storage.memory import MemoryStore

logger = structlog.get_logger(__name__)

CANCELLABLE_STATUSES = (BatchStatus.DRAFT, BatchStatus.PENDING_VERIFICATION)


def validate_week_year(week: int, year: int, min_year: int) -> None:
    """Week must exist in the ISO calendar of ``year``; year must not predate ``min_year``."""
    if year < min_year:
        raise ValidationFailed(
            f"Year {year} is before {min_year}",
            code="INVALID_WEEK_YEAR",
            details={"week_number": week, "year_number": year},
        )
    try:
        date.fromisocalendar(year, week, 1)
    except ValueError as exc:
        raise ValidationFailed(
            f"Week {week} does not exist in ISO year {year}",
            code="INVALID_WEEK_YEAR",
            details={"week_number": week, "year_number": year},
        ) from exc


class BatchManager:
    def __init__(
        self,
        store: MemoryStore,
        files: FileStore,
        audit: AuditRecorder,
        scorer: FraudScorer,
        notifier: NotificationDispatcher,
        config: VerificationConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.files = files
        self.audit = audit
        self.scorer = scorer
        self.notifier = notifier
        self.config = config
        self.clock = clock

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if actor.actor_type not in (ActorType.ADMIN_USER, ActorType.SYSTEM):
            raise PermissionDenied(f"Only administrators can {action} payment batches")

    def reference_year(self, now: datetime) -> int:
        """Earliest ISO year a new batch may belong to."""
        if self.config.min_batch_year is not None:
            return self.config.min_batch_year
        return now.isocalendar()[0]

    def _batch(self, batch_id: str) -> PaymentBatch:
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found", code="BATCH_NOT_FOUND")
        return batch

    def create_batch(
        self,
        business_id: str,
        week_number: int,
        year_number: int,
        transactions: Sequence[TransactionRecord],
        actor: Actor,
        deadline: Optional[datetime] = None,
        auto_approval_enabled: bool = True,
        release: bool = True,
        now: Optional[datetime] = None,
    ) -> PaymentBatch:
        """Create a batch, its session and items, and assess them for fraud.

        Raises:
            NotFound(BUSINESS_NOT_FOUND), ValidationFailed(INVALID_WEEK_YEAR),
            ConflictError(BATCH_ALREADY_EXISTS).
        """
        now = now or self.clock()
        self._require_admin(actor, "create")
        if not self.store.has_business(business_id):
            raise NotFound(f"Business {business_id} not found", code="BUSINESS_NOT_FOUND")
        validate_week_year(week_number, year_number, self.reference_year(now))

        if not transactions:
            raise ValidationFailed("A batch needs at least one transaction", code="EMPTY_BATCH")
        counts = Counter(t.transaction_id for t in transactions)
        duplicates = sorted(tid for tid, n in counts.items() if n > 1)
        if duplicates:
            raise ValidationFailed(
                "Duplicate transaction ids in batch",
                code="DUPLICATE_TRANSACTION",
                details={"transaction_ids": duplicates},
            )

        deadline = deadline or calculate_deadline(now, self.config.verification_days)
        if deadline <= now:
            raise ValidationFailed("Deadline must be in the future", code="INVALID_DEADLINE")

        batch = PaymentBatch(
            business_id=business_id,
            week_number=week_number,
            year_number=year_number,
            deadline=deadline,
            auto_approval_enabled=auto_approval_enabled,
            created_by=actor.actor_id,
            created_at=now,
            updated_at=now,
        )
        session = VerificationSession(
            payment_batch_id=batch.id,
            business_id=business_id,
            deadline=deadline,
            created_at=now,
        )

        assessment = self.scorer.assess_batch(batch.id, transactions, now)
        items = [
            VerificationItem(
                verification_session_id=session.id,
                transaction_id=txn.transaction_id,
                customer_feedback_id=txn.customer_feedback_id,
                transaction_amount=txn.amount,
                transaction_time=txn.transaction_time,
                phone_last_four=txn.phone_last_four,
                store_code=txn.store_code,
                quality_score=txn.quality_score,
                reward_percentage=txn.reward_percentage,
                reward_amount=txn.reward_amount,
                risk_score=assessment.transactions[txn.transaction_id].risk_score,
                recommendation=assessment.transactions[txn.transaction_id].recommendation,
            )
            for txn in transactions
        ]

        # The CSV must exist before the batch becomes visible
        path = batch_csv_path(business_id, year_number, week_number, batch.id)
        self.files.save_text(path, encode_batch_csv(items))
        batch.csv_file_path = path

        created = self.store.create_batch(batch, session, items)

        for txn_assessment in assessment.transactions.values():
            self.store.add_assessment(txn_assessment)
        self.store.add_assessment(assessment.batch)

        self.audit.record(
            AuditEventType.BATCH_CREATED,
            actor,
            f"Batch created for week {week_number}/{year_number}",
            business_id=business_id,
            batch_id=batch.id,
            session_id=session.id,
            metadata={
                "total_transactions": created.total_transactions,
                "total_amount": str(created.total_amount),
                "deadline": deadline.isoformat(),
                "auto_approval_enabled": auto_approval_enabled,
            },
        )
        self.audit.record(
            AuditEventType.SESSION_CREATED,
            actor,
            "Verification session created",
            business_id=business_id,
            batch_id=batch.id,
            session_id=session.id,
        )
        self._audit_assessment(actor, created, session, assessment.batch, items)

        if assessment.patterns:
            self.scorer.save_fraud_patterns(
                batch.id, business_id, assessment.patterns, assessment.batch.confidence_score
            )
            self.audit.record(
                AuditEventType.FRAUD_PATTERN_DETECTED,
                actor,
                f"Fraud patterns detected: {', '.join(assessment.patterns)}",
                business_id=business_id,
                batch_id=batch.id,
                session_id=session.id,
                metadata={"patterns": assessment.patterns},
            )

        logger.info(
            "batch_created",
            batch_id=batch.id,
            business_id=business_id,
            week_number=week_number,
            year_number=year_number,
            total_transactions=created.total_transactions,
        )

        if release:
            return self.release_batch(batch.id, actor, now=now)
        return created

    def _audit_assessment(
        self,
        actor: Actor,
        batch: PaymentBatch,
        session: VerificationSession,
        batch_assessment: FraudAssessment,
        items: List[VerificationItem],
    ) -> None:
        counts = {r.value: 0 for r in Recommendation}
        for item in items:
            counts[item.recommendation.value] += 1
        self.audit.record(
            AuditEventType.FRAUD_ASSESSMENT_COMPLETED,
            actor,
            f"Batch risk score {batch_assessment.risk_score} ({batch_assessment.recommendation.value})",
            business_id=batch.business_id,
            batch_id=batch.id,
            session_id=session.id,
            metadata={
                "risk_score": batch_assessment.risk_score,
                "recommendation": batch_assessment.recommendation.value,
                "advisory_used": batch_assessment.advisory_used,
                "recommendations": counts,
            },
        )

    def release_batch(
        self, batch_id: str, actor: Actor, now: Optional[datetime] = None
    ) -> PaymentBatch:
        """Open a draft batch for verification and notify the business."""
        now = now or self.clock()
        self._require_admin(actor, "release")
        batch = self._batch(batch_id)
        if batch.status != BatchStatus.DRAFT:
            raise StateError(
                f"Cannot release a batch in state {batch.status.value}",
                current=batch.status.value,
                allowed=[BatchStatus.DRAFT.value],
            )
        released = self.store.update_batch_if(
            batch.id, BatchStatus.DRAFT, batch.version, {"status": BatchStatus.PENDING_VERIFICATION}
        )
        session = self.store.get_session_by_batch(batch.id)
        self.audit.record(
            AuditEventType.BATCH_RELEASED,
            actor,
            "Batch released for verification",
            business_id=batch.business_id,
            batch_id=batch.id,
            session_id=session.id if session else None,
        )
        self.notifier.send(
            batch.business_id,
            NotificationType.BATCH_CREATED,
            {
                "batch_id": batch.id,
                "week_number": batch.week_number,
                "year_number": batch.year_number,
                "total_transactions": batch.total_transactions,
                "deadline": batch.deadline.isoformat(),
                "released_at": now.isoformat(),
            },
            batch_id=batch.id,
            session_id=session.id if session else None,
        )
        return released

    def cancel_batch(self, batch_id: str, actor: Actor, reason: str) -> PaymentBatch:
        """Cancel a batch whose session nobody has started working on."""
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can cancel payment batches")
        batch = self._batch(batch_id)
        if batch.status in TERMINAL_BATCH_STATUSES:
            raise StateError(
                f"Cannot cancel a batch in state {batch.status.value}",
                current=batch.status.value,
                allowed=[s.value for s in CANCELLABLE_STATUSES],
            )
        session = self.store.get_session_by_batch(batch.id)
        started = batch.status not in CANCELLABLE_STATUSES or (
            session is not None
            and (
                session.status not in (SessionStatus.NOT_STARTED, SessionStatus.DOWNLOADED)
                or session.verified_transactions > 0
            )
        )
        if started:
            raise StateError(
                "Cannot cancel a batch once verification has started",
                current=session.status.value if session else batch.status.value,
                allowed=[SessionStatus.NOT_STARTED.value, SessionStatus.DOWNLOADED.value],
                code="VERIFICATION_STARTED",
            )
        cancelled = self.store.update_batch_if(
            batch.id, batch.status, batch.version, {"status": BatchStatus.CANCELLED}
        )
        self.audit.record(
            AuditEventType.BATCH_CANCELLED,
            actor,
            "Batch cancelled",
            business_id=batch.business_id,
            batch_id=batch.id,
            session_id=session.id if session else None,
            metadata={"reason": reason, "previous_status": batch.status.value},
        )
        return cancelled

    def recompute_totals(self, batch_id: str, actor: Actor) -> PaymentBatch:
        """Rebuild total_amount and total_transactions from the batch items."""
        self._require_admin(actor, "recompute")
        before = self._batch(batch_id)
        batch = self.store.recompute_batch_totals(batch_id)
        if (before.total_amount, before.total_transactions) != (batch.total_amount, batch.total_transactions):
            logger.warning(
                "batch_totals_corrected",
                batch_id=batch_id,
                previous_amount=str(before.total_amount),
                total_amount=str(batch.total_amount),
                previous_transactions=before.total_transactions,
                total_transactions=batch.total_transactions,
            )
        return batch

    def get_batch(self, batch_id: str, actor: Actor) -> BatchDetail:
        batch = self._batch(batch_id)
        if actor.actor_type == ActorType.BUSINESS_USER and actor.business_id != batch.business_id:
            raise PermissionDenied("Batch belongs to another business")
        assessments = [
            a for a in self.store.list_assessments(batch_id=batch.id) if a.transaction_id is None
        ]
        return BatchDetail(
            batch=batch,
            session=self.store.get_session_by_batch(batch.id),
            fraud_assessment=assessments[-1] if assessments else None,
        )

    def list_batches(
        self,
        actor: Actor,
        business_id: Optional[str] = None,
        status: Optional[BatchStatus] = None,
    ) -> List[PaymentBatch]:
        if actor.actor_type == ActorType.BUSINESS_USER:
            business_id = actor.business_id
        return self.store.list_batches(business_id=business_id, status=status)
