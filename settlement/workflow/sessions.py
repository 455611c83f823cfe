"""Verification session workflow.

Owns every business- and admin-initiated operation on a session: download,
individual decisions, bulk upload, submission, admin completion, deadline
extension and admin override. Each status change goes through the
TRANSITIONS table and is committed as a compare-and-swap on (status,
version); each decision is committed with ``decide_item_if_undecided``.
Every transition and decision is audited.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from settlement.audit import AuditRecorder
from settlement.config import settings
from settlement.deadlines import (
    can_extend_deadline,
    format_time_remaining,
    get_deadline_status,
    get_elapsed_percentage,
)
from settlement.errors import (
    ConflictError,
    NotFound,
    PermissionDenied,
    StateError,
    ValidationFailed,
)
from settlement.ingest.export import encode_batch_csv
from settlement.ingest.parser import (
    MAX_NOTES_LENGTH,
    ParsedRow,
    check_upload,
    decode_upload,
    parse_verification_csv,
)
from settlement.models import (
    Actor,
    ActorType,
    AuditEventType,
    BatchStatus,
    Decision,
    DownloadResult,
    KNOWN_REJECTION_REASONS,
    PaymentBatch,
    ProcessingSummary,
    Recommendation,
    RowIssue,
    SessionProgress,
    SessionStatus,
    TERMINAL_SESSION_STATUSES,
    UploadResult,
    VerificationConfig,
    VerificationItem,
    VerificationSession,
    utcnow,
)
from settlement.storage.files import FileStore, batch_csv_path, upload_path
from settlement.storage.memory import MemoryStore
from settlement.workflow.states import (
    BATCH_STATUS_FOR_SESSION,
    DECIDABLE_STATES,
    UPLOADABLE_STATES,
    Transition,
    check_actor,
    next_state,
)

logger = structlog.get_logger(__name__)

# Re-reads allowed when a concurrent writer bumps the session version
ADVANCE_ATTEMPTS = 5

NOT_FOUND_IN_SESSION = "Transaction not found in current verification session"

TRANSITION_EVENTS = {
    Transition.DOWNLOAD: AuditEventType.SESSION_DOWNLOADED,
    Transition.START: AuditEventType.SESSION_STARTED,
    Transition.SUBMIT: AuditEventType.SESSION_SUBMITTED,
    Transition.COMPLETE: AuditEventType.SESSION_COMPLETED,
    Transition.AUTO_APPROVE: AuditEventType.SESSION_AUTO_APPROVED,
    Transition.EXPIRE: AuditEventType.SESSION_EXPIRED,
}


def resolve_decision(
    verified: bool,
    decision: Optional[Decision],
    rejection_reason: Optional[str],
    business_notes: Optional[str],
) -> Decision:
    """Check that a decision is self-consistent and return it."""
    expected = Decision.APPROVED if verified else Decision.REJECTED
    if decision is not None and decision != expected:
        raise ValidationFailed(
            "verification_decision does not agree with verified",
            details={"verified": verified, "verification_decision": decision.value},
        )
    if expected == Decision.REJECTED and not (rejection_reason or "").strip():
        raise ValidationFailed(
            "A rejection reason is required when rejecting a transaction",
            code="REJECTION_REASON_REQUIRED",
        )
    if business_notes and len(business_notes) > MAX_NOTES_LENGTH:
        raise ValidationFailed(
            f"Business notes exceed {MAX_NOTES_LENGTH} characters",
            details={"length": len(business_notes)},
        )
    return expected


class SessionWorkflow:
    """Drives one business's verification session through its lifecycle."""

    def __init__(
        self,
        store: MemoryStore,
        files: FileStore,
        audit: AuditRecorder,
        config: VerificationConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.files = files
        self.audit = audit
        self.config = config
        self.clock = clock

    # ── Lookups and guards ───────────────────────────────────

    def _session(self, session_id: str) -> VerificationSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found", code="SESSION_NOT_FOUND")
        return session

    def _batch(self, session: VerificationSession) -> PaymentBatch:
        batch = self.store.get_batch(session.payment_batch_id)
        if batch is None:
            raise NotFound(f"Batch {session.payment_batch_id} not found", code="BATCH_NOT_FOUND")
        return batch

    def _item(self, item_id: str) -> VerificationItem:
        item = self.store.get_item(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found", code="NOT_FOUND")
        return item

    @staticmethod
    def _authorize(actor: Actor, session: VerificationSession) -> None:
        if actor.actor_type == ActorType.BUSINESS_USER and actor.business_id != session.business_id:
            raise PermissionDenied("Session belongs to another business")

    @staticmethod
    def _ensure_batch_open(batch: PaymentBatch) -> None:
        if batch.status == BatchStatus.CANCELLED:
            raise StateError(
                "Batch has been cancelled",
                current=batch.status.value,
                allowed=[BatchStatus.PENDING_VERIFICATION.value, BatchStatus.IN_PROGRESS.value],
                code="BATCH_CANCELLED",
            )
        if batch.status == BatchStatus.DRAFT:
            raise StateError(
                "Batch has not been released for verification",
                current=batch.status.value,
                allowed=[BatchStatus.PENDING_VERIFICATION.value, BatchStatus.IN_PROGRESS.value],
                code="BATCH_NOT_RELEASED",
            )

    @staticmethod
    def _ensure_before_deadline(session: VerificationSession, now: datetime) -> None:
        if now >= session.deadline:
            raise StateError(
                "Verification deadline has passed",
                current=session.status.value,
                allowed=[s.value for s in DECIDABLE_STATES],
                code="DEADLINE_PASSED",
            )

    # ── Transitions ──────────────────────────────────────────

    def transition(
        self,
        session: VerificationSession,
        transition: Transition,
        actor: Actor,
        changes: Optional[Dict] = None,
        metadata: Optional[Dict] = None,
    ) -> VerificationSession:
        """Move ``session`` along ``transition`` with a conditional write.

        Raises StateError for a move the table does not allow and
        ConflictError when another writer changed the session first.
        """
        check_actor(transition, actor.actor_type)
        target = next_state(session.status, transition)
        updated = self.store.update_session_if(
            session.id,
            session.status,
            session.version,
            {**(changes or {}), "status": target},
        )
        self.audit.record(
            TRANSITION_EVENTS[transition],
            actor,
            f"Session {transition.value}: {session.status.value} -> {target.value}",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            metadata={
                "from_status": session.status.value,
                "to_status": target.value,
                **(metadata or {}),
            },
        )
        logger.info(
            "session_transition",
            session_id=session.id,
            transition=transition.value,
            from_status=session.status.value,
            to_status=target.value,
        )
        self.sync_batch_status(updated, actor)
        return updated

    def sync_batch_status(self, session: VerificationSession, actor: Actor) -> Optional[PaymentBatch]:
        """Make the batch status mirror its session."""
        target = BATCH_STATUS_FOR_SESSION[session.status]
        for _ in range(ADVANCE_ATTEMPTS):
            batch = self._batch(session)
            if batch.status == target or batch.status == BatchStatus.CANCELLED:
                return batch
            try:
                updated = self.store.update_batch_if(
                    batch.id, batch.status, batch.version, {"status": target}
                )
            except ConflictError:
                continue
            self.audit.record(
                AuditEventType.BATCH_STATUS_CHANGED,
                actor,
                f"Batch status {batch.status.value} -> {target.value}",
                business_id=batch.business_id,
                batch_id=batch.id,
                session_id=session.id,
                metadata={"from_status": batch.status.value, "to_status": target.value},
            )
            return updated
        raise ConflictError(f"Batch {session.payment_batch_id} kept changing; retry")

    def _advance(self, session_id: str, actor: Actor, now: datetime) -> VerificationSession:
        """Start the session on its first decision and submit it on its last."""
        for _ in range(ADVANCE_ATTEMPTS):
            session = self._session(session_id)
            try:
                if session.status in (SessionStatus.NOT_STARTED, SessionStatus.DOWNLOADED):
                    session = self.transition(
                        session, Transition.START, actor, {"started_at": now}
                    )
                if session.status == SessionStatus.IN_PROGRESS and session.pending_transactions == 0:
                    session = self.transition(
                        session, Transition.SUBMIT, actor, {"submitted_at": now}
                    )
                return session
            except ConflictError:
                # Another writer moved the session or bumped its counters
                continue
        return self._session(session_id)

    # ── Read side ────────────────────────────────────────────

    def get_session(self, session_id: str, actor: Actor) -> VerificationSession:
        session = self._session(session_id)
        self._authorize(actor, session)
        return session

    def list_items(self, session_id: str, actor: Actor) -> list[VerificationItem]:
        session = self.get_session(session_id, actor)
        return self.store.list_items(session.id)

    def get_progress(
        self, session_id: str, actor: Actor, now: Optional[datetime] = None
    ) -> SessionProgress:
        now = now or self.clock()
        session = self.get_session(session_id, actor)
        total = session.total_transactions
        completion = round(session.verified_transactions * 100 / total) if total else 100
        return SessionProgress(
            session=session,
            completion_percentage=completion,
            pending_transactions=session.pending_transactions,
            time_remaining=format_time_remaining(session.deadline, now),
            urgency=get_deadline_status(session.deadline, now).urgency,
            elapsed_percentage=get_elapsed_percentage(session.created_at, session.deadline, now),
        )

    # ── Business operations ──────────────────────────────────

    def download_batch(
        self, session_id: str, actor: Actor, now: Optional[datetime] = None
    ) -> DownloadResult:
        """Hand out the batch CSV and move a fresh session to ``downloaded``."""
        now = now or self.clock()
        session = self._session(session_id)
        self._authorize(actor, session)
        check_actor(Transition.DOWNLOAD, actor.actor_type)
        batch = self._batch(session)
        self._ensure_batch_open(batch)

        path = batch.csv_file_path
        if not path or not self.files.exists(path):
            path = batch_csv_path(batch.business_id, batch.year_number, batch.week_number, batch.id)
            self.files.save_text(path, encode_batch_csv(self.store.list_items(session.id)))

        if session.status == SessionStatus.NOT_STARTED:
            session = self.transition(session, Transition.DOWNLOAD, actor, {"downloaded_at": now})
        else:
            next_state(session.status, Transition.DOWNLOAD)
            self.audit.record(
                AuditEventType.SESSION_DOWNLOADED,
                actor,
                "Batch file downloaded again",
                business_id=session.business_id,
                batch_id=session.payment_batch_id,
                session_id=session.id,
                metadata={"redownload": True},
            )

        signed = self.files.signed_url(path, now=now)
        return DownloadResult(session=session, download_url=signed.url, expires_at=signed.expires_at)

    def _decision_changes(
        self,
        actor: Actor,
        verified: bool,
        decision: Decision,
        rejection_reason: Optional[str],
        business_notes: Optional[str],
        now: datetime,
    ) -> Dict:
        return {
            "verified": verified,
            "verification_decision": decision,
            "rejection_reason": rejection_reason if decision == Decision.REJECTED else None,
            "business_notes": business_notes,
            "verified_at": now,
            "decided_by": actor.actor_id,
            "decided_by_type": actor.actor_type,
        }

    def _audit_decision(self, actor: Actor, session: VerificationSession, item: VerificationItem, source: str) -> None:
        approved = item.verification_decision == Decision.APPROVED
        metadata = {
            "source": source,
            "risk_score": item.risk_score,
            "recommendation": item.recommendation.value if item.recommendation else None,
        }
        if item.rejection_reason:
            metadata["rejection_reason"] = item.rejection_reason
        if approved and item.recommendation == Recommendation.REJECT:
            metadata["approved_against_recommendation"] = True
        self.audit.record(
            AuditEventType.TRANSACTION_APPROVED if approved else AuditEventType.TRANSACTION_REJECTED,
            actor,
            f"Transaction {item.transaction_id} {item.verification_decision.value}",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            transaction_id=item.transaction_id,
            metadata=metadata,
        )

    def _already_verified(self, actor: Actor, session: VerificationSession, item: VerificationItem) -> ConflictError:
        self.audit.record(
            AuditEventType.ALREADY_VERIFIED_ATTEMPT,
            actor,
            f"Attempt to re-decide already verified transaction {item.transaction_id}",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            transaction_id=item.transaction_id,
        )
        return ConflictError(
            f"Transaction {item.transaction_id} has already been verified",
            code="ALREADY_VERIFIED",
            details={
                "transaction_id": item.transaction_id,
                "verification_decision": (
                    item.verification_decision.value if item.verification_decision else None
                ),
            },
        )

    def decide_item(
        self,
        item_id: str,
        actor: Actor,
        verified: bool,
        decision: Optional[Decision] = None,
        rejection_reason: Optional[str] = None,
        business_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationItem:
        """Record one business decision on an undecided item."""
        now = now or self.clock()
        if actor.actor_type != ActorType.BUSINESS_USER:
            raise PermissionDenied(
                "Only the owning business can author verification decisions; "
                "administrators use the override path"
            )
        item = self._item(item_id)
        session = self._session(item.verification_session_id)
        self._authorize(actor, session)
        self._ensure_batch_open(self._batch(session))

        if item.is_decided:
            raise self._already_verified(actor, session, item)
        if session.status not in DECIDABLE_STATES:
            raise StateError(
                f"Session in state {session.status.value} does not accept decisions",
                current=session.status.value,
                allowed=[s.value for s in DECIDABLE_STATES],
            )
        self._ensure_before_deadline(session, now)

        decision = resolve_decision(verified, decision, rejection_reason, business_notes)
        changes = self._decision_changes(actor, verified, decision, rejection_reason, business_notes, now)
        updated = self.store.decide_item_if_undecided(item.id, changes)
        if updated is None:
            raise self._already_verified(actor, session, self._item(item_id))

        self._audit_decision(actor, session, updated, source="individual")
        self._advance(session.id, actor, now)
        return updated

    def submit_session(
        self,
        session_id: str,
        actor: Actor,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> VerificationSession:
        """Explicitly submit a fully decided session.

        ``expected_version`` makes the call optimistic: a caller that read
        an older version gets a ConflictError instead of acting on stale data.
        """
        now = now or self.clock()
        session = self._session(session_id)
        self._authorize(actor, session)
        if expected_version is not None and session.version != expected_version:
            raise ConflictError(
                f"Session {session_id} was modified concurrently",
                details={"current_state": session.status.value, "version": session.version},
            )
        self._ensure_batch_open(self._batch(session))
        if session.pending_transactions > 0 and session.status in (
            SessionStatus.DOWNLOADED,
            SessionStatus.IN_PROGRESS,
        ):
            raise StateError(
                f"{session.pending_transactions} transactions are still undecided",
                current=session.status.value,
                allowed=[SessionStatus.DOWNLOADED.value, SessionStatus.IN_PROGRESS.value],
                code="VERIFICATION_INCOMPLETE",
            )
        return self.transition(session, Transition.SUBMIT, actor, {"submitted_at": now})

    def upload_verification_results(
        self,
        session_id: str,
        actor: Actor,
        data: Optional[bytes],
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UploadResult:
        """Apply a bulk CSV of decisions.

        Shape errors reject the whole file. Unknown transaction ids are
        reported per row while every resolvable row is still applied.
        """
        now = now or self.clock()
        if data is None:
            raise ValidationFailed("No file provided", code="MISSING_FILE")
        check_upload(
            filename,
            content_type,
            len(data),
            max_bytes=settings.max_upload_bytes,
            allowed_types=[t.strip() for t in settings.ALLOWED_UPLOAD_TYPES.split(",")],
        )

        if actor.actor_type != ActorType.BUSINESS_USER:
            raise PermissionDenied("Only the owning business can upload verification results")
        session = self._session(session_id)
        self._authorize(actor, session)
        self._ensure_batch_open(self._batch(session))
        if session.status not in UPLOADABLE_STATES:
            raise StateError(
                f"Session in state {session.status.value} does not accept uploads",
                current=session.status.value,
                allowed=[s.value for s in UPLOADABLE_STATES],
            )
        self._ensure_before_deadline(session, now)

        stored_path = self.files.save_bytes(
            upload_path(session.business_id, session.id, uuid.uuid4().hex), data
        )
        self.audit.record(
            AuditEventType.CSV_UPLOADED,
            actor,
            f"Verification results uploaded ({len(data)} bytes)",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            metadata={"filename": filename, "path": stored_path, "size_bytes": len(data)},
        )

        try:
            rows = parse_verification_csv(decode_upload(data))
        except ValidationFailed as exc:
            self.audit.record(
                AuditEventType.CSV_VALIDATION_FAILED,
                actor,
                exc.message,
                business_id=session.business_id,
                batch_id=session.payment_batch_id,
                session_id=session.id,
                metadata={"code": exc.code, **exc.details},
            )
            raise

        summary, applied = self._apply_rows(session, actor, rows, now)
        if applied:
            session = self._advance(session.id, actor, now)
        else:
            session = self._session(session.id)

        status = "partial" if summary.errors else "complete"
        self.audit.record(
            AuditEventType.CSV_PROCESSED,
            actor,
            f"Processed {summary.processed_rows} of {summary.total_rows} rows",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            metadata={
                "status": status,
                "total_rows": summary.total_rows,
                "processed_rows": summary.processed_rows,
                "approved": summary.approved,
                "rejected": summary.rejected,
                "errors": len(summary.errors),
                "skipped": len(summary.skipped),
            },
        )
        logger.info(
            "upload_processed",
            session_id=session.id,
            status=status,
            processed_rows=summary.processed_rows,
            errors=len(summary.errors),
        )
        return UploadResult(status=status, session=session, processing_summary=summary)

    def _apply_rows(
        self,
        session: VerificationSession,
        actor: Actor,
        rows: List[ParsedRow],
        now: datetime,
    ) -> Tuple[ProcessingSummary, int]:
        items = {item.transaction_id: item for item in self.store.list_items(session.id)}
        summary = ProcessingSummary(total_rows=len(rows))
        seen: set[str] = set()

        for row in rows:
            if row.transaction_id in seen:
                summary.skipped.append(RowIssue(
                    row=row.row,
                    transaction_id=row.transaction_id,
                    error="Duplicate row for this transaction in the same file",
                ))
                continue
            seen.add(row.transaction_id)

            item = items.get(row.transaction_id)
            if item is None:
                summary.errors.append(RowIssue(
                    row=row.row, transaction_id=row.transaction_id, error=NOT_FOUND_IN_SESSION
                ))
                continue
            if item.is_decided:
                summary.skipped.append(RowIssue(
                    row=row.row,
                    transaction_id=row.transaction_id,
                    error=f"Transaction already verified as {item.verification_decision.value}",
                ))
                continue

            changes = self._decision_changes(
                actor, row.verified, row.decision, row.rejection_reason, row.business_notes, now
            )
            updated = self.store.decide_item_if_undecided(item.id, changes)
            if updated is None:
                summary.skipped.append(RowIssue(
                    row=row.row,
                    transaction_id=row.transaction_id,
                    error="Transaction was verified concurrently; row not applied",
                ))
                continue

            summary.processed_rows += 1
            if updated.verification_decision == Decision.APPROVED:
                summary.approved += 1
                if updated.recommendation == Recommendation.REJECT:
                    summary.warnings.append(RowIssue(
                        row=row.row,
                        transaction_id=row.transaction_id,
                        error="Approved despite a reject fraud recommendation",
                    ))
            else:
                summary.rejected += 1
                if updated.rejection_reason not in KNOWN_REJECTION_REASONS:
                    summary.warnings.append(RowIssue(
                        row=row.row,
                        transaction_id=row.transaction_id,
                        error=f"Rejection reason '{updated.rejection_reason}' is not a standard reason",
                    ))
            self._audit_decision(actor, session, updated, source="bulk_upload")

        return summary, summary.processed_rows

    # ── Admin operations ─────────────────────────────────────

    def complete_session(
        self,
        session_id: str,
        actor: Actor,
        admin_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationSession:
        now = now or self.clock()
        check_actor(Transition.COMPLETE, actor.actor_type)
        session = self._session(session_id)
        self._ensure_batch_open(self._batch(session))
        return self.transition(
            session,
            Transition.COMPLETE,
            actor,
            {"completed_at": now, "admin_notes": admin_notes},
            metadata={"admin_notes": admin_notes} if admin_notes else None,
        )

    def extend_session_deadline(
        self,
        session_id: str,
        actor: Actor,
        extension_hours: int,
        reason: str,
        now: Optional[datetime] = None,
    ) -> VerificationSession:
        now = now or self.clock()
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can extend deadlines")
        session = self._session(session_id)
        if session.is_terminal:
            raise StateError(
                f"Cannot extend a session in state {session.status.value}",
                current=session.status.value,
                allowed=[s.value for s in SessionStatus if s not in TERMINAL_SESSION_STATUSES],
            )
        check = can_extend_deadline(
            session.deadline, extension_hours, now, self.config.max_extension_hours
        )
        if not check.can_extend:
            raise ValidationFailed(check.reason, code="DEADLINE_EXTENSION_REJECTED")

        updated = self.store.update_session_if(
            session.id,
            session.status,
            session.version,
            # Reminders are re-scheduled against the new deadline
            {"deadline": check.new_deadline, "notifications_sent": []},
        )
        self.audit.record(
            AuditEventType.DEADLINE_EXTENDED,
            actor,
            f"Deadline extended by {extension_hours} hours",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            metadata={
                "previous_deadline": session.deadline.isoformat(),
                "new_deadline": check.new_deadline.isoformat(),
                "extension_hours": extension_hours,
                "reason": reason,
            },
        )
        return updated

    def override_item(
        self,
        item_id: str,
        actor: Actor,
        verified: bool,
        override_reason: str,
        decision: Optional[Decision] = None,
        rejection_reason: Optional[str] = None,
        business_notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationItem:
        """Administrator correction of a decided item, allowed in any session state.

        Undecided items belong to the owning business; an override can only
        replace a decision that already exists.
        """
        now = now or self.clock()
        if not actor.is_admin:
            raise PermissionDenied("Only administrators can override verification decisions")
        if not (override_reason or "").strip():
            raise ValidationFailed("An override reason is required", code="OVERRIDE_REASON_REQUIRED")
        item = self._item(item_id)
        if not item.is_decided:
            raise StateError(
                f"Transaction {item.transaction_id} has no decision to override",
                current="undecided",
                allowed=[d.value for d in Decision],
                code="ITEM_NOT_DECIDED",
            )
        session = self._session(item.verification_session_id)
        decision = resolve_decision(verified, decision, rejection_reason, business_notes)

        changes = self._decision_changes(actor, verified, decision, rejection_reason, business_notes, now)
        updated = self.store.override_item(item.id, changes)
        self.audit.record(
            AuditEventType.ADMIN_OVERRIDE,
            actor,
            f"Administrator override of transaction {item.transaction_id}",
            business_id=session.business_id,
            batch_id=session.payment_batch_id,
            session_id=session.id,
            transaction_id=item.transaction_id,
            metadata={
                "previous_decision": (
                    item.verification_decision.value if item.verification_decision else None
                ),
                "new_decision": decision.value,
                "override_reason": override_reason,
                "session_status": session.status.value,
            },
        )
        return updated
