"""In-memory durable store for batches, sessions, items and the audit log.

Every mutation happens under one re-entrant lock, and every status change
is a conditional write: ``update_*_if`` only applies when both the status
and the version still match what the caller read. Item decisions are keyed
on ``verified IS NULL`` so a bulk-upload row and a concurrent individual
decision can never both apply. Session counters are recomputed from the
items inside the same critical section as the write that changed them.

Records handed out are copies; mutating one never changes the stored state.
All data lives in memory and is lost on restart.
"""

import threading
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from settlement.errors import ConflictError, NotFound, StorageUnavailable
from settlement.models import (
    AuditEvent,
    AuditEventType,
    BatchStatus,
    Decision,
    FraudAssessment,
    FraudPatternRecord,
    PaymentBatch,
    SessionStatus,
    TERMINAL_SESSION_STATUSES,
    VerificationItem,
    VerificationSession,
    utcnow,
)

BatchKey = Tuple[str, int, int]


def _as_set(expected: Union[Any, Iterable[Any]]) -> set:
    if isinstance(expected, (str, bytes)) or not isinstance(expected, Iterable):
        return {expected}
    return set(expected)


class MemoryStore:
    """Thread-safe in-memory implementation of the storage collaborator."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # Flipped by operators (and tests) to simulate a storage outage
        self.available = True

        self._businesses: Dict[str, str] = {}
        self._batches: Dict[str, PaymentBatch] = {}
        # (business_id, week, year) -> batch id, for non-cancelled batches only
        self._batch_keys: Dict[BatchKey, str] = {}
        self._sessions: Dict[str, VerificationSession] = {}
        self._session_by_batch: Dict[str, str] = {}
        self._items: Dict[str, VerificationItem] = {}
        self._items_by_session: Dict[str, List[str]] = {}
        self._assessments: List[FraudAssessment] = []
        self._patterns: List[FraudPatternRecord] = []
        # Chronological audit log
        self._audit_log: List[AuditEvent] = []

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailable("Verification storage is unavailable")

    # ── Businesses ───────────────────────────────────────────

    def register_business(self, business_id: str, name: Optional[str] = None) -> None:
        with self._lock:
            self._check_available()
            self._businesses[business_id] = name or business_id

    def has_business(self, business_id: str) -> bool:
        with self._lock:
            self._check_available()
            return business_id in self._businesses

    # ── Batches and sessions ─────────────────────────────────

    def create_batch(
        self,
        batch: PaymentBatch,
        session: VerificationSession,
        items: List[VerificationItem],
    ) -> PaymentBatch:
        """Insert a batch with its session and items as one atomic unit.

        Raises ConflictError(BATCH_ALREADY_EXISTS) when a non-cancelled batch
        already exists for the same business, week and year.
        """
        key = (batch.business_id, batch.week_number, batch.year_number)
        with self._lock:
            self._check_available()
            if key in self._batch_keys:
                raise ConflictError(
                    f"A batch already exists for business {batch.business_id}, "
                    f"week {batch.week_number}/{batch.year_number}",
                    code="BATCH_ALREADY_EXISTS",
                    details={"existing_batch_id": self._batch_keys[key]},
                )
            self._batch_keys[key] = batch.id
            self._batches[batch.id] = batch.model_copy(deep=True)
            self._sessions[session.id] = session.model_copy(deep=True)
            self._session_by_batch[batch.id] = session.id
            self._items_by_session[session.id] = []
            for item in items:
                self._items[item.id] = item.model_copy(deep=True)
                self._items_by_session[session.id].append(item.id)
            self._recompute_counters(session.id)
            return self._batches[batch.id].model_copy(deep=True)

    def get_batch(self, batch_id: str) -> Optional[PaymentBatch]:
        with self._lock:
            self._check_available()
            batch = self._batches.get(batch_id)
            return batch.model_copy(deep=True) if batch else None

    def list_batches(
        self,
        business_id: Optional[str] = None,
        status: Optional[BatchStatus] = None,
    ) -> List[PaymentBatch]:
        with self._lock:
            self._check_available()
            results = [
                b.model_copy(deep=True)
                for b in self._batches.values()
                if (business_id is None or b.business_id == business_id)
                and (status is None or b.status == status)
            ]
        return sorted(results, key=lambda b: b.created_at)

    def update_batch_if(
        self,
        batch_id: str,
        expected_status: Union[BatchStatus, Iterable[BatchStatus]],
        expected_version: Optional[int],
        changes: Dict[str, Any],
    ) -> PaymentBatch:
        """Apply ``changes`` only if status and version still match.

        A cancelled batch frees its (business, week, year) slot.
        """
        with self._lock:
            self._check_available()
            batch = self._batches.get(batch_id)
            if batch is None:
                raise NotFound(f"Batch {batch_id} not found", code="BATCH_NOT_FOUND")
            if batch.status not in _as_set(expected_status) or (
                expected_version is not None and batch.version != expected_version
            ):
                raise ConflictError(
                    f"Batch {batch_id} was modified concurrently",
                    details={"current_state": batch.status.value, "version": batch.version},
                )
            updated = batch.model_copy(
                update={**changes, "version": batch.version + 1, "updated_at": utcnow()}
            )
            self._batches[batch_id] = updated
            if updated.status == BatchStatus.CANCELLED:
                key = (updated.business_id, updated.week_number, updated.year_number)
                if self._batch_keys.get(key) == batch_id:
                    del self._batch_keys[key]
            return updated.model_copy(deep=True)

    def get_session(self, session_id: str) -> Optional[VerificationSession]:
        with self._lock:
            self._check_available()
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def get_session_by_batch(self, batch_id: str) -> Optional[VerificationSession]:
        with self._lock:
            session_id = self._session_by_batch.get(batch_id)
            return self.get_session(session_id) if session_id else None

    def update_session_if(
        self,
        session_id: str,
        expected_status: Union[SessionStatus, Iterable[SessionStatus]],
        expected_version: Optional[int],
        changes: Dict[str, Any],
    ) -> VerificationSession:
        """Compare-and-swap on (status, version). Raises ConflictError on a lost race."""
        with self._lock:
            self._check_available()
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound(f"Session {session_id} not found", code="SESSION_NOT_FOUND")
            if session.status not in _as_set(expected_status) or (
                expected_version is not None and session.version != expected_version
            ):
                raise ConflictError(
                    f"Session {session_id} was modified concurrently",
                    details={
                        "current_state": session.status.value,
                        "version": session.version,
                    },
                )
            updated = session.model_copy(update={**changes, "version": session.version + 1})
            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def sessions_past_deadline(self, now: datetime) -> List[VerificationSession]:
        """Non-terminal sessions whose deadline is at or before ``now``."""
        with self._lock:
            self._check_available()
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.status not in TERMINAL_SESSION_STATUSES and s.deadline <= now
            ]

    def active_sessions(self) -> List[VerificationSession]:
        with self._lock:
            self._check_available()
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.status not in TERMINAL_SESSION_STATUSES
            ]

    # ── Items ────────────────────────────────────────────────

    def get_item(self, item_id: str) -> Optional[VerificationItem]:
        with self._lock:
            self._check_available()
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def list_items(self, session_id: str) -> List[VerificationItem]:
        with self._lock:
            self._check_available()
            return [
                self._items[item_id].model_copy(deep=True)
                for item_id in self._items_by_session.get(session_id, [])
            ]

    def find_item(self, session_id: str, transaction_id: str) -> Optional[VerificationItem]:
        with self._lock:
            self._check_available()
            for item_id in self._items_by_session.get(session_id, []):
                item = self._items[item_id]
                if item.transaction_id == transaction_id:
                    return item.model_copy(deep=True)
            return None

    def decide_item_if_undecided(
        self, item_id: str, changes: Dict[str, Any]
    ) -> Optional[VerificationItem]:
        """Record a decision only while ``verified IS NULL``.

        Returns the updated item, or None when another writer already decided
        it. The owning session's counters are recomputed in the same critical
        section.
        """
        with self._lock:
            self._check_available()
            item = self._items.get(item_id)
            if item is None:
                raise NotFound(f"Item {item_id} not found", code="NOT_FOUND")
            if item.verified is not None:
                return None
            updated = item.model_copy(update=changes)
            self._items[item_id] = updated
            self._recompute_counters(updated.verification_session_id)
            return updated.model_copy(deep=True)

    def decide_all_undecided(
        self, session_id: str, changes: Dict[str, Any]
    ) -> List[VerificationItem]:
        """Decide every still-undecided item of a session in one atomic step."""
        with self._lock:
            self._check_available()
            decided: List[VerificationItem] = []
            for item_id in self._items_by_session.get(session_id, []):
                item = self._items[item_id]
                if item.verified is None:
                    updated = item.model_copy(update=changes)
                    self._items[item_id] = updated
                    decided.append(updated.model_copy(deep=True))
            self._recompute_counters(session_id)
            return decided

    def override_item(self, item_id: str, changes: Dict[str, Any]) -> VerificationItem:
        """Unconditional write used only by the audited administrator override."""
        with self._lock:
            self._check_available()
            item = self._items.get(item_id)
            if item is None:
                raise NotFound(f"Item {item_id} not found", code="NOT_FOUND")
            updated = item.model_copy(update=changes)
            self._items[item_id] = updated
            self._recompute_counters(updated.verification_session_id)
            return updated.model_copy(deep=True)

    # ── Aggregates ───────────────────────────────────────────

    def _recompute_counters(self, session_id: str) -> None:
        items = [self._items[i] for i in self._items_by_session.get(session_id, [])]
        approved = sum(1 for i in items if i.verification_decision == Decision.APPROVED)
        rejected = sum(1 for i in items if i.verification_decision == Decision.REJECTED)
        session = self._sessions[session_id]
        counters = {
            "total_transactions": len(items),
            "verified_transactions": approved + rejected,
            "approved_count": approved,
            "rejected_count": rejected,
        }
        if any(getattr(session, name) != value for name, value in counters.items()):
            self._sessions[session_id] = session.model_copy(
                update={**counters, "version": session.version + 1}
            )
        if session.payment_batch_id in self._batches:
            self._recompute_totals(session.payment_batch_id)

    def _recompute_totals(self, batch_id: str) -> None:
        session_id = self._session_by_batch.get(batch_id)
        items = [self._items[i] for i in self._items_by_session.get(session_id, [])]
        batch = self._batches[batch_id]
        self._batches[batch_id] = batch.model_copy(
            update={
                "total_transactions": len(items),
                "total_amount": sum((i.transaction_amount for i in items), Decimal("0")),
            }
        )

    def recompute_batch_totals(self, batch_id: str) -> PaymentBatch:
        with self._lock:
            self._check_available()
            if batch_id not in self._batches:
                raise NotFound(f"Batch {batch_id} not found", code="BATCH_NOT_FOUND")
            self._recompute_totals(batch_id)
            return self._batches[batch_id].model_copy(deep=True)

    # ── Fraud records ────────────────────────────────────────

    def add_assessment(self, assessment: FraudAssessment) -> None:
        with self._lock:
            self._check_available()
            self._assessments.append(assessment.model_copy(deep=True))

    def list_assessments(
        self,
        batch_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> List[FraudAssessment]:
        with self._lock:
            self._check_available()
            return [
                a.model_copy(deep=True)
                for a in self._assessments
                if (batch_id is None or a.batch_id == batch_id)
                and (transaction_id is None or a.transaction_id == transaction_id)
            ]

    def add_fraud_pattern(self, record: FraudPatternRecord) -> None:
        with self._lock:
            self._check_available()
            self._patterns.append(record.model_copy(deep=True))

    def list_fraud_patterns(self, business_id: str) -> List[FraudPatternRecord]:
        """Pattern history for a business, most recent first."""
        with self._lock:
            self._check_available()
            records = [p.model_copy(deep=True) for p in self._patterns if p.business_id == business_id]
        records.reverse()
        return records

    # ── Audit log ────────────────────────────────────────────

    def add_audit(self, event: AuditEvent) -> None:
        """Append an event to the audit log."""
        with self._lock:
            self._check_available()
            self._audit_log.append(event.model_copy(deep=True))

    def get_audit_log(
        self,
        batch_id: Optional[str] = None,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """Return audit events, optionally filtered by subject, type and time range."""
        with self._lock:
            self._check_available()
            entries = list(self._audit_log)
        results: List[AuditEvent] = []
        for entry in entries:
            if batch_id is not None and entry.batch_id != batch_id:
                continue
            if session_id is not None and entry.session_id != session_id:
                continue
            if transaction_id is not None and entry.transaction_id != transaction_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if since is not None and entry.created_at < since:
                continue
            if until is not None and entry.created_at > until:
                continue
            results.append(entry.model_copy(deep=True))
        return results
