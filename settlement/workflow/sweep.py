"""Deadline sweep and reminder dispatch.

Invoked periodically by a scheduler (or POST /api/sweep). For every
non-terminal session whose deadline has passed, the sweep decides between
auto-approval and expiry:

  auto_approved  deadline passed, auto-approval enabled, batch within the
                 amount and count ceilings, and no undecided item carries a
                 ``reject`` fraud recommendation. Undecided items are then
                 approved with a system-authored decision.
  expired        any of the above fails; an administrator must resolve it.

Re-running the sweep is a no-op for sessions that are already terminal.
"""

from datetime import datetime
from typing import Callable, List, Optional

import structlog

from settlement.audit import AuditRecorder
from settlement.deadlines import (
    get_due_notifications,
    get_scheduled_notifications,
    is_eligible_for_auto_approval,
)
from settlement.errors import ConflictError, StateError
from settlement.models import (
    SYSTEM_ACTOR,
    ActorType,
    AuditEventType,
    BatchStatus,
    Decision,
    PaymentBatch,
    Recommendation,
    SweepResult,
    VerificationConfig,
    VerificationSession,
    utcnow,
)
from settlement.notifications import NotificationDispatcher
from settlement.storage.memory import MemoryStore
from settlement.workflow.sessions import SessionWorkflow
from settlement.workflow.states import Transition

logger = structlog.get_logger(__name__)

SWEEP_ATTEMPTS = 3

# Batches the sweep leaves alone
UNSWEPT_BATCH_STATUSES = (BatchStatus.DRAFT, BatchStatus.CANCELLED)


class DeadlineSweeper:
    def __init__(
        self,
        store: MemoryStore,
        workflow: SessionWorkflow,
        notifier: NotificationDispatcher,
        audit: AuditRecorder,
        config: VerificationConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.workflow = workflow
        self.notifier = notifier
        self.audit = audit
        self.config = config
        self.clock = clock

    def fraud_blocked(self, session_id: str) -> bool:
        """True when an undecided item is recommended for rejection."""
        return any(
            item.verified is None and item.recommendation == Recommendation.REJECT
            for item in self.store.list_items(session_id)
        )

    def ineligibility_reasons(
        self, session: VerificationSession, batch: PaymentBatch, now: datetime
    ) -> List[str]:
        reasons: List[str] = []
        if now < session.deadline:
            reasons.append("deadline_not_passed")
        if not batch.auto_approval_enabled:
            reasons.append("auto_approval_disabled")
        if batch.total_amount > self.config.auto_approval_max_amount:
            reasons.append("amount_ceiling_exceeded")
        if batch.total_transactions > self.config.auto_approval_max_transactions:
            reasons.append("count_ceiling_exceeded")
        if self.fraud_blocked(session.id):
            reasons.append("fraud_reject_pending")
        return reasons

    def _resolve(self, session: VerificationSession, batch: PaymentBatch, now: datetime) -> str:
        # The session deadline may have been extended past the batch deadline
        candidate = batch.model_copy(update={"deadline": session.deadline})
        eligible = is_eligible_for_auto_approval(candidate, now, self.config) and not self.fraud_blocked(session.id)

        if not eligible:
            reasons = self.ineligibility_reasons(session, batch, now)
            self.workflow.transition(
                session,
                Transition.EXPIRE,
                SYSTEM_ACTOR,
                {"completed_at": now},
                metadata={"reasons": reasons},
            )
            return "expired"

        self.workflow.transition(
            session,
            Transition.AUTO_APPROVE,
            SYSTEM_ACTOR,
            {"completed_at": now},
            metadata={
                "total_amount": str(batch.total_amount),
                "total_transactions": batch.total_transactions,
                "pending_transactions": session.pending_transactions,
            },
        )
        approved = self.store.decide_all_undecided(
            session.id,
            {
                "verified": True,
                "verification_decision": Decision.APPROVED,
                "rejection_reason": None,
                "verified_at": now,
                "decided_by": SYSTEM_ACTOR.actor_id,
                "decided_by_type": ActorType.SYSTEM,
            },
        )
        for item in approved:
            self.audit.record(
                AuditEventType.TRANSACTION_AUTO_APPROVED,
                SYSTEM_ACTOR,
                f"Transaction {item.transaction_id} auto-approved at deadline",
                business_id=session.business_id,
                batch_id=session.payment_batch_id,
                session_id=session.id,
                transaction_id=item.transaction_id,
                metadata={"risk_score": item.risk_score},
            )
        return "auto_approved"

    def sweep_deadlines(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or self.clock()
        result = SweepResult()

        for candidate in self.store.sessions_past_deadline(now):
            outcome = "skipped"
            for _ in range(SWEEP_ATTEMPTS):
                session = self.store.get_session(candidate.id)
                if session is None or session.is_terminal or now < session.deadline:
                    break
                batch = self.store.get_batch(session.payment_batch_id)
                if batch is None or batch.status in UNSWEPT_BATCH_STATUSES:
                    break
                try:
                    outcome = self._resolve(session, batch, now)
                    break
                except ConflictError:
                    # A concurrent writer touched the session; re-read and retry
                    continue
                except StateError as exc:
                    result.errors.append({"session_id": session.id, "error": exc.message})
                    break

            if outcome == "auto_approved":
                result.auto_approved += 1
            elif outcome == "expired":
                result.expired += 1
            else:
                result.skipped += 1

        logger.info(
            "deadline_sweep_completed",
            auto_approved=result.auto_approved,
            expired=result.expired,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    def dispatch_deadline_reminders(self, now: Optional[datetime] = None) -> int:
        """Send the most urgent due, unsent reminder for each active session."""
        now = now or self.clock()
        sent = 0
        for session in self.store.active_sessions():
            if now >= session.deadline:
                continue
            batch = self.store.get_batch(session.payment_batch_id)
            if batch is None or batch.status in UNSWEPT_BATCH_STATUSES:
                continue

            due = [
                entry
                for entry in get_due_notifications(get_scheduled_notifications(session.deadline), now)
                if entry.type.value not in session.notifications_sent
            ]
            if not due:
                continue

            most_urgent = max(due, key=lambda entry: entry.scheduled_at)
            if not self.notifier.send_deadline_reminder(session, most_urgent.type, now):
                continue
            # Older reminders that were never sent are superseded
            self._mark_sent(session.id, [entry.type.value for entry in due])
            sent += 1
        return sent

    def _mark_sent(self, session_id: str, notification_types: List[str]) -> None:
        for _ in range(SWEEP_ATTEMPTS):
            session = self.store.get_session(session_id)
            if session is None:
                return
            merged = session.notifications_sent + [
                t for t in notification_types if t not in session.notifications_sent
            ]
            try:
                self.store.update_session_if(
                    session.id, session.status, session.version, {"notifications_sent": merged}
                )
                return
            except ConflictError:
                continue
        logger.warning("reminder_mark_failed", session_id=session_id)
