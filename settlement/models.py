"""Pydantic models for the payment verification engine.

Statuses are closed enums; the allowed transitions between session states
live in settlement.workflow.states as an explicit lookup table. Money is
carried as Decimal (SEK) end to end.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def assume_utc(value: datetime) -> datetime:
    """Naive timestamps coming from CSV exports are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Enumerations ─────────────────────────────────────────────


class BatchStatus(str, Enum):
    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    AUTO_APPROVED = "auto_approved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    DOWNLOADED = "downloaded"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    AUTO_APPROVED = "auto_approved"
    EXPIRED = "expired"


TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.AUTO_APPROVED,
    BatchStatus.EXPIRED,
    BatchStatus.CANCELLED,
})

TERMINAL_SESSION_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.AUTO_APPROVED,
    SessionStatus.EXPIRED,
})


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Recommendation(str, Enum):
    APPROVE = "approve"
    REVIEW = "review"
    REJECT = "reject"


class ActorType(str, Enum):
    BUSINESS_USER = "business_user"
    ADMIN_USER = "admin_user"
    SYSTEM = "system"


class NotificationType(str, Enum):
    BATCH_CREATED = "batch_created"
    WARNING_48_HOUR = "48_hour_warning"
    WARNING_24_HOUR = "24_hour_warning"
    WARNING_4_HOUR = "4_hour_warning"
    WARNING_1_HOUR = "1_hour_warning"


class AuditEventType(str, Enum):
    # Batch lifecycle
    BATCH_CREATED = "batch_created"
    BATCH_RELEASED = "batch_released"
    BATCH_CANCELLED = "batch_cancelled"
    BATCH_STATUS_CHANGED = "batch_status_changed"
    # Session lifecycle
    SESSION_CREATED = "session_created"
    SESSION_DOWNLOADED = "session_downloaded"
    SESSION_STARTED = "session_started"
    SESSION_SUBMITTED = "session_submitted"
    SESSION_COMPLETED = "session_completed"
    SESSION_AUTO_APPROVED = "session_auto_approved"
    SESSION_EXPIRED = "session_expired"
    DEADLINE_EXTENDED = "deadline_extended"
    # Item decisions
    TRANSACTION_APPROVED = "transaction_approved"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_AUTO_APPROVED = "transaction_auto_approved"
    ALREADY_VERIFIED_ATTEMPT = "already_verified_attempt"
    ADMIN_OVERRIDE = "admin_override"
    # Bulk upload
    CSV_UPLOADED = "csv_uploaded"
    CSV_PROCESSED = "csv_processed"
    CSV_VALIDATION_FAILED = "csv_validation_failed"
    # Fraud
    FRAUD_ASSESSMENT_COMPLETED = "fraud_assessment_completed"
    FRAUD_PATTERN_DETECTED = "fraud_pattern_detected"
    # Notifications
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"


class Urgency(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


# Well-known rejection reasons offered to businesses. Free-form reasons are
# accepted too; these are what the download template documents.
KNOWN_REJECTION_REASONS = (
    "amount_mismatch",
    "customer_dispute",
    "invalid_transaction",
    "duplicate_transaction",
    "missing_documentation",
    "quality_threshold_not_met",
    "fraud_suspected",
    "technical_error",
    "policy_violation",
    "other",
)


# ── Tunable thresholds ───────────────────────────────────────


class VerificationConfig(BaseModel):
    """Tunable thresholds for deadlines, auto-approval and fraud scoring."""

    # Deadlines
    verification_days: int = 7
    max_extension_hours: int = 168
    # None: batches may not predate the ISO year the batch is created in
    min_batch_year: Optional[int] = None

    # Auto-approval ceilings: all must hold for a batch to auto-approve
    auto_approval_max_amount: Decimal = Decimal("100000")
    auto_approval_max_transactions: int = 1000

    # Risk score -> recommendation
    low_risk_max: int = 30
    high_risk_min: int = 70

    # Risk signals
    very_high_amount: Decimal = Decimal("10000")
    high_amount: Decimal = Decimal("5000")
    elevated_amount: Decimal = Decimal("2000")
    night_start_hour: int = 0
    night_end_hour: int = 5
    stale_after_days: int = 90

    # Batch pattern detection
    velocity_min_count: int = 5
    velocity_window_minutes: int = 10
    clustering_thresholds: List[Decimal] = [Decimal("1000")]
    clustering_band: Decimal = Decimal("0.05")
    clustering_min_count: int = 3
    time_cluster_min_count: int = 5
    time_cluster_window_minutes: int = 5

    @model_validator(mode="after")
    def check_risk_bounds(self) -> "VerificationConfig":
        if not 0 <= self.low_risk_max < self.high_risk_min <= 100:
            raise ValueError("low_risk_max must be below high_risk_min, both within 0-100")
        return self


# ── Actors and inputs ────────────────────────────────────────


class Actor(BaseModel):
    """Who is performing an operation. Authentication happens upstream."""

    actor_type: ActorType
    actor_id: str
    business_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.actor_type == ActorType.ADMIN_USER

    @property
    def is_system(self) -> bool:
        return self.actor_type == ActorType.SYSTEM


SYSTEM_ACTOR = Actor(actor_type=ActorType.SYSTEM, actor_id="system")


class TransactionRecord(BaseModel):
    """A candidate cash-back transaction as supplied for batch creation."""

    transaction_id: str = Field(min_length=1, max_length=50)
    amount: Decimal
    transaction_time: datetime
    customer_feedback_id: Optional[str] = None
    phone_last_four: Optional[str] = None
    store_code: Optional[str] = None
    quality_score: Optional[int] = None
    reward_percentage: Optional[Decimal] = None
    reward_amount: Optional[Decimal] = None

    @field_validator("transaction_time")
    @classmethod
    def normalize_transaction_time(cls, value: datetime) -> datetime:
        return assume_utc(value)


class RuleResult(BaseModel):
    """Output of an individual risk signal check."""

    score_delta: int  # Points to add to cumulative risk score
    reasons: list[str]
    indicators: list[str]


# ── Durable records ──────────────────────────────────────────


class PaymentBatch(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    week_number: int
    year_number: int
    status: BatchStatus = BatchStatus.DRAFT
    total_transactions: int = 0
    total_amount: Decimal = Decimal("0")
    deadline: datetime
    auto_approval_enabled: bool = True
    csv_file_path: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class VerificationSession(BaseModel):
    id: str = Field(default_factory=new_id)
    payment_batch_id: str
    business_id: str
    status: SessionStatus = SessionStatus.NOT_STARTED
    total_transactions: int = 0
    verified_transactions: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    deadline: datetime
    created_at: datetime = Field(default_factory=utcnow)
    downloaded_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    notifications_sent: list[str] = []
    version: int = 1

    @property
    def pending_transactions(self) -> int:
        return self.total_transactions - self.verified_transactions

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


class VerificationItem(BaseModel):
    id: str = Field(default_factory=new_id)
    verification_session_id: str
    transaction_id: str
    customer_feedback_id: Optional[str] = None
    transaction_amount: Decimal
    transaction_time: datetime
    phone_last_four: Optional[str] = None
    store_code: Optional[str] = None
    quality_score: Optional[int] = None
    reward_percentage: Optional[Decimal] = None
    reward_amount: Optional[Decimal] = None
    verified: Optional[bool] = None
    verification_decision: Optional[Decision] = None
    rejection_reason: Optional[str] = None
    business_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decided_by_type: Optional[ActorType] = None
    risk_score: Optional[int] = None
    recommendation: Optional[Recommendation] = None

    @field_validator("transaction_time")
    @classmethod
    def normalize_transaction_time(cls, value: datetime) -> datetime:
        return assume_utc(value)

    @property
    def is_decided(self) -> bool:
        return self.verified is not None

    def to_transaction(self) -> TransactionRecord:
        return TransactionRecord(
            transaction_id=self.transaction_id,
            amount=self.transaction_amount,
            transaction_time=self.transaction_time,
            customer_feedback_id=self.customer_feedback_id,
            phone_last_four=self.phone_last_four,
            store_code=self.store_code,
            quality_score=self.quality_score,
            reward_percentage=self.reward_percentage,
            reward_amount=self.reward_amount,
        )


class FraudAssessment(BaseModel):
    id: str = Field(default_factory=new_id)
    transaction_id: Optional[str] = None
    batch_id: Optional[str] = None
    risk_score: int = Field(ge=0, le=100)
    fraud_indicators: list[str] = []
    confidence_score: float = Field(ge=0.0, le=1.0)
    recommendation: Recommendation
    patterns_detected: list[str] = []
    advisory_used: bool = False
    explanation: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class FraudPatternRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    batch_id: str
    business_id: str
    patterns_detected: list[str]
    confidence_score: float
    detected_at: datetime = Field(default_factory=utcnow)


class AuditEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    event_type: AuditEventType
    actor_type: ActorType
    actor_id: str
    business_id: Optional[str] = None
    batch_id: Optional[str] = None
    session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    description: str
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


# ── Bulk upload results ──────────────────────────────────────


class FieldError(BaseModel):
    """A shape problem in an uploaded CSV row (rejects the whole file)."""

    row: int
    field: str
    message: str
    value: Optional[str] = None


class RowIssue(BaseModel):
    """A per-row reference problem or note in a partially applied upload."""

    row: int
    transaction_id: str
    error: str


class ProcessingSummary(BaseModel):
    total_rows: int = 0
    processed_rows: int = 0
    approved: int = 0
    rejected: int = 0
    errors: list[RowIssue] = []
    skipped: list[RowIssue] = []
    warnings: list[RowIssue] = []


class UploadResult(BaseModel):
    status: Literal["complete", "partial"]
    session: VerificationSession
    processing_summary: ProcessingSummary


class SweepResult(BaseModel):
    auto_approved: int = 0
    expired: int = 0
    skipped: int = 0
    errors: list[Dict[str, str]] = []


class SessionProgress(BaseModel):
    session: VerificationSession
    completion_percentage: int
    pending_transactions: int
    time_remaining: str
    urgency: Urgency
    elapsed_percentage: float


# ── API request bodies ───────────────────────────────────────


class CreateBatchRequest(BaseModel):
    business_id: str
    week_number: int
    year_number: int
    transactions: list[TransactionRecord]
    deadline: Optional[datetime] = None
    auto_approval_enabled: bool = True
    release: bool = True


class DecideItemRequest(BaseModel):
    verified: bool
    verification_decision: Optional[Decision] = None
    rejection_reason: Optional[str] = None
    business_notes: Optional[str] = None


class CompleteSessionRequest(BaseModel):
    admin_notes: Optional[str] = None


class ExtendDeadlineRequest(BaseModel):
    extension_hours: int = Field(gt=0)
    reason: str


class SweepRequest(BaseModel):
    now: Optional[datetime] = None


class OverrideItemRequest(BaseModel):
    verified: bool
    verification_decision: Optional[Decision] = None
    rejection_reason: Optional[str] = None
    business_notes: Optional[str] = None
    override_reason: str = Field(min_length=1)


class SubmitSessionRequest(BaseModel):
    expected_version: Optional[int] = None


# ── API responses ────────────────────────────────────────────


class DownloadResult(BaseModel):
    session: VerificationSession
    download_url: str
    expires_at: datetime


class BatchDetail(BaseModel):
    batch: PaymentBatch
    session: Optional[VerificationSession] = None
    fraud_assessment: Optional[FraudAssessment] = None


class CancelBatchRequest(BaseModel):
    reason: str = Field(min_length=1)


class RegisterBusinessRequest(BaseModel):
    business_id: str = Field(min_length=1)
    name: Optional[str] = None


class RiskThresholds(BaseModel):
    low_risk_max: int
    high_risk_min: int
