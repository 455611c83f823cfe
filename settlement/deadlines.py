"""Verification deadline arithmetic.

Every function here is pure: the reference clock is passed in as ``now``
(defaulting to the current UTC time), nothing touches storage, and nothing
raises for well-formed datetimes. Extension requests are validated by
returning an ExtensionCheck rather than raising, so callers decide how to
surface the refusal.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol, Set

from settlement.models import NotificationType, Urgency, VerificationConfig, utcnow

DEFAULT_VERIFICATION_DAYS = 7
MAX_EXTENSION_HOURS = 168

CRITICAL_HOURS = 4
WARNING_HOURS = 24

# Reminder offsets before the deadline, most distant first
NOTIFICATION_OFFSETS = (
    (NotificationType.WARNING_48_HOUR, timedelta(hours=48)),
    (NotificationType.WARNING_24_HOUR, timedelta(hours=24)),
    (NotificationType.WARNING_4_HOUR, timedelta(hours=4)),
    (NotificationType.WARNING_1_HOUR, timedelta(hours=1)),
)


class AutoApprovalCandidate(Protocol):
    """Anything shaped like a PaymentBatch for eligibility checks."""

    deadline: datetime
    auto_approval_enabled: bool
    total_amount: Decimal
    total_transactions: int


@dataclass(frozen=True)
class TimeRemaining:
    days: int
    hours: int
    minutes: int
    seconds: int
    total_milliseconds: int
    is_expired: bool


@dataclass(frozen=True)
class DeadlineStatus:
    urgency: Urgency
    hours_remaining: int
    is_expired: bool
    is_critical: bool


@dataclass(frozen=True)
class ExtensionCheck:
    can_extend: bool
    reason: Optional[str] = None
    new_deadline: Optional[datetime] = None


@dataclass(frozen=True)
class ScheduledNotification:
    type: NotificationType
    scheduled_at: datetime


@dataclass(frozen=True)
class Countdown:
    deadline: datetime
    time_remaining: TimeRemaining
    status: DeadlineStatus
    formatted_time: str
    progress_percentage: float
    is_active: bool


# ── Deadline construction ────────────────────────────────────


def calculate_deadline(
    start: Optional[datetime] = None,
    days: int = DEFAULT_VERIFICATION_DAYS,
) -> datetime:
    """Return ``start`` plus ``days`` full 24-hour days."""
    start = start or utcnow()
    return start + timedelta(days=days)


def _easter_sunday(year: int) -> date:
    """Gregorian Easter (anonymous Gregorian algorithm)."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    shift = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * shift) // 451
    month, day = divmod(h + shift - 7 * m + 114, 31)
    return date(year, month, day + 1)


def swedish_holidays(year: int) -> Set[date]:
    """Swedish public holidays (and de facto closed days) for ``year``."""
    easter = _easter_sunday(year)
    # Midsummer Eve is the Friday between 19 and 25 June
    midsummer_eve = next(
        date(year, 6, day) for day in range(19, 26) if date(year, 6, day).weekday() == 4
    )
    return {
        date(year, 1, 1),
        date(year, 1, 6),
        easter - timedelta(days=2),   # Good Friday
        easter + timedelta(days=1),   # Easter Monday
        date(year, 5, 1),
        easter + timedelta(days=39),  # Ascension Day
        date(year, 6, 6),
        midsummer_eve,
        date(year, 12, 24),
        date(year, 12, 25),
        date(year, 12, 26),
        date(year, 12, 31),
    }


def calculate_business_day_deadline(
    start: datetime,
    business_days: int,
    holidays: Optional[Iterable[date]] = None,
) -> datetime:
    """Step forward day by day, counting only weekdays that are not holidays.

    The returned deadline keeps the time of day of ``start``. When no
    holiday calendar is supplied the Swedish calendar is used for every year
    the walk touches.
    """
    holiday_set: Optional[Set[date]] = set(holidays) if holidays is not None else None
    years_loaded: Set[int] = set()
    default_calendar: Set[date] = set()

    current = start
    counted = 0
    while counted < business_days:
        current = current + timedelta(days=1)
        day = current.date()
        if holiday_set is None and day.year not in years_loaded:
            default_calendar |= swedish_holidays(day.year)
            years_loaded.add(day.year)
        calendar = holiday_set if holiday_set is not None else default_calendar
        if day.weekday() >= 5 or day in calendar:
            continue
        counted += 1
    return current


# ── Remaining time and urgency ───────────────────────────────


def get_time_remaining(deadline: datetime, now: Optional[datetime] = None) -> TimeRemaining:
    now = now or utcnow()
    if now >= deadline:
        return TimeRemaining(0, 0, 0, 0, 0, True)

    delta = deadline - now
    total_ms = delta.days * 86_400_000 + delta.seconds * 1000 + delta.microseconds // 1000
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return TimeRemaining(
        days=delta.days,
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        total_milliseconds=total_ms,
        is_expired=False,
    )


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}" if value == 1 else f"{value} {unit}s"


def format_time_remaining(deadline: datetime, now: Optional[datetime] = None) -> str:
    """Human readable countdown, e.g. ``2 days, 5 hours, 30 minutes``."""
    remaining = get_time_remaining(deadline, now)
    if remaining.is_expired:
        return "expired"

    parts: List[str] = []
    if remaining.days:
        parts.append(_plural(remaining.days, "day"))
    if remaining.hours:
        parts.append(_plural(remaining.hours, "hour"))
    if remaining.minutes or not parts:
        parts.append(_plural(remaining.minutes, "minute"))
    return ", ".join(parts)


def get_deadline_status(deadline: datetime, now: Optional[datetime] = None) -> DeadlineStatus:
    """Bucket the remaining time into an urgency tier."""
    now = now or utcnow()
    hours_remaining = (deadline - now).total_seconds() / 3600

    if hours_remaining <= 0:
        urgency = Urgency.EXPIRED
    elif hours_remaining <= CRITICAL_HOURS:
        urgency = Urgency.CRITICAL
    elif hours_remaining <= WARNING_HOURS:
        urgency = Urgency.WARNING
    else:
        urgency = Urgency.NORMAL

    return DeadlineStatus(
        urgency=urgency,
        hours_remaining=max(0, int(hours_remaining)),
        is_expired=urgency == Urgency.EXPIRED,
        is_critical=urgency in (Urgency.EXPIRED, Urgency.CRITICAL),
    )


def get_elapsed_percentage(
    start: datetime,
    deadline: datetime,
    now: Optional[datetime] = None,
) -> float:
    now = now or utcnow()
    window = (deadline - start).total_seconds()
    if window <= 0:
        return 100.0
    elapsed = (now - start).total_seconds() / window * 100
    return min(100.0, max(0.0, elapsed))


def get_countdown(
    start: datetime,
    deadline: datetime,
    now: Optional[datetime] = None,
) -> Countdown:
    now = now or utcnow()
    remaining = get_time_remaining(deadline, now)
    return Countdown(
        deadline=deadline,
        time_remaining=remaining,
        status=get_deadline_status(deadline, now),
        formatted_time=format_time_remaining(deadline, now),
        progress_percentage=get_elapsed_percentage(start, deadline, now),
        is_active=not remaining.is_expired,
    )


# ── Auto-approval and extensions ─────────────────────────────


def is_eligible_for_auto_approval(
    batch: AutoApprovalCandidate,
    now: Optional[datetime] = None,
    config: Optional[VerificationConfig] = None,
) -> bool:
    """All four conditions must hold; any single failure disqualifies."""
    now = now or utcnow()
    config = config or VerificationConfig()

    deadline_passed = now >= batch.deadline
    enabled = batch.auto_approval_enabled
    within_amount = Decimal(batch.total_amount) <= config.auto_approval_max_amount
    within_count = batch.total_transactions <= config.auto_approval_max_transactions

    return deadline_passed and enabled and within_amount and within_count


def extend_deadline(deadline: datetime, extension_hours: int) -> datetime:
    return deadline + timedelta(hours=extension_hours)


def can_extend_deadline(
    deadline: datetime,
    extension_hours: int,
    now: Optional[datetime] = None,
    max_extension_hours: int = MAX_EXTENSION_HOURS,
) -> ExtensionCheck:
    now = now or utcnow()
    if now >= deadline:
        return ExtensionCheck(False, "Cannot extend expired deadline")
    if extension_hours > max_extension_hours:
        return ExtensionCheck(
            False,
            f"Extension duration exceeds maximum allowed ({max_extension_hours} hours)",
        )
    if extension_hours <= 0:
        return ExtensionCheck(False, "Extension duration must be positive")
    return ExtensionCheck(True, new_deadline=extend_deadline(deadline, extension_hours))


# ── Reminder schedule ────────────────────────────────────────


def get_scheduled_notifications(deadline: datetime) -> List[ScheduledNotification]:
    return [
        ScheduledNotification(type=kind, scheduled_at=deadline - offset)
        for kind, offset in NOTIFICATION_OFFSETS
    ]


def get_due_notifications(
    schedule: Iterable[ScheduledNotification],
    now: Optional[datetime] = None,
) -> List[ScheduledNotification]:
    """Every entry whose time has come; all of them once the deadline passed."""
    now = now or utcnow()
    return [entry for entry in schedule if entry.scheduled_at <= now]
