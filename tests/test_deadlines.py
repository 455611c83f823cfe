"""Tests for deadline arithmetic, eligibility and the reminder schedule."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from settlement.deadlines import (
    calculate_business_day_deadline,
    calculate_deadline,
    can_extend_deadline,
    format_time_remaining,
    get_countdown,
    get_deadline_status,
    get_due_notifications,
    get_elapsed_percentage,
    get_scheduled_notifications,
    get_time_remaining,
    is_eligible_for_auto_approval,
    swedish_holidays,
)
from settlement.models import NotificationType, PaymentBatch, Urgency, VerificationConfig
from tests.conftest import NOW


def make_batch(**overrides):
    fields = dict(
        business_id="biz-1",
        week_number=10,
        year_number=2026,
        deadline=NOW - timedelta(minutes=1),
        auto_approval_enabled=True,
        total_amount=Decimal("25000"),
        total_transactions=100,
    )
    fields.update(overrides)
    return PaymentBatch(**fields)


class TestCalculateDeadline:
    def test_default_is_seven_days(self):
        assert calculate_deadline(NOW) == NOW + timedelta(days=7)

    def test_custom_days(self):
        assert calculate_deadline(NOW, 3) == NOW + timedelta(days=3)


class TestBusinessDayDeadline:
    def test_skips_weekend(self):
        friday = datetime(2026, 3, 6, 9, 0, tzinfo=timezone.utc)
        assert calculate_business_day_deadline(friday, 1) == datetime(2026, 3, 9, 9, 0, tzinfo=timezone.utc)

    def test_five_business_days_from_monday(self):
        assert calculate_business_day_deadline(NOW, 5) == NOW + timedelta(days=7)

    def test_skips_easter(self):
        # Maundy Thursday 2026; Good Friday and Easter Monday are holidays
        thursday = datetime(2026, 4, 2, 12, 0, tzinfo=timezone.utc)
        assert calculate_business_day_deadline(thursday, 1).date() == date(2026, 4, 7)

    def test_custom_calendar(self):
        holiday = date(2026, 3, 3)
        result = calculate_business_day_deadline(NOW, 1, holidays=[holiday])
        assert result.date() == date(2026, 3, 4)

    def test_swedish_calendar(self):
        holidays = swedish_holidays(2026)
        assert date(2026, 6, 19) in holidays  # Midsummer Eve
        assert date(2026, 4, 3) in holidays  # Good Friday
        assert date(2026, 5, 14) in holidays  # Ascension Day
        assert date(2026, 3, 2) not in holidays


class TestAutoApprovalEligibility:
    def test_eligible(self):
        assert is_eligible_for_auto_approval(make_batch(), NOW) is True

    def test_deadline_not_passed(self):
        assert is_eligible_for_auto_approval(make_batch(deadline=NOW + timedelta(minutes=1)), NOW) is False

    def test_deadline_exactly_now_is_passed(self):
        assert is_eligible_for_auto_approval(make_batch(deadline=NOW), NOW) is True

    def test_disabled(self):
        assert is_eligible_for_auto_approval(make_batch(auto_approval_enabled=False), NOW) is False

    def test_amount_ceiling(self):
        assert is_eligible_for_auto_approval(make_batch(total_amount=Decimal("100000")), NOW) is True
        assert is_eligible_for_auto_approval(make_batch(total_amount=Decimal("100000.01")), NOW) is False

    def test_count_ceiling(self):
        assert is_eligible_for_auto_approval(make_batch(total_transactions=1000), NOW) is True
        assert is_eligible_for_auto_approval(make_batch(total_transactions=1001), NOW) is False

    def test_custom_ceilings(self):
        config = VerificationConfig(auto_approval_max_amount=Decimal("1000"))
        assert is_eligible_for_auto_approval(make_batch(), NOW, config) is False


class TestTimeRemaining:
    def test_components(self):
        deadline = NOW + timedelta(days=2, hours=5, minutes=30, seconds=15)
        remaining = get_time_remaining(deadline, NOW)
        assert (remaining.days, remaining.hours, remaining.minutes, remaining.seconds) == (2, 5, 30, 15)
        assert remaining.is_expired is False

    def test_expired(self):
        remaining = get_time_remaining(NOW - timedelta(seconds=1), NOW)
        assert remaining.is_expired is True
        assert remaining.total_milliseconds == 0

    def test_format(self):
        deadline = NOW + timedelta(days=2, hours=5, minutes=30)
        assert format_time_remaining(deadline, NOW) == "2 days, 5 hours, 30 minutes"

    def test_format_singular(self):
        deadline = NOW + timedelta(days=1, hours=1, minutes=1)
        assert format_time_remaining(deadline, NOW) == "1 day, 1 hour, 1 minute"

    def test_format_under_a_minute(self):
        assert format_time_remaining(NOW + timedelta(seconds=20), NOW) == "0 minutes"

    def test_format_expired(self):
        assert format_time_remaining(NOW, NOW) == "expired"


class TestDeadlineStatus:
    def test_normal(self):
        assert get_deadline_status(NOW + timedelta(days=3), NOW).urgency == Urgency.NORMAL

    def test_warning(self):
        assert get_deadline_status(NOW + timedelta(hours=24), NOW).urgency == Urgency.WARNING

    def test_critical(self):
        status = get_deadline_status(NOW + timedelta(hours=3), NOW)
        assert status.urgency == Urgency.CRITICAL
        assert status.is_critical is True

    def test_expired(self):
        status = get_deadline_status(NOW - timedelta(hours=1), NOW)
        assert status.urgency == Urgency.EXPIRED
        assert status.hours_remaining == 0


class TestElapsedPercentage:
    def test_halfway(self):
        start = NOW - timedelta(days=1)
        assert get_elapsed_percentage(start, NOW + timedelta(days=1), NOW) == 50.0

    def test_clamped(self):
        start = NOW - timedelta(days=3)
        assert get_elapsed_percentage(start, NOW - timedelta(days=1), NOW) == 100.0
        assert get_elapsed_percentage(NOW + timedelta(days=1), NOW + timedelta(days=2), NOW) == 0.0

    def test_countdown(self):
        countdown = get_countdown(NOW - timedelta(days=1), NOW + timedelta(days=1), NOW)
        assert countdown.is_active is True
        assert countdown.formatted_time == "1 day"
        assert countdown.progress_percentage == 50.0


class TestExtension:
    def test_allowed(self):
        check = can_extend_deadline(NOW + timedelta(days=1), 24, NOW)
        assert check.can_extend is True
        assert check.new_deadline == NOW + timedelta(days=2)

    def test_expired_deadline(self):
        check = can_extend_deadline(NOW - timedelta(hours=1), 24, NOW)
        assert check.can_extend is False
        assert "expired" in check.reason

    def test_too_long(self):
        check = can_extend_deadline(NOW + timedelta(days=1), 169, NOW)
        assert check.can_extend is False
        assert "168" in check.reason

    def test_maximum_allowed(self):
        assert can_extend_deadline(NOW + timedelta(days=1), 168, NOW).can_extend is True

    def test_non_positive(self):
        assert can_extend_deadline(NOW + timedelta(days=1), 0, NOW).can_extend is False


class TestReminderSchedule:
    def test_four_reminders(self):
        deadline = NOW + timedelta(days=7)
        schedule = get_scheduled_notifications(deadline)
        assert [s.type for s in schedule] == [
            NotificationType.WARNING_48_HOUR,
            NotificationType.WARNING_24_HOUR,
            NotificationType.WARNING_4_HOUR,
            NotificationType.WARNING_1_HOUR,
        ]
        assert schedule[0].scheduled_at == deadline - timedelta(hours=48)

    def test_nothing_due_early(self):
        schedule = get_scheduled_notifications(NOW + timedelta(days=7))
        assert get_due_notifications(schedule, NOW) == []

    def test_due_within_window(self):
        schedule = get_scheduled_notifications(NOW + timedelta(hours=20))
        due = get_due_notifications(schedule, NOW)
        assert [d.type for d in due] == [
            NotificationType.WARNING_48_HOUR,
            NotificationType.WARNING_24_HOUR,
        ]

    def test_all_due_after_deadline(self):
        schedule = get_scheduled_notifications(NOW - timedelta(minutes=1))
        assert len(get_due_notifications(schedule, NOW)) == 4
