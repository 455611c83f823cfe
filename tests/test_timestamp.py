"""Tests for the timestamp validity rule."""

from datetime import timedelta

from settlement.fraud.rules.timestamp import check_timestamp
from settlement.models import VerificationConfig
from tests.conftest import NOW


class TestCheckTimestamp:
    def setup_method(self):
        self.config = VerificationConfig()

    def test_recent_timestamp_clean(self):
        result = check_timestamp(NOW - timedelta(days=3), NOW, self.config)
        assert result.score_delta == 0

    def test_future_timestamp(self):
        result = check_timestamp(NOW + timedelta(days=1), NOW, self.config)
        assert result.score_delta == 95
        assert result.indicators == ["future_timestamp"]

    def test_small_clock_skew_tolerated(self):
        result = check_timestamp(NOW + timedelta(minutes=2), NOW, self.config)
        assert result.score_delta == 0

    def test_stale_timestamp(self):
        result = check_timestamp(NOW - timedelta(days=120), NOW, self.config)
        assert result.score_delta == 65
        assert result.indicators == ["stale_timestamp"]
        assert any("120 days" in r for r in result.reasons)

    def test_exactly_at_stale_limit_clean(self):
        result = check_timestamp(NOW - timedelta(days=90), NOW, self.config)
        assert result.score_delta == 0
