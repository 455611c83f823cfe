"""Tests for the round-number rule."""

from decimal import Decimal

from settlement.fraud.rules.round_number import check_round_number


class TestCheckRoundNumber:
    def test_multiple_of_thousand(self):
        result = check_round_number(Decimal("3000"))
        assert result.score_delta == 35
        assert result.indicators == ["round_amount"]

    def test_multiple_of_hundred(self):
        result = check_round_number(Decimal("700.00"))
        assert result.score_delta == 20

    def test_not_round(self):
        assert check_round_number(Decimal("250")).score_delta == 0

    def test_cents_break_roundness(self):
        assert check_round_number(Decimal("1000.50")).score_delta == 0

    def test_zero_and_negative_skipped(self):
        assert check_round_number(Decimal("0")).score_delta == 0
        assert check_round_number(Decimal("-1000")).score_delta == 0
