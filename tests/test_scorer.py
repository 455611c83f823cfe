"""Tests for local risk scoring and the recommendation mapping."""

from datetime import timedelta

from settlement.fraud.scorer import (
    aggregate_results,
    calculate_risk_score,
    recommend,
    score_transaction,
)
from settlement.models import Recommendation, RuleResult, VerificationConfig
from tests.conftest import NOW, make_transaction


class TestAggregateResults:
    def test_no_rules_triggered(self):
        results = [
            RuleResult(score_delta=0, reasons=[], indicators=[]),
            RuleResult(score_delta=0, reasons=[], indicators=[]),
        ]
        score, reasons, indicators = aggregate_results(results)
        assert score == 0
        assert reasons == []
        assert indicators == []

    def test_scores_accumulate(self):
        results = [
            RuleResult(score_delta=20, reasons=["a"], indicators=["x"]),
            RuleResult(score_delta=35, reasons=["b"], indicators=["y"]),
        ]
        score, reasons, indicators = aggregate_results(results)
        assert score == 55
        assert reasons == ["a", "b"]
        assert indicators == ["x", "y"]

    def test_clamped_to_100(self):
        results = [
            RuleResult(score_delta=75, reasons=["a"], indicators=["x"]),
            RuleResult(score_delta=95, reasons=["b"], indicators=["y"]),
        ]
        score, _, _ = aggregate_results(results)
        assert score == 100

    def test_negative_amount_forces_max(self):
        results = [RuleResult(score_delta=10, reasons=["neg"], indicators=["negative_amount"])]
        score, _, _ = aggregate_results(results)
        assert score == 100

    def test_zero_amount_floor(self):
        results = [RuleResult(score_delta=10, reasons=["zero"], indicators=["zero_amount"])]
        score, _, _ = aggregate_results(results)
        assert score == 85

    def test_indicators_deduplicated(self):
        results = [
            RuleResult(score_delta=5, reasons=["a"], indicators=["x"]),
            RuleResult(score_delta=5, reasons=["b"], indicators=["x"]),
        ]
        _, _, indicators = aggregate_results(results)
        assert indicators == ["x"]


class TestScoreTransaction:
    def test_negative_amount(self):
        score = calculate_risk_score(make_transaction(amount="-100"), NOW)
        assert score == 100

    def test_zero_amount(self):
        assert calculate_risk_score(make_transaction(amount="0"), NOW) > 80

    def test_very_high_amount_at_noon(self):
        txn = make_transaction(amount="50000", when="2026-02-27T12:00:00Z")
        assert calculate_risk_score(txn, NOW) > 70

    def test_early_morning(self):
        txn = make_transaction(amount="123.45", when="2026-02-27T02:30:00Z")
        assert calculate_risk_score(txn, NOW) > 40

    def test_round_thousand(self):
        txn = make_transaction(amount="1000")
        assert calculate_risk_score(txn, NOW) > 30

    def test_future_timestamp(self):
        txn = make_transaction(when=NOW + timedelta(days=2))
        assert calculate_risk_score(txn, NOW) > 90

    def test_old_timestamp(self):
        txn = make_transaction(when=NOW - timedelta(days=200))
        assert calculate_risk_score(txn, NOW) > 60

    def test_clean_transaction(self):
        score, reasons, indicators = score_transaction(make_transaction(), NOW)
        assert score == 0
        assert reasons == []
        assert indicators == []

    def test_deterministic(self):
        txn = make_transaction(amount="2500", when="2026-02-27T03:15:00Z")
        first = score_transaction(txn, NOW)
        for _ in range(5):
            assert score_transaction(txn, NOW) == first

    def test_always_within_bounds(self):
        for amount in ("-5", "0", "0.01", "999.99", "10000", "1000000"):
            score = calculate_risk_score(make_transaction(amount=amount), NOW)
            assert 0 <= score <= 100


class TestRecommend:
    def setup_method(self):
        self.config = VerificationConfig()

    def test_low_score_approves(self):
        assert recommend(29, self.config) == Recommendation.APPROVE

    def test_low_boundary_is_review(self):
        assert recommend(30, self.config) == Recommendation.REVIEW

    def test_just_below_high_is_review(self):
        assert recommend(69, self.config) == Recommendation.REVIEW

    def test_high_boundary_rejects(self):
        assert recommend(70, self.config) == Recommendation.REJECT

    def test_custom_thresholds(self):
        config = VerificationConfig(low_risk_max=10, high_risk_min=50)
        assert recommend(15, config) == Recommendation.REVIEW
        assert recommend(50, config) == Recommendation.REJECT
