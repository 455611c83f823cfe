"""Local risk scoring and recommendation mapping.

The local score is DETERMINISTIC: same transaction + same reference time =
same score. It performs no I/O so it can run inline while a bulk upload is
being applied.

Scoring:
  - Each rule contributes an independent score delta
  - The cumulative score is clamped to [0, 100]
  - A negative amount always scores 100
  - A zero amount always scores at least the zero-amount floor

Recommendation:
  - score <  low_risk_max  -> approve
  - score >= high_risk_min -> reject
  - otherwise              -> review
"""

from datetime import datetime
from typing import Optional

from settlement.fraud.rules.amount import ZERO_AMOUNT_SCORE, check_amount
from settlement.fraud.rules.completeness import check_completeness
from settlement.fraud.rules.round_number import check_round_number
from settlement.fraud.rules.timestamp import check_timestamp
from settlement.fraud.rules.timing import check_timing
from settlement.models import (
    Recommendation,
    RuleResult,
    TransactionRecord,
    VerificationConfig,
    utcnow,
)


def aggregate_results(rule_results: list[RuleResult]) -> tuple[int, list[str], list[str]]:
    """Combine rule results into a clamped score.

    Returns:
        Tuple of (risk_score, all_reasons, all_indicators).
    """
    total_score = 0
    all_reasons: list[str] = []
    all_indicators: list[str] = []

    for result in rule_results:
        total_score += result.score_delta
        all_reasons.extend(result.reasons)
        for indicator in result.indicators:
            if indicator not in all_indicators:
                all_indicators.append(indicator)

    if "negative_amount" in all_indicators:
        total_score = 100
    elif "zero_amount" in all_indicators:
        total_score = max(total_score, ZERO_AMOUNT_SCORE)

    return max(0, min(total_score, 100)), all_reasons, all_indicators


def score_transaction(
    transaction: TransactionRecord,
    now: Optional[datetime] = None,
    config: Optional[VerificationConfig] = None,
) -> tuple[int, list[str], list[str]]:
    """Run every local rule against one transaction.

    Returns:
        Tuple of (risk_score, reasons, indicators).
    """
    config = config or VerificationConfig()
    now = now or utcnow()

    rule_results = [
        check_amount(transaction.amount, config),
        check_timing(transaction.transaction_time, config),
        check_round_number(transaction.amount),
        check_timestamp(transaction.transaction_time, now, config),
        check_completeness(transaction),
    ]
    return aggregate_results(rule_results)


def calculate_risk_score(
    transaction: TransactionRecord,
    now: Optional[datetime] = None,
    config: Optional[VerificationConfig] = None,
) -> int:
    score, _, _ = score_transaction(transaction, now, config)
    return score


def recommend(risk_score: int, config: VerificationConfig) -> Recommendation:
    if risk_score >= config.high_risk_min:
        return Recommendation.REJECT
    if risk_score < config.low_risk_max:
        return Recommendation.APPROVE
    return Recommendation.REVIEW
