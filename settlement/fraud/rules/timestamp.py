"""Timestamp validity rule.

A purchase cannot happen in the future, and a purchase claimed months after
the fact is outside any weekly batch it could legitimately belong to. A small
clock skew allowance keeps slightly fast POS terminals from tripping the
future check.
"""

from datetime import datetime, timedelta

from settlement.models import RuleResult, VerificationConfig

FUTURE_PENALTY = 95
STALE_PENALTY = 65
CLOCK_SKEW = timedelta(minutes=5)


def check_timestamp(
    transaction_time: datetime,
    now: datetime,
    config: VerificationConfig,
) -> RuleResult:
    if transaction_time > now + CLOCK_SKEW:
        return RuleResult(
            score_delta=FUTURE_PENALTY,
            reasons=[f"Transaction timestamp {transaction_time.isoformat()} is in the future"],
            indicators=["future_timestamp"],
        )

    age = now - transaction_time
    if age > timedelta(days=config.stale_after_days):
        return RuleResult(
            score_delta=STALE_PENALTY,
            reasons=[
                f"Transaction is {age.days} days old "
                f"(limit: {config.stale_after_days} days)"
            ],
            indicators=["stale_timestamp"],
        )

    return RuleResult(score_delta=0, reasons=[], indicators=[])
