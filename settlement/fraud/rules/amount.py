"""Transaction amount rule.

Cash-back is a percentage of the purchase, so inflated purchase amounts are
the cheapest way to inflate a reward. Very large amounts carry the most
weight. Non-positive amounts cannot come from a real purchase at all: a
negative amount forces the maximum score in the scorer, and a zero amount is
forced into the reject band.
"""

from decimal import Decimal

from settlement.models import RuleResult, VerificationConfig

NEGATIVE_AMOUNT_SCORE = 100
ZERO_AMOUNT_SCORE = 85


def check_amount(amount: Decimal, config: VerificationConfig) -> RuleResult:
    """Score the purchase amount against the tiered thresholds."""
    if amount < 0:
        return RuleResult(
            score_delta=NEGATIVE_AMOUNT_SCORE,
            reasons=[f"Transaction amount {amount} SEK is negative"],
            indicators=["negative_amount"],
        )

    if amount == 0:
        return RuleResult(
            score_delta=ZERO_AMOUNT_SCORE,
            reasons=["Transaction amount is zero"],
            indicators=["zero_amount"],
        )

    tiers = (
        (config.very_high_amount, 75, "very_high_amount"),
        (config.high_amount, 40, "high_amount"),
        (config.elevated_amount, 20, "elevated_amount"),
    )
    for threshold, delta, indicator in tiers:
        if amount >= threshold:
            return RuleResult(
                score_delta=delta,
                reasons=[
                    f"Transaction amount {amount} SEK is at or above "
                    f"{threshold} SEK"
                ],
                indicators=[indicator],
            )

    return RuleResult(score_delta=0, reasons=[], indicators=[])
