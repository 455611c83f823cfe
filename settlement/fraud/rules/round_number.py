"""Round-number rule.

Receipts from real baskets rarely land on an exact hundred; invented
amounts often do. Multiples of 1000 weigh more than multiples of 100.
"""

from decimal import Decimal

from settlement.models import RuleResult

THOUSAND_PENALTY = 35
HUNDRED_PENALTY = 20


def check_round_number(amount: Decimal) -> RuleResult:
    if amount <= 0:
        # Non-positive amounts are handled by the amount rule
        return RuleResult(score_delta=0, reasons=[], indicators=[])

    if amount % 1000 == 0:
        delta = THOUSAND_PENALTY
    elif amount % 100 == 0:
        delta = HUNDRED_PENALTY
    else:
        return RuleResult(score_delta=0, reasons=[], indicators=[])

    return RuleResult(
        score_delta=delta,
        reasons=[f"Transaction amount {amount} SEK is a round number"],
        indicators=["round_amount"],
    )
