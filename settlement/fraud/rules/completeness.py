"""Record completeness rule.

Missing optional fields are never a hard failure, but a record without a
customer reference, a store, or a linked feedback is harder to verify and
nudges the score up a little.
"""

from settlement.models import RuleResult, TransactionRecord

MISSING_FIELD_PENALTY = 4

OPTIONAL_FIELDS = ("phone_last_four", "store_code", "customer_feedback_id")


def check_completeness(transaction: TransactionRecord) -> RuleResult:
    missing = [name for name in OPTIONAL_FIELDS if not getattr(transaction, name)]
    if not missing:
        return RuleResult(score_delta=0, reasons=[], indicators=[])

    return RuleResult(
        score_delta=MISSING_FIELD_PENALTY * len(missing),
        reasons=[f"Transaction is missing {', '.join(missing)}"],
        indicators=["incomplete_record"],
    )
