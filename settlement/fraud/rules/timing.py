"""Time-of-day rule.

Participating stores are almost never open between midnight and 05:00, so
a purchase stamped in that window is either a night-shift edge case or a
fabricated receipt. The hour is read on the transaction's own clock (the
offset recorded at the point of sale), not converted to the server zone.
"""

from datetime import datetime

from settlement.models import RuleResult, VerificationConfig

OFF_HOURS_PENALTY = 45


def check_timing(transaction_time: datetime, config: VerificationConfig) -> RuleResult:
    hour = transaction_time.hour
    if config.night_start_hour <= hour < config.night_end_hour:
        return RuleResult(
            score_delta=OFF_HOURS_PENALTY,
            reasons=[
                f"Transaction at {transaction_time:%H:%M} falls in the "
                f"{config.night_start_hour:02d}:00-{config.night_end_hour:02d}:00 window"
            ],
            indicators=["off_hours"],
        )

    return RuleResult(score_delta=0, reasons=[], indicators=[])
