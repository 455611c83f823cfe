"""Batch-level fraud pattern detection.

Three cross-transaction patterns are looked for inside one batch:

  high_velocity      N+ transactions from the same customer (phone_last_four)
                     inside a rolling window. A real customer does not buy
                     five times in ten minutes at the same business.
  amount_clustering  several amounts sitting in a narrow band just below a
                     round threshold (e.g. 950-999.99 under 1000), the usual
                     signature of someone probing a review limit.
  time_clustering    a burst of transactions inside a short wall-clock window
                     regardless of who made them.

Detection is pure and order-independent: the input is sorted by time before
any window is evaluated.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from settlement.models import TransactionRecord, VerificationConfig

HIGH_VELOCITY = "high_velocity"
AMOUNT_CLUSTERING = "amount_clustering"
TIME_CLUSTERING = "time_clustering"


def _max_in_window(times: List[datetime], window: timedelta) -> int:
    """Largest number of timestamps falling inside any window of the given width."""
    times = sorted(times)
    best = 0
    start = 0
    for end, current in enumerate(times):
        while current - times[start] > window:
            start += 1
        best = max(best, end - start + 1)
    return best


def has_high_velocity(
    transactions: Iterable[TransactionRecord], config: VerificationConfig
) -> bool:
    by_customer: dict[str, list[datetime]] = defaultdict(list)
    for txn in transactions:
        if txn.phone_last_four:
            by_customer[txn.phone_last_four].append(txn.transaction_time)

    window = timedelta(minutes=config.velocity_window_minutes)
    return any(
        _max_in_window(times, window) >= config.velocity_min_count
        for times in by_customer.values()
    )


def has_amount_clustering(
    transactions: Iterable[TransactionRecord], config: VerificationConfig
) -> bool:
    amounts = [txn.amount for txn in transactions]
    for threshold in config.clustering_thresholds:
        lower = threshold * (1 - config.clustering_band)
        in_band = [a for a in amounts if lower <= a < threshold]
        if len(in_band) >= config.clustering_min_count:
            return True
    return False


def has_time_clustering(
    transactions: Iterable[TransactionRecord], config: VerificationConfig
) -> bool:
    times = [txn.transaction_time for txn in transactions]
    window = timedelta(minutes=config.time_cluster_window_minutes)
    return _max_in_window(times, window) >= config.time_cluster_min_count


def detect_patterns(
    transactions: Iterable[TransactionRecord],
    config: Optional[VerificationConfig] = None,
) -> list[str]:
    """Return the pattern labels present in a set of transactions.

    An ordinary mix of purchases yields an empty list. Labels are returned
    in a fixed order so results compare cleanly in tests and audit metadata.
    """
    config = config or VerificationConfig()
    transactions = list(transactions)
    if not transactions:
        return []

    checks = (
        (HIGH_VELOCITY, has_high_velocity),
        (AMOUNT_CLUSTERING, has_amount_clustering),
        (TIME_CLUSTERING, has_time_clustering),
    )
    return [label for label, check in checks if check(transactions, config)]
