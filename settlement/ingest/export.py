"""CSV encoders for the batch download and for verification results."""

import csv
import io
from decimal import Decimal
from typing import Iterable, Optional

from settlement.ingest.parser import REQUIRED_COLUMNS
from settlement.models import VerificationItem

BATCH_COLUMNS = (
    "transaction_id",
    "customer_feedback_id",
    "transaction_date",
    "amount_sek",
    "phone_last4",
    "store_code",
    "quality_score",
    "reward_percentage",
    "reward_amount_sek",
)


def _fmt(value: Optional[object]) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return str(value)


def encode_batch_csv(items: Iterable[VerificationItem]) -> str:
    """Encode the downloadable batch file, one row per transaction."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(BATCH_COLUMNS)
    for item in items:
        writer.writerow([
            item.transaction_id,
            _fmt(item.customer_feedback_id),
            item.transaction_time.isoformat(),
            _fmt(item.transaction_amount),
            _fmt(item.phone_last_four),
            _fmt(item.store_code),
            _fmt(item.quality_score),
            _fmt(item.reward_percentage),
            _fmt(item.reward_amount),
        ])
    return buffer.getvalue()


def encode_verification_results(items: Iterable[VerificationItem]) -> str:
    """Encode decided items in the upload schema.

    Undecided items are left out, so the output always parses cleanly.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(REQUIRED_COLUMNS)
    for item in items:
        if item.verified is None:
            continue
        writer.writerow([
            item.transaction_id,
            "true" if item.verified else "false",
            item.verification_decision.value if item.verification_decision else "",
            _fmt(item.rejection_reason),
            _fmt(item.business_notes),
        ])
    return buffer.getvalue()
