"""Verification-results CSV parser and validator.

Validation happens in two passes:

  1. Envelope and shape. The file must be a CSV under the size limit, carry
     every required column, and every row must be well-formed (boolean
     ``verified``, known decision, reason present for rejections). Any shape
     problem rejects the whole file with a list of {row, field, message,
     value} entries; nothing is applied.
  2. References. Resolving transaction ids against the session happens in
     the session workflow, per row, and tolerates partial failure.

Row numbers are file line numbers: the header is row 1, the first data row
is row 2.
"""

import csv
import io
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from thefuzz import process

from settlement.errors import ValidationFailed
from settlement.models import Decision, FieldError

REQUIRED_COLUMNS = (
    "transaction_id",
    "verified",
    "verification_decision",
    "rejection_reason",
    "business_notes",
)

MAX_NOTES_LENGTH = 1000
MAX_TRANSACTION_ID_LENGTH = 50

# Minimum fuzzy score for a present header to be offered as "did you mean"
HEADER_HINT_THRESHOLD = 80


@dataclass(frozen=True)
class ParsedRow:
    row: int
    transaction_id: str
    verified: bool
    decision: Decision
    rejection_reason: Optional[str] = None
    business_notes: Optional[str] = None


def check_upload(
    filename: Optional[str],
    content_type: Optional[str],
    size: Optional[int],
    max_bytes: int,
    allowed_types: Sequence[str] = ("text/csv",),
) -> None:
    """Validate the upload envelope before the body is parsed."""
    if not filename and size is None:
        raise ValidationFailed("No file provided", code="MISSING_FILE")

    type_ok = (content_type or "").split(";")[0].strip().lower() in allowed_types
    name_ok = (filename or "").lower().endswith(".csv")
    if not (type_ok or name_ok):
        raise ValidationFailed(
            "File must be a CSV",
            code="INVALID_FILE_TYPE",
            details={"content_type": content_type, "filename": filename},
        )

    if size is not None and size > max_bytes:
        raise ValidationFailed(
            f"File exceeds the maximum upload size of {max_bytes // (1024 * 1024)} MB",
            code="FILE_TOO_LARGE",
            details={"size_bytes": size, "max_bytes": max_bytes},
        )


def decode_upload(data: bytes) -> str:
    try:
        # utf-8-sig strips the BOM spreadsheet exports like to prepend
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationFailed(
            "CSV file must be UTF-8 encoded",
            code="INVALID_CSV_FORMAT",
            details={"position": exc.start},
        ) from exc


def suggest_columns(missing: Sequence[str], present: Sequence[str]) -> Dict[str, str]:
    """Map each missing column to the closest present header, when close enough."""
    hints: Dict[str, str] = {}
    candidates = [h for h in present if h not in REQUIRED_COLUMNS]
    if not candidates:
        return hints
    for column in missing:
        match = process.extractOne(column, candidates, score_cutoff=HEADER_HINT_THRESHOLD)
        if match:
            hints[column] = match[0]
    return hints


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None


def _validate_row(row_number: int, raw: Dict[str, str]) -> tuple[Optional[ParsedRow], List[FieldError]]:
    errors: List[FieldError] = []

    def cell(name: str) -> str:
        return (raw.get(name) or "").strip()

    transaction_id = cell("transaction_id")
    if not transaction_id:
        errors.append(FieldError(row=row_number, field="transaction_id",
                                 message="Transaction ID is required", value=""))
    elif len(transaction_id) > MAX_TRANSACTION_ID_LENGTH:
        errors.append(FieldError(row=row_number, field="transaction_id",
                                 message="Transaction ID is too long", value=transaction_id))

    verified_raw = cell("verified")
    verified = _parse_bool(verified_raw)
    if verified is None:
        errors.append(FieldError(row=row_number, field="verified",
                                 message="Verified must be true or false", value=verified_raw))

    decision_raw = cell("verification_decision")
    decision: Optional[Decision] = None
    try:
        decision = Decision(decision_raw.lower())
    except ValueError:
        errors.append(FieldError(row=row_number, field="verification_decision",
                                 message="Decision must be approved or rejected", value=decision_raw))

    if verified is not None and decision is not None and verified != (decision == Decision.APPROVED):
        errors.append(FieldError(
            row=row_number,
            field="verification_decision",
            message="Decision does not agree with verified flag",
            value=decision_raw,
        ))

    reason = cell("rejection_reason") or None
    if decision == Decision.REJECTED and not reason:
        errors.append(FieldError(row=row_number, field="rejection_reason",
                                 message="Rejection reason is required when decision is rejected",
                                 value=""))

    # Notes are kept verbatim; only a blank cell means "no notes"
    raw_notes = raw.get("business_notes") or ""
    notes = raw_notes if raw_notes.strip() else None
    if notes and len(notes) > MAX_NOTES_LENGTH:
        errors.append(FieldError(row=row_number, field="business_notes",
                                 message=f"Business notes exceed {MAX_NOTES_LENGTH} characters",
                                 value=notes[:50]))

    if errors:
        return None, errors
    return (
        ParsedRow(
            row=row_number,
            transaction_id=transaction_id,
            verified=verified,
            decision=decision,
            rejection_reason=reason,
            business_notes=notes,
        ),
        [],
    )


def parse_verification_csv(text: str) -> List[ParsedRow]:
    """Parse and shape-validate an uploaded verification-results file.

    Raises:
        ValidationFailed(INVALID_CSV_FORMAT): empty file or missing columns.
        ValidationFailed(INVALID_CSV_DATA): one or more malformed rows.
    """
    if not text.strip():
        raise ValidationFailed("CSV file is empty", code="INVALID_CSV_FORMAT")

    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except (StopIteration, csv.Error) as exc:
        raise ValidationFailed("CSV file is empty", code="INVALID_CSV_FORMAT") from exc

    columns = [h.strip().lower() for h in header]
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if missing:
        details: Dict[str, object] = {"missing_columns": missing}
        hints = suggest_columns(missing, columns)
        if hints:
            details["did_you_mean"] = hints
        raise ValidationFailed(
            f"Missing required columns: {', '.join(missing)}",
            code="INVALID_CSV_FORMAT",
            details=details,
        )

    rows: List[ParsedRow] = []
    errors: List[FieldError] = []
    try:
        for row_number, values in enumerate(reader, start=2):
            if not any(v.strip() for v in values):
                continue
            raw = dict(zip(columns, values))
            parsed, row_errors = _validate_row(row_number, raw)
            if parsed is not None:
                rows.append(parsed)
            errors.extend(row_errors)
    except csv.Error as exc:
        raise ValidationFailed(
            f"CSV parsing error: {exc}", code="INVALID_CSV_FORMAT"
        ) from exc

    if errors:
        raise ValidationFailed(
            f"{len(errors)} invalid field(s) in CSV",
            code="INVALID_CSV_DATA",
            details={"errors": [e.model_dump() for e in errors]},
        )

    if not rows:
        raise ValidationFailed("CSV file contains no data rows", code="INVALID_CSV_FORMAT")

    return rows
