"""
Record validation for bulk issuance.
Catches bad rows before any rendering, storage or gas is spent on them.
"""

import re
from typing import Dict, List, Mapping, Sequence, Tuple

from ..core.errors import MissingColumns, NoDataRows
from ..models.certificate import CertificateRecord
from ..models.job import InvalidRow, ValidationIssue, ValidationReport
from ..utils.dates import parse_issue_date
from ..utils.logger import get_logger
from .csv_parser import REQUIRED_FIELDS

logger = get_logger("record_validator")


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NUMERIC_NAME_PATTERN = re.compile(r"\d{4,}")

MAX_LENGTHS: Dict[str, int] = {
    "student_name": 200,
    "student_id": 100,
    "degree": 200,
    "institution": 200,
    "email": 254,
}

REQUIRED_MESSAGES: Dict[str, str] = {
    "student_name": "Student name is required",
    "student_id": "Student ID is required",
    "degree": "Degree/program is required",
    "institution": "Institution name is required",
    "issue_date": "Issue date is required",
}

COLUMN_HINT = (
    f"Your CSV must have columns for: {', '.join(REQUIRED_FIELDS)}. "
    'Accepted column names include variations like "Student Name", "student_name", "name", etc.'
)


def validate_columns(rows: Sequence[Mapping[str, str]]) -> None:
    """
    Check that parsed input has data and carries every required column.

    Raises:
        NoDataRows: If no rows were parsed
        MissingColumns: If the first row lacks required columns
    """
    if not rows:
        raise NoDataRows()

    first = rows[0]
    missing = [field for field in REQUIRED_FIELDS if field not in first]
    if missing:
        raise MissingColumns(missing, hint=COLUMN_HINT)


def validate_record(
    row: Mapping[str, str],
    index: int = 0
) -> Tuple[List[ValidationIssue], List[ValidationIssue]]:
    """
    Validate a single normalized row.

    Args:
        row: Normalized row
        index: 0-based position in the batch

    Returns:
        Tuple of (errors, warnings); the row is valid when errors is empty
    """
    row_number = index + 1
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    def error(field: str, message: str) -> None:
        errors.append(ValidationIssue(field=field, message=message, row=row_number))

    def warning(field: str, message: str) -> None:
        warnings.append(ValidationIssue(field=field, message=message, row=row_number))

    for field, message in REQUIRED_MESSAGES.items():
        value = (row.get(field) or "").strip()
        if not value:
            error(field, message)
            continue
        limit = MAX_LENGTHS.get(field)
        if limit and len(value) > limit:
            error(field, f"{field.replace('_', ' ').capitalize()} too long (max {limit} chars)")

    issue_date = (row.get("issue_date") or "").strip()
    if issue_date and parse_issue_date(issue_date) is None:
        error("issue_date", f'Invalid date format: "{issue_date}". Use YYYY-MM-DD.')

    email = (row.get("email") or "").strip()
    if email:
        if len(email) > MAX_LENGTHS["email"]:
            error("email", f"Email too long (max {MAX_LENGTHS['email']} chars)")
        elif not EMAIL_PATTERN.match(email):
            warning("email", f'Invalid email: "{email}"')

    name = row.get("student_name") or ""
    if NUMERIC_NAME_PATTERN.search(name):
        warning("student_name", "Student name contains numbers, is this correct?")

    return errors, warnings


def build_record(row: Mapping[str, str], row_number: int = 1) -> CertificateRecord:
    """Certificate record from a normalized row that passed validation"""
    email = (row.get("email") or "").strip()
    return CertificateRecord(
        row=row_number,
        student_name=row["student_name"].strip(),
        student_id=row["student_id"].strip(),
        degree=row["degree"].strip(),
        institution=row["institution"].strip(),
        issue_date=row["issue_date"].strip(),
        email=email or None,
    )


def validate_batch(rows: Sequence[Mapping[str, str]]) -> ValidationReport:
    """
    Validate every row and run cross-row duplicate checks.

    Duplicate student IDs and duplicate emails are reported as warnings only;
    siblings can share a contact address and the caller confirms intent.

    Args:
        rows: Normalized rows in file order

    Returns:
        ValidationReport with valid records ready for processing
    """
    all_errors: List[ValidationIssue] = []
    all_warnings: List[ValidationIssue] = []
    valid_records: List[CertificateRecord] = []
    invalid_records: List[InvalidRow] = []

    seen_student_ids: Dict[str, int] = {}
    seen_emails: Dict[str, int] = {}

    for index, row in enumerate(rows):
        row_number = index + 1
        errors, warnings = validate_record(row, index)

        student_id = (row.get("student_id") or "").strip()
        if student_id:
            if student_id in seen_student_ids:
                all_warnings.append(ValidationIssue(
                    field="student_id",
                    message=f'Duplicate student ID "{student_id}" (also in row {seen_student_ids[student_id]})',
                    row=row_number
                ))
            seen_student_ids[student_id] = row_number

        email = (row.get("email") or "").strip()
        if email:
            key = email.lower()
            if key in seen_emails:
                all_warnings.append(ValidationIssue(
                    field="email",
                    message=f'Duplicate email "{email}" (also in row {seen_emails[key]})',
                    row=row_number
                ))
            seen_emails[key] = row_number

        all_errors.extend(errors)
        all_warnings.extend(warnings)

        if errors:
            invalid_records.append(InvalidRow(row=row_number, data=dict(row), errors=errors))
        else:
            valid_records.append(build_record(row, row_number))

    report = ValidationReport(
        total_rows=len(rows),
        valid_count=len(valid_records),
        invalid_count=len(invalid_records),
        has_errors=bool(all_errors),
        errors=all_errors,
        warnings=all_warnings,
        valid_records=valid_records,
        invalid_records=invalid_records,
    )

    logger.info(
        f"Validated {report.total_rows} rows: {report.valid_count} valid, "
        f"{report.invalid_count} invalid, {len(all_warnings)} warnings"
    )
    return report
