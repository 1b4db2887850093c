"""
Tabular parsing for bulk uploads.
Reads CSV and XLSX files and maps flexible column headers onto canonical record keys.
"""

import csv
import io
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ..core.errors import UnreadableFile, UnsupportedFileFormat
from ..utils.logger import get_logger

logger = get_logger("csv_parser")


REQUIRED_FIELDS = ["student_name", "student_id", "degree", "institution", "issue_date"]
OPTIONAL_FIELDS = ["email"]

COLUMN_ALIASES: Dict[str, List[str]] = {
    "student_name": [
        "studentname", "student_name", "student name", "name",
        "fullname", "full_name", "full name",
    ],
    "student_id": [
        "studentid", "student_id", "student id", "student number",
        "reg number", "registration number", "matricnumber", "matric_number",
        "matric number", "regno", "reg_no",
    ],
    "degree": [
        "degree", "program", "programme", "course", "qualification",
        "certificate", "degree name",
    ],
    "institution": [
        "institution", "school", "university", "college", "institution name",
    ],
    "issue_date": [
        "issuedate", "issue_date", "issue date", "date", "date issued",
        "graduation date", "graddate",
    ],
    "email": [
        "email", "email address", "emailaddress", "student email", "studentemail",
    ],
}

# Flattened lookup: lower-cased header -> canonical key
COLUMN_MAP: Dict[str, str] = {
    alias: field
    for field, aliases in COLUMN_ALIASES.items()
    for alias in aliases
}

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")


def normalize_row(row: Mapping[str, object]) -> Dict[str, str]:
    """
    Map a raw row onto canonical keys.

    Args:
        row: Header -> value mapping as produced by a tabular reader

    Returns:
        Dict keyed by canonical field names; unknown columns are dropped
    """
    normalized: Dict[str, str] = {}
    for raw_key, value in row.items():
        if raw_key is None:
            continue
        mapped = COLUMN_MAP.get(str(raw_key).strip().lower())
        if mapped and mapped not in normalized:
            normalized[mapped] = "" if value is None else str(value).strip()
    return normalized


def parse_rows(lines: Iterable[str]) -> List[Dict[str, str]]:
    """Parse CSV text lines into normalized rows, skipping fully blank lines."""
    reader = csv.DictReader(lines)
    rows = []
    for raw in reader:
        if not any((value or "").strip() for value in raw.values() if isinstance(value, str)):
            continue
        rows.append(normalize_row(raw))
    return rows


def parse_text(text: str) -> List[Dict[str, str]]:
    return parse_rows(io.StringIO(text.lstrip("\ufeff")))


def _cell_text(value: Any) -> str:
    """Text for one spreadsheet cell; dates become YYYY-MM-DD"""
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_table(header: Sequence[Any], body: Iterable[Sequence[Any]]) -> List[Dict[str, str]]:
    """Normalize rows of cell values under a header row, skipping fully blank rows."""
    columns: List[Optional[str]] = [None if cell is None else _cell_text(cell) for cell in header]
    rows = []
    for values in body:
        cells = [_cell_text(value).strip() for value in values]
        if not any(cells):
            continue
        rows.append(normalize_row(dict(zip(columns, cells))))
    return rows


def parse_workbook(file_path: str) -> List[Dict[str, str]]:
    """Parse the first worksheet of an XLSX workbook; the first row is the header."""
    workbook = load_workbook(filename=file_path, read_only=True, data_only=True)
    try:
        rows_iter = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(rows_iter, None)
        if header is None:
            return []
        return parse_table(header, rows_iter)
    finally:
        workbook.close()


def parse_file(file_path: str) -> List[Dict[str, str]]:
    """
    Parse a supported file into normalized rows.

    Args:
        file_path: Path to the uploaded file

    Returns:
        List of normalized rows, in file order

    Raises:
        UnsupportedFileFormat: If the file extension is not supported
        UnreadableFile: If the content cannot be decoded as a table
    """
    extension = Path(file_path).suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileFormat(extension)

    try:
        if extension == ".xlsx":
            rows = parse_workbook(file_path)
        else:
            with open(file_path, "r", encoding="utf-8-sig", newline="") as handle:
                rows = parse_rows(handle)
    except UnicodeDecodeError as e:
        raise UnreadableFile("CSV files must be UTF-8 encoded") from e
    except csv.Error as e:
        raise UnreadableFile(f"malformed CSV ({e})") from e
    except (BadZipFile, InvalidFileException, IndexError) as e:
        raise UnreadableFile("not a valid XLSX workbook") from e

    logger.info(f"Parsed {len(rows)} rows from {Path(file_path).name}")
    return rows


def sample_csv() -> str:
    """Return a template CSV that satisfies the column requirements."""
    return (
        "studentName,studentId,degree,institution,issueDate,email\n"
        "Alice Johnson,STU-2026-001,Bachelor of Science in Computer Science,MIT,2026-06-15,alice@example.com\n"
        "Bob Smith,STU-2026-002,Master of Business Administration,Harvard,2026-06-15,bob@example.com\n"
        "Carol Williams,STU-2026-003,Bachelor of Arts in Economics,Stanford,2026-06-15,carol@example.com\n"
    )
