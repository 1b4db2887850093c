"""
Issue-date parsing helpers shared by validation and issuance.
"""

from datetime import datetime, timezone
from typing import Optional


# Accepted in addition to ISO 8601. Slash dates read month first (03/04/2026 is
# March 4); day-first is tried only when the first field cannot be a month.
DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)


def parse_issue_date(value: str) -> Optional[datetime]:
    """
    Parse a user-supplied issue date.

    Args:
        value: Date string as it appeared in the uploaded row

    Returns:
        A timezone-aware UTC datetime, or None if the value cannot be parsed
    """
    if not value:
        return None

    text = value.strip()
    parsed: Optional[datetime] = None

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_unix_timestamp(value: str) -> int:
    """
    Convert an issue date string to Unix seconds.

    Raises:
        ValueError: If the date cannot be parsed
    """
    parsed = parse_issue_date(value)
    if parsed is None:
        raise ValueError(f'Invalid date format: "{value}"')
    return int(parsed.timestamp())


def format_display_date(value: str) -> str:
    """Format an issue date for printing on a certificate (e.g. June 15, 2026)."""
    parsed = parse_issue_date(value)
    if parsed is None:
        return value
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"
