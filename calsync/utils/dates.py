"""Date helpers shared by the sync engine and the local repository."""

from datetime import datetime, timezone
from typing import Optional, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

# CRM timestamps are stored as UTC strings in this format so that SQL string
# comparison is chronological.
DB_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DB_DATE_FORMAT = "%Y-%m-%d"
RFC3339_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_db() -> str:
    """Current UTC time in storage format."""
    return utcnow().strftime(DB_DATETIME_FORMAT)


def to_db_datetime(value: datetime) -> str:
    """Format a datetime for storage, converting aware values to UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(DB_DATETIME_FORMAT)


def parse_db_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored timestamp into a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return date_parser.isoparse(str(value).replace(" ", "T"))


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months to a datetime."""
    return value + relativedelta(months=months)
