import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import LedgerValidationError

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class MonthRange:
    key: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def parse_month(value: str) -> str:
    value = (value or "").strip()
    if not _MONTH_RE.match(value):
        raise LedgerValidationError(f"Invalid month key: {value!r} (expected YYYY-MM)")
    return value


def month_key(value: Union[date, datetime, str]) -> str:
    if isinstance(value, str):
        return parse_month(value[:7])
    return f"{value.year:04d}-{value.month:02d}"


def current_month(today: Optional[date] = None) -> str:
    return month_key(today or local_today())


def add_months(month: str, count: int) -> str:
    month = parse_month(month)
    year, mon = int(month[:4]), int(month[5:])
    month_index = (year * 12) + (mon - 1) + count
    return f"{month_index // 12:04d}-{(month_index % 12) + 1:02d}"


def previous_month(month: str) -> str:
    return add_months(month, -1)


def resolve_month(month: str) -> MonthRange:
    month = parse_month(month)
    first = date(int(month[:4]), int(month[5:]), 1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return MonthRange(month, first, next_month - date.resolution)
