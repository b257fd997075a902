"""Small coercions for request values, plus contract-calendar arithmetic."""
import calendar
from datetime import date, datetime


def parse_date(value):
    """``date`` from a date, datetime or ISO string; None when empty or unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    # accepts "2025-03-01" and "2025-03-01T09:30:00"
    for parse in (date.fromisoformat, lambda s: datetime.fromisoformat(s).date()):
        try:
            return parse(text)
        except ValueError:
            continue
    return None


def parse_int(value):
    """``int`` for numeric input, None for blanks, booleans and junk."""
    if isinstance(value, bool) or value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def add_months(start: date, months: int) -> date:
    """Same day ``months`` later; Jan 31 plus one month lands on the last day of February."""
    year, month0 = divmod(start.year * 12 + start.month - 1 + months, 12)
    month = month0 + 1
    last_day = calendar.monthrange(year, month)[1]
    return start.replace(year=year, month=month, day=min(start.day, last_day))
