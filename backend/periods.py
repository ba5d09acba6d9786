from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterator, Optional, Tuple, Union

PRESET_DAYS = {
    "LAST_7_DAYS": 7,
    "LAST_14_DAYS": 14,
    "LAST_30_DAYS": 30,
}

REPORT_PERIOD_TYPES = ("yesterday", "last_7_days", "last_30_days", "this_month", "last_month")
DEFAULT_REPORT_PERIOD = "last_7_days"

DateLike = Union[str, date, datetime]
Range = Union[str, Dict[str, DateLike]]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if "T" in text:
        text = text.split("T", 1)[0]
    return date.fromisoformat(text)


def _as_period(start: date, end: date) -> Dict[str, str]:
    return {"start": start.isoformat(), "end": end.isoformat()}


def previous_period(start: DateLike, end: DateLike) -> Dict[str, str]:
    start_d = parse_date(start)
    end_d = parse_date(end)
    days = (end_d - start_d).days + 1
    prev_end = start_d - timedelta(days=1)
    prev_start = prev_end - timedelta(days=days - 1)
    return _as_period(prev_start, prev_end)


def _normalize_range(range_: Range, today: date) -> Tuple[date, date]:
    if isinstance(range_, str):
        days = PRESET_DAYS.get(range_.upper())
        if days is None:
            raise ValueError(f"Unsupported preset range: {range_}")
        return today - timedelta(days=days - 1), today

    try:
        start = parse_date(range_.get("start"))
        end = parse_date(range_.get("end"))
    except (TypeError, ValueError, AttributeError):
        raise ValueError("Invalid custom range: start/end must be valid dates")

    if start > end:
        raise ValueError("Invalid custom range: start must be before or equal to end")
    return start, end


def comparison_periods(range_: Range, today: Optional[date] = None) -> Dict[str, Dict[str, str]]:
    """
    Período atual + período anterior de mesmo tamanho, terminando na véspera do início.
    """
    start, end = _normalize_range(range_, today or utc_today())
    return {
        "current": _as_period(start, end),
        "previous": previous_period(start, end),
    }


def report_period(period_type: Optional[str], today: Optional[date] = None) -> Dict[str, str]:
    today = today or utc_today()
    yesterday = today - timedelta(days=1)

    if period_type == "yesterday":
        return _as_period(yesterday, yesterday)
    if period_type == "last_30_days":
        return _as_period(yesterday - timedelta(days=29), yesterday)
    if period_type == "this_month":
        start = today.replace(day=1)
        # no dia 1 o mês corrente só tem o próprio dia
        return _as_period(start, max(start, yesterday))
    if period_type == "last_month":
        end = today.replace(day=1) - timedelta(days=1)
        return _as_period(end.replace(day=1), end)
    return _as_period(yesterday - timedelta(days=6), yesterday)


def daterange(start: DateLike, end: DateLike) -> Iterator[date]:
    current = parse_date(start)
    last = parse_date(end)
    while current <= last:
        yield current
        current += timedelta(days=1)


def parse_datetime(value) -> Optional[datetime]:
    """ISO-8601 (com ou sem 'Z') para datetime com fuso; None quando inválido."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
