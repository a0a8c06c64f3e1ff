from __future__ import annotations

from datetime import date, datetime, timedelta

from moneytrack.errors import ValidationError


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    next_month = shift_month(month_start(value), 1)
    return next_month - timedelta(days=1)


def parse_month_value(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m").date()
    except ValueError as exc:
        raise ValidationError("Invalid month format. Use YYYY-MM.") from exc


def format_month(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def normalize_month(value: str) -> str:
    return format_month(parse_month_value(value))


def month_bounds(month: str) -> tuple[date, date]:
    start = parse_month_value(month)
    return start, month_end(start)


def previous_month(month: str) -> str:
    return format_month(shift_month(parse_month_value(month), -1))


def in_month(value: date, month: str) -> bool:
    start, end = month_bounds(month)
    return start <= value <= end
