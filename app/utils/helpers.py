"""Shared request/value parsing helpers.

parse_date:     dates from ISO, ISO datetime or DD.MM.YYYY (None on bad input)
json_body:      request JSON as a dict (ValidationError otherwise)
csv_param:      comma-separated query-string values as a list
decimals_to_float: Decimal amounts in reports → float for JSON
"""
import logging
from datetime import date, datetime
from decimal import Decimal

from flask import request

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (day-first format used in agency spreadsheets)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").date()
    except ValueError:
        return None


def json_body() -> dict:
    """Return the request's JSON object, or {} when there is no body."""
    data = request.get_json(silent=True)
    if data is None:
        if request.data:
            raise ValidationError("Request body must be valid JSON")
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def csv_param(name: str) -> list[str]:
    """``?status=draft,returned`` → ["draft", "returned"]."""
    raw = request.args.get(name, "")
    return [v.strip() for v in raw.split(",") if v.strip()]


def decimals_to_float(value):
    """Recursively convert Decimal amounts in a report to float for JSON output."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: decimals_to_float(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [decimals_to_float(v) for v in value]
    return value
