"""
Utility functions shared across the app. This includes:
- Request body helpers for JSON endpoints (get_json_body, require_fields).
- Input parsing (decimal with comma or dot, optional int, dates, digits-only).
- Random code/token generation for delivery codes, quote tokens and verification codes.
- Money rounding and period arithmetic.
"""

from __future__ import annotations

import secrets
import string
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable

from flask import request

from .errors import ValidationError


def get_json_body() -> Dict[str, Any]:
    """Return the JSON object body of the request (empty dict when absent)."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("O corpo da requisição deve ser um objeto JSON.")
    return data


def require_fields(data: Dict[str, Any], fields: Iterable[str]) -> None:
    """Raise ValidationError listing every missing/blank field."""
    missing = []
    for field in fields:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(field)
    if missing:
        raise ValidationError(
            "Campos obrigatórios ausentes: " + ", ".join(missing),
            payload={"fields": missing},
        )


def parse_decimal(value: Any) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    raw = str(value).strip().replace(",", ".")
    if raw == "":
        return None
    try:
        return Decimal(raw)
    except (InvalidOperation, ValueError):
        return None


def parse_optional_int(value: Any) -> int | None:
    """Parse optional int from body/query."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_date(value: Any, field: str = "date") -> date | None:
    """Parse an ISO date (YYYY-MM-DD). Datetimes are truncated to their date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        raise ValidationError(f"Data inválida para '{field}'.", payload={"fields": [field]})


def parse_datetime(value: Any, field: str = "datetime") -> datetime | None:
    """Parse an ISO datetime; a bare date becomes midnight. Timezones are dropped."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    raw = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Data/hora inválida para '{field}'.", payload={"fields": [field]})
    return parsed.replace(tzinfo=None)


def normalize_digits(value: Any) -> str:
    """Keep only digits (used for CNPJ/phone inputs)."""
    if not value:
        return ""
    return "".join(ch for ch in str(value) if ch.isdigit())


def money(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def numeric_code(length: int = 6) -> str:
    """Random numeric code (delivery confirmation / email verification)."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


def short_code(length: int = 8) -> str:
    """Human-friendly uppercase code without ambiguous characters."""
    alphabet = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    if month == 12:
        last_day = 31
    else:
        last_day = (date(year, month + 1, 1) - timedelta(days=1)).day
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


def month_key(moment: datetime | date) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"
