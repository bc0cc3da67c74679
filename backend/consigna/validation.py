from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError


# Upper bound for a single counted or replenished quantity
MAX_QUANTITY = 1_000_000_000

# ASCII digits only; str.isdigit also admits superscripts and other scripts
INTEGER_PATTERN = re.compile(r"-?[0-9]+")


def coerce_quantity(value: Any, field: str = "quantity") -> float:
    """
    Normalize a counted/replenish quantity.

    Accepts ints, floats and plain numeric strings. Rejects booleans,
    NaN, infinities and negatives.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)

    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be a number", field=field)
        try:
            value = float(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be a number", field=field)

    if not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field=field)

    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number", field=field)
    if number < 0:
        raise ValidationError(f"{field} must be >= 0", field=field)
    if number > MAX_QUANTITY:
        raise ValidationError(f"{field} cannot exceed {MAX_QUANTITY}", field=field)

    return number


def coerce_int(value: Any, field: str) -> int:
    # Integers only (bool is a subclass of int and is rejected)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if INTEGER_PATTERN.fullmatch(stripped):
            return int(stripped)
    raise ValidationError(f"{field} must be an integer", field=field)


def clean_text(value: Any, field: str, *, required: bool = False, max_length: int | None = None) -> str | None:
    """Strip a free-text value; blank becomes None unless required."""
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None

    text = str(value).strip()
    if not text:
        if required:
            raise ValidationError(f"{field} cannot be blank", field=field)
        return None

    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field=field)

    return text


def parse_datetime_param(value: str | None, field: str) -> datetime | None:
    """
    Parse an ISO-8601 query parameter into naive UTC.

    A trailing ``Z`` is accepted; values without an offset are taken as UTC.
    """
    if value is None or not value.strip():
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
