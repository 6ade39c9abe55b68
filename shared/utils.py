"""Small helpers used across services."""

import json
from datetime import date
from typing import Any


def get_date_string_from_current_date() -> str:
    """Return today's date as YYYY-MM-DD."""
    return date.today().isoformat()


def is_numeric(value: Any) -> bool:
    """Check whether value is a number or a string holding one."""
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def is_json_string(value: Any) -> bool:
    """Check whether value is a string that decodes as a JSON object or array."""
    if not isinstance(value, str):
        return False
    try:
        decoded = json.loads(value)
    except ValueError:
        return False
    return isinstance(decoded, (dict, list))
