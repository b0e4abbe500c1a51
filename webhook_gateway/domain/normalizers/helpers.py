"""
Small, total accessors for untrusted provider payloads.
"""
from datetime import datetime, timezone
from typing import Any, Mapping

from webhook_gateway.core.clock import to_naive_utc


def as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def dig(data: Any, *path: str, default: Any = None) -> Any:
    """``data[path[0]][path[1]]...`` or ``default`` as soon as a step is missing"""
    current = data
    for key in path:
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return default if current is None else current


def as_id(value: Any) -> str | None:
    """Provider IDs arrive as ints or strings; stored as strings"""
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return None
    text = str(value)
    return text or None


def as_text(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def preview(value: Any, limit: int = 200) -> str | None:
    text = as_text(value)
    if text is None:
        return None
    return text if len(text) <= limit else text[: limit - 3] + "..."


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 strings, epoch seconds, or epoch milliseconds to naive UTC"""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return to_naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass
        try:
            value = float(text)
        except ValueError:
            return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    return None
