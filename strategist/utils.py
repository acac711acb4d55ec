"""Shared helpers for the JSON text columns kept at the persistence edge."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.  When a default is
    given, a parsed value of a different container type also yields the
    default (``json_parse('{"a": 1}', [])`` returns ``[]``).
    """
    fallback = {} if default is _MISSING else default
    try:
        parsed = json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return fallback
    if isinstance(fallback, (list, dict)) and not isinstance(parsed, type(fallback)):
        return fallback
    return parsed


def json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def utcnow() -> datetime:
    return datetime.now(UTC)
