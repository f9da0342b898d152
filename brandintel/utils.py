"""Shared utility functions used across brandintel modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str | None:
    """Serialize *value* for a ``*_json`` text column. ``None`` stays ``None``."""
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back from DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)
