"""Shared utility functions used across Cadence modules."""
from __future__ import annotations

import json
from datetime import date, datetime
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


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring of *text*, or None.

    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:idx + 1]
        start = text.find("{", start + 1)
    return None


def parse_llm_json(text: str) -> Any:
    """Parse generator output as JSON, falling back to the first ``{...}`` block.

    Raises ``ValueError`` when neither attempt yields valid JSON.
    """
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        pass
    candidate = extract_json_object(text or "")
    if candidate is None:
        raise ValueError("no JSON object found in model output")
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ValueError(f"fallback JSON block is invalid: {exc.msg}") from exc


def to_iso_date(value: str | date | datetime) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)[:10]


def month_key(iso_date: str) -> str:
    year, month = iso_date.split("-")[:2]
    return f"{year}-{month}"


def quarter_key(iso_date: str) -> str:
    year, month = iso_date.split("-")[:2]
    return f"{year}-Q{(int(month) - 1) // 3 + 1}"


def as_string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [s for s in (str(v).strip() for v in value if v is not None) if s]
