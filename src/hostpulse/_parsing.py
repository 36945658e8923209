"""Permissive parsing helpers shared by every domain parser."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from hostpulse._errors import ParseError

# Tokens the GPU tool (and friends) print instead of a number.
UNSUPPORTED_TOKENS = frozenset({"", "n/a", "[n/a]", "not supported", "[not supported]"})

_UNIT_SUFFIX = re.compile(r"\s*(?:mib|mhz|w|%|c)\s*$", re.IGNORECASE)


def _clean(text: str | None) -> str | None:
    if text is None:
        return None
    token = text.strip()
    if token.lower() in UNSUPPORTED_TOKENS:
        return None
    token = _UNIT_SUFFIX.sub("", token)
    return token or None


def parse_float(text: str | None, default: float) -> float:
    """Parse ``text`` as a float, returning ``default`` instead of failing."""
    token = _clean(text)
    if token is None:
        return default
    try:
        value = float(token)
    except ValueError:
        return default
    if math.isnan(value) or math.isinf(value):
        return default
    return value


def parse_uint(text: str | None, default: int) -> int:
    """Parse ``text`` as a non-negative integer, ``default`` otherwise.

    Decimal renderings such as ``"1024.0"`` are truncated.
    """
    value = parse_float(text, -1.0)
    if value < 0:
        return default
    return int(value)


def as_int(value: Any, default: int) -> int:
    """Coerce a JSON value (number, numeric string or null) to int."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 and not math.isnan(value) else default
    if isinstance(value, str):
        return parse_uint(value, default)
    return default


def as_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        f = float(value)
        return default if math.isnan(f) or math.isinf(f) else f
    if isinstance(value, str):
        return parse_float(value, default)
    return default


def as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def parse_json_rows(text: str) -> list[dict[str, Any]]:
    """Normalise PowerShell ``ConvertTo-Json`` output to a list of objects.

    ``ConvertTo-Json`` emits a bare object for a single result and an
    array otherwise; empty output and ``null`` mean no rows.
    """
    trimmed = text.lstrip("\ufeff").strip()
    if not trimmed or trimmed in ("[]", "null"):
        return []
    try:
        value = json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Failed to parse JSON output: {exc}") from exc
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        rows = [item for item in value if isinstance(item, dict)]
        if len(rows) != len(value):
            raise ParseError("JSON array contains non-object items")
        return rows
    raise ParseError(f"Unexpected JSON value of type {type(value).__name__}")


def parse_json_object(text: str) -> dict[str, Any]:
    rows = parse_json_rows(text)
    if not rows:
        raise ParseError("Expected a JSON object, got no output")
    return rows[0]


@dataclass(frozen=True)
class CounterRow:
    """One ``Get-Counter`` sample: instance name and cooked value."""

    instance: str
    value: float


def parse_counter_rows(text: str) -> list[CounterRow]:
    """Parse ``CounterSamples | Select InstanceName, CookedValue`` JSON."""
    rows = []
    for row in parse_json_rows(text):
        instance = row.get("InstanceName")
        if not isinstance(instance, str):
            raise ParseError(f"Counter sample without InstanceName: {row!r}")
        rows.append(CounterRow(instance=instance, value=as_float(row.get("CookedValue"), 0.0)))
    return rows
