"""
Variable interpolation shared by every text-emitting node.

Expands {{name}} placeholders against a session's variable map. Names are
whitespace-trimmed and may use dot notation into nested dicts
(e.g. {{appointment.date}}). A placeholder whose variable is absent is left
verbatim in the output.

Substituted values are not scanned again within one pass. A second pass
over the output does expand placeholders that arrived inside values, so
repeated interpolation is only stable when no value contains {{...}}.
"""
from __future__ import annotations

import re
from typing import Any

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


def get_nested_value(data: dict, field: str, default: Any = None) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    if field in data:
        return data[field]
    current: Any = data
    for part in field.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(text: str, variables: dict[str, Any]) -> str:
    """Replace {{variable}} placeholders; unknown variables stay as written."""
    if not text:
        return ""

    def replacer(match: re.Match) -> str:
        key = match.group(1).strip()
        val = get_nested_value(variables, key, _MISSING)
        if val is _MISSING:
            return match.group(0)
        return format_value(val)

    return PLACEHOLDER.sub(replacer, text)


def find_placeholders(text: str) -> list[str]:
    """Variable names referenced by a text, in order of appearance."""
    return [m.group(1).strip() for m in PLACEHOLDER.finditer(text or "")]


def clean_variable_name(name: str) -> str:
    """Authored variable names may carry a leading '$' ("$name" → "name")."""
    name = (name or "").strip()
    return name[1:] if name.startswith("$") else name
