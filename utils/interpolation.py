"""
Variable interpolation — substitutes {{name}} placeholders from context variables.

  interpolate("Olá {{name}}!", {"name": "Ana"})          → "Olá Ana!"
  interpolate({"q": "{{user.id}}"}, {"user": {"id": 7}}) → {"q": "7"}

Unknown keys stay as literal placeholders. Never raises.
"""
from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")
_MISSING = object()


def lookup_variable(variables: dict[str, Any], path: str) -> Any:
    """Resolve a flat key or a dot path (dict keys / list indices). Returns _MISSING if absent."""
    if path in variables:
        return variables[path]
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def has_variable(variables: dict[str, Any], path: str) -> bool:
    return lookup_variable(variables, path) is not _MISSING


def get_variable(variables: dict[str, Any], path: str, default: Any = None) -> Any:
    value = lookup_variable(variables, path)
    return default if value is _MISSING else value


def stringify(value: Any) -> str:
    """Render a variable value the way it appears inside user-facing text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def interpolate_text(text: str, variables: dict[str, Any]) -> str:
    if "{{" not in text:
        return text

    def replacer(match: re.Match) -> str:
        value = lookup_variable(variables, match.group(1))
        if value is _MISSING:
            return match.group(0)
        return stringify(value)

    return _PLACEHOLDER.sub(replacer, text)


def interpolate(template: Any, variables: dict[str, Any]) -> Any:
    """Recursively interpolate strings inside str / dict / list templates."""
    if isinstance(template, str):
        return interpolate_text(template, variables or {})
    if isinstance(template, dict):
        return {k: interpolate(v, variables) for k, v in template.items()}
    if isinstance(template, list):
        return [interpolate(v, variables) for v in template]
    return template
