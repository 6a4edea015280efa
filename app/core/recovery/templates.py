"""
Dot-Path Resolution

Resolves dot-separated paths (``context.service``) through dataclasses and
mappings, evaluates applicability conditions, and renders ``{{path}}``
markers in step parameters.
"""

import re
from enum import Enum
from numbers import Real
from typing import Any, Mapping

from .models import ConditionOperator, RecoveryCondition

TEMPLATE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _step(obj: Any, part: str) -> Any:
    """Resolve a single path segment, accepting camelCase for snake_case names."""
    candidates = [part]
    snake = _snake_case(part)
    if snake != part:
        candidates.append(snake)

    if isinstance(obj, Mapping):
        for key in candidates:
            if key in obj:
                return obj[key]
        return MISSING

    if obj is None or isinstance(obj, (str, bytes, Real, Enum)):
        return MISSING

    for attr in candidates:
        if attr.startswith("_"):
            return MISSING
        if hasattr(obj, attr):
            value = getattr(obj, attr)
            if callable(value):
                return MISSING
            return value
    return MISSING


def resolve_path(root: Any, path: str) -> Any:
    """
    Walk ``path`` from ``root``.

    Returns MISSING when any segment cannot be resolved. Never raises.
    """
    parts = [p.strip() for p in path.strip().split(".")]
    if not parts or any(not p for p in parts):
        return MISSING

    value = root
    for part in parts:
        value = _step(value, part)
        if value is MISSING:
            return MISSING
    return value


def field_value(root: Any, path: str) -> Any:
    """Like resolve_path but a missing path yields ``None``."""
    value = resolve_path(root, path)
    return None if value is MISSING else value


# =============================================================================
# Conditions
# =============================================================================


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def condition_matches(condition: RecoveryCondition, subject: Any) -> bool:
    """Evaluate one applicability condition against ``subject``."""
    value = _plain(field_value(subject, condition.field))
    expected = condition.value
    operator = ConditionOperator(condition.operator)

    if operator == ConditionOperator.EQUALS:
        return value == _plain(expected)

    if operator == ConditionOperator.CONTAINS:
        expected = _plain(expected)
        if not isinstance(value, str) or not isinstance(expected, str):
            return False
        return expected.lower() in value.lower()

    if operator == ConditionOperator.MATCHES:
        if not isinstance(value, str) or expected is None:
            return False
        if isinstance(expected, re.Pattern):
            pattern = re.compile(expected.pattern, expected.flags | re.IGNORECASE)
        else:
            try:
                pattern = re.compile(str(expected), re.IGNORECASE)
            except re.error:
                return False
        return pattern.search(value) is not None

    if operator == ConditionOperator.IN:
        if not isinstance(expected, (list, tuple, set, frozenset)):
            return False
        return value in [_plain(v) for v in expected]

    if operator in (ConditionOperator.GT, ConditionOperator.LT):
        if not _is_number(value) or not _is_number(expected):
            return False
        return value > expected if operator == ConditionOperator.GT else value < expected

    return False


# =============================================================================
# Template substitution
# =============================================================================


def render_template(text: str, context: Mapping[str, Any]) -> str:
    """Replace every ``{{path}}`` in ``text``; unresolvable markers stay as-is."""
    if "{{" not in text:
        return text

    def _replace(match: "re.Match[str]") -> str:
        value = resolve_path(context, match.group(1))
        if value is MISSING or value is None:
            return match.group(0)
        return str(_plain(value))

    return TEMPLATE_PATTERN.sub(_replace, text)


def render_parameters(parameters: Any, context: Mapping[str, Any]) -> Any:
    """Return a copy of ``parameters`` with templates rendered in every string."""
    if isinstance(parameters, str):
        return render_template(parameters, context)
    if isinstance(parameters, Mapping):
        return {key: render_parameters(value, context) for key, value in parameters.items()}
    if isinstance(parameters, list):
        return [render_parameters(value, context) for value in parameters]
    if isinstance(parameters, tuple):
        return tuple(render_parameters(value, context) for value in parameters)
    return parameters
