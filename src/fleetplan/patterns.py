"""
Event pattern matching.

Patterns follow the EventBridge shape used for change-notification rules:

    {
        "source": ["aws.ssm"],
        "detail-type": ["Parameter Store Change"],
        "detail": {
            "name": [{"prefix": "/fleet/auth/"}],
            "operation": ["Update"],
        },
    }

Every key of a pattern must match the event attribute of the same name.
A scalar matches by equality, a list matches if any of its entries match, and
a nested dict matches a nested attribute mapping. List entries may also be
operator dicts: {"prefix": str}, {"suffix": str}, {"anything-but": [...]},
{"exists": bool}.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

_MISSING = object()

OPERATORS = frozenset({"prefix", "suffix", "anything-but", "exists"})


def _match_operator(op: Mapping[str, Any], value: Any) -> bool:
    if len(op) != 1:
        raise ValueError(f"Operator dict must have exactly one key: {dict(op)}")
    name, arg = next(iter(op.items()))
    if name == "exists":
        return (value is not _MISSING) == bool(arg)
    if value is _MISSING:
        return False
    if isinstance(value, list):
        return any(_match_operator(op, element) for element in value)
    if name == "prefix":
        return isinstance(value, str) and value.startswith(arg)
    if name == "suffix":
        return isinstance(value, str) and value.endswith(arg)
    if name == "anything-but":
        excluded = arg if isinstance(arg, list) else [arg]
        return value not in excluded
    raise ValueError(f"Unknown pattern operator: {name}")


def _is_operator(entry: Any) -> bool:
    return isinstance(entry, Mapping) and len(entry) == 1 and next(iter(entry)) in OPERATORS


def _match_entry(entry: Any, value: Any) -> bool:
    if _is_operator(entry):
        return _match_operator(entry, value)
    if value is _MISSING:
        return False
    if isinstance(value, list):
        # An array attribute matches if any of its elements match
        return entry in value
    return bool(entry == value)


def matches(pattern: Mapping[str, Any], attributes: Mapping[str, Any]) -> bool:
    """Check whether an attribute mapping satisfies a pattern."""
    for key, expected in pattern.items():
        value = attributes.get(key, _MISSING)
        if isinstance(expected, Mapping) and not _is_operator(expected):
            if not isinstance(value, Mapping) or not matches(expected, value):
                return False
        elif isinstance(expected, list):
            if not any(_match_entry(entry, value) for entry in expected):
                return False
        elif not _match_entry(expected, value):
            return False
    return True


def validate_pattern(pattern: Mapping[str, Any]) -> None:
    """Raise ValueError on operator dicts that are not recognised."""
    for key, expected in pattern.items():
        if isinstance(expected, Mapping):
            if not _is_operator(expected):
                validate_pattern(expected)
            continue
        if isinstance(expected, list):
            for entry in expected:
                if isinstance(entry, Mapping) and not _is_operator(entry):
                    raise ValueError(f"Unknown pattern operator under {key!r}: {dict(entry)}")
