"""Validation helpers shared by the frozen dataclass models.

Private module. Each helper raises ``TypeError`` for a wrong type and
``ValueError`` for a well-typed but unacceptable value, so ``__post_init__``
methods can stay one line per field.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any


_MAX_NESTING: int = 32
_HEX_DIGITS = frozenset("0123456789abcdef")


def validate_instance(value: Any, expected: type | tuple[type, ...], name: str) -> None:
    """Raise ``TypeError`` unless *value* is an instance of *expected*."""
    if not isinstance(value, expected):
        if isinstance(expected, tuple):
            wanted = " or ".join(t.__name__ for t in expected)
        else:
            wanted = expected.__name__
        raise TypeError(f"{name} must be {wanted}, got {type(value).__name__}")


def validate_timestamp(value: Any, name: str) -> None:
    """Raise unless *value* is a non-negative ``int`` (``bool`` rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def validate_optional_timestamp(value: Any, name: str) -> None:
    """Like ``validate_timestamp`` but accepts ``None``."""
    if value is not None:
        validate_timestamp(value, name)


def validate_str_no_null(value: Any, name: str) -> None:
    """Raise unless *value* is a ``str`` free of null bytes."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if "\x00" in value:
        raise ValueError(f"{name} contains null bytes")


def validate_str_not_empty(value: Any, name: str) -> None:
    """Raise unless *value* is a non-empty ``str`` free of null bytes."""
    validate_str_no_null(value, name)
    if not value:
        raise ValueError(f"{name} must not be empty")


def validate_optional_str(value: Any, name: str) -> None:
    """Accept ``None`` or a null-free ``str``."""
    if value is not None:
        validate_str_no_null(value, name)


def validate_hex(value: Any, length: int, name: str) -> None:
    """Raise unless *value* is a lowercase hex string of exactly *length* chars."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if len(value) != length:
        raise ValueError(f"{name} must be {length} hex chars, got {len(value)}")
    if not _HEX_DIGITS.issuperset(value):
        raise ValueError(f"{name} must be lowercase hex")


def validate_mapping(value: Any, name: str) -> None:
    """Raise ``TypeError`` unless *value* is a ``Mapping``."""
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be a Mapping, got {type(value).__name__}")


def sanitize_data(obj: Any, name: str, *, _depth: int = 0) -> Any:
    """Normalize remote JSON so it can be stored and compared deterministically.

    ``None`` values, empty containers, non-finite floats and unknown types
    are dropped; dict keys are sorted. Strings and keys with null bytes are
    rejected because PostgreSQL TEXT/JSONB refuses them.

    Args:
        obj: Parsed JSON value.
        name: Field name used in error messages.

    Returns:
        The cleaned value, or ``None`` when nothing usable remains.

    Raises:
        ValueError: If a string or key contains a null byte.
    """
    if _depth > _MAX_NESTING:
        return None

    if obj is None or isinstance(obj, bool | int):
        return obj

    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None

    if isinstance(obj, str):
        if "\x00" in obj:
            raise ValueError(f"{name} contains null bytes")
        return obj

    if isinstance(obj, Mapping):
        cleaned: dict[str, Any] = {}
        for key in sorted(k for k in obj if isinstance(k, str)):
            if "\x00" in key:
                raise ValueError(f"{name} key contains null bytes")
            value = sanitize_data(obj[key], name, _depth=_depth + 1)
            if not _is_empty(value):
                cleaned[key] = value
        return cleaned

    if isinstance(obj, list | tuple):
        items = (sanitize_data(item, name, _depth=_depth + 1) for item in obj)
        return [item for item in items if not _is_empty(item)]

    return None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, dict | list) and not value)


def deep_freeze(obj: Any) -> Any:
    """Wrap dicts in ``MappingProxyType`` and lists in tuples, recursively."""
    if isinstance(obj, Mapping):
        return MappingProxyType({k: deep_freeze(v) for k, v in obj.items()})
    if isinstance(obj, list | tuple):
        return tuple(deep_freeze(item) for item in obj)
    return obj


def thaw(obj: Any) -> Any:
    """Inverse of [deep_freeze][nostrsync.models._validation.deep_freeze] for JSON encoding."""
    if isinstance(obj, Mapping):
        return {k: thaw(v) for k, v in obj.items()}
    if isinstance(obj, tuple | list):
        return [thaw(item) for item in obj]
    return obj
