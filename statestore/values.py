"""
Value model for the state document.

A stored value is one of:
    str | int | float | bool | None | Dict[str, Value] | List[Value]

Callers may hand in tuples (stored as lists) and any Mapping with string keys
(stored as dict). Everything else is rejected at the boundary so a reader can
never find, say, a set or a datetime where it expects JSON.
"""

from collections.abc import Mapping
from typing import Any, Dict, List, Union

from .errors import InvalidValueError

Scalar = Union[str, int, float, bool, None]
Value = Union[Scalar, Dict[str, Any], List[Any]]

_SCALARS = (str, int, float, bool, type(None))


def normalize_value(value: Any, path: str = "") -> Value:
    """
    Return a detached, normalized copy of value.

    Raises InvalidValueError for unsupported types, non-string mapping keys
    and circular references.
    """
    return _normalize(value, path, set())


def _normalize(value: Any, path: str, active: set) -> Value:
    if isinstance(value, _SCALARS):
        return value

    marker = id(value)
    if marker in active:
        raise InvalidValueError(path, "circular reference")

    if isinstance(value, Mapping):
        active.add(marker)
        result: Dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidValueError(path, f"mapping key {key!r} is not a string")
            result[key] = _normalize(item, f"{path}.{key}" if path else key, active)
        active.discard(marker)
        return result

    if isinstance(value, (list, tuple)):
        active.add(marker)
        result_list = [_normalize(item, f"{path}[{i}]", active) for i, item in enumerate(value)]
        active.discard(marker)
        return result_list

    raise InvalidValueError(path, f"unsupported type {type(value).__name__}")


def is_container(value: Any) -> bool:
    return isinstance(value, (dict, list))


def is_empty_container(value: Any) -> bool:
    return isinstance(value, (dict, list)) and len(value) == 0


def container_size(value: Any) -> int:
    """Length of a dict or list, 0 for anything else."""
    if isinstance(value, (dict, list)):
        return len(value)
    return 0
