from __future__ import annotations
import math
from collections.abc import Mapping
from typing import Any, Optional


def is_falsy(value: Any) -> bool:
    """
    Falsiness as stored definitions expect it: None, False, 0, NaN and "".

    Empty containers are truthy here, unlike Python's bool().
    """
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0 or (isinstance(value, float) and math.isnan(value))
    return False


def extract(value: Any, path: Optional[str]) -> Any:
    """
    Resolve a dot-separated path against a nested JSON value.

    extract({"a": {"b": 5}}, "a.b") -> 5
    extract({"a": None}, "a.b")     -> None
    extract(v, "")                  -> v

    A falsy accumulator short-circuits the remaining steps to None; stepping
    into anything that is not a mapping also yields None. Never raises.
    There are no array-index segments and no escaping of literal dots.
    """
    if not path:
        return value

    acc = value
    for key in path.split("."):
        if is_falsy(acc):
            return None
        acc = acc.get(key) if isinstance(acc, Mapping) else None
    return acc
