from __future__ import annotations
import copy
from typing import Any, Optional


def rotate(payload: Any, n: Optional[int] = 1) -> Any:
    """
    Replicate a resolved payload to simulate a larger dataset.

    rotate([1, 2], 3)   -> [1, 2, 1, 2, 1, 2]
    rotate({"a": 1}, 2) -> [{"a": 1}, {"a": 1}]

    n of None, 0 or 1 and a None payload are no-ops; scalars pass through.
    Every repetition is an independent deep copy.
    """
    if not n or n <= 1 or payload is None:
        return payload

    if isinstance(payload, list):
        result = []
        for _ in range(n):
            result.extend(copy.deepcopy(payload))
        return result

    if isinstance(payload, dict):
        return [copy.deepcopy(payload) for _ in range(n)]

    return payload
