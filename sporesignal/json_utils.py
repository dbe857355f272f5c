"""Shared JSON sanitisation utilities.

One numpy-aware, non-finite-float sanitiser behind every SSE frame the
stream gateway emits.
"""

from __future__ import annotations

import json
import math
from typing import Any

__all__ = [
    "compact_json_dumps",
    "sanitize_for_json",
    "sanitize_value",
]


def sanitize_for_json(obj: Any) -> tuple[Any, bool]:
    """Recursively replace non-finite floats (NaN, Inf, -Inf) with ``None``.

    Numpy arrays become Python lists and numpy scalars native Python types,
    so the result always serialises with ``json.dumps(allow_nan=False)``.

    Returns the sanitised object and whether any non-finite value was seen.
    """
    found_non_finite = False

    def _walk(v: Any) -> Any:
        nonlocal found_non_finite
        if hasattr(v, "tolist") and hasattr(v, "ndim"):
            v = v.tolist()
        elif hasattr(v, "item") and not isinstance(v, (dict, list, tuple, str, bytes)):
            v = v.item()
        if isinstance(v, float):
            if math.isfinite(v):
                return v
            found_non_finite = True
            return None
        if isinstance(v, dict):
            return {k: _walk(val) for k, val in v.items()}
        if isinstance(v, (list, tuple)):
            return [_walk(item) for item in v]
        return v

    cleaned = _walk(obj)
    return cleaned, found_non_finite


def sanitize_value(value: Any) -> Any:
    """Sanitise *value* for JSON, discarding the non-finite flag."""
    cleaned, _ = sanitize_for_json(value)
    return cleaned


def compact_json_dumps(value: Any) -> str:
    """Sanitise *value* and serialise it without whitespace."""
    return json.dumps(
        sanitize_value(value),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
