from __future__ import annotations

import json
import math

import numpy as np

from sporesignal.json_utils import compact_json_dumps, sanitize_for_json, sanitize_value


def test_non_finite_floats_become_none() -> None:
    cleaned, found = sanitize_for_json({"a": math.nan, "b": [1.0, math.inf], "c": (-math.inf,)})
    assert found is True
    assert cleaned == {"a": None, "b": [1.0, None], "c": [None]}


def test_finite_payload_is_untouched() -> None:
    payload = {"value": 1.5, "label": "High–Stable", "count": 3, "flag": None}
    cleaned, found = sanitize_for_json(payload)
    assert found is False
    assert cleaned == payload


def test_numpy_values_become_native() -> None:
    cleaned = sanitize_value(
        {"arr": np.array([1.0, np.nan]), "scalar": np.float64(2.5), "n": np.int64(4)}
    )
    assert cleaned == {"arr": [1.0, None], "scalar": 2.5, "n": 4}
    assert type(cleaned["scalar"]) is float
    assert type(cleaned["n"]) is int


def test_compact_dumps_has_no_whitespace_and_keeps_unicode() -> None:
    text = compact_json_dumps({"label": "Low–Stable", "v": [1, math.nan]})
    assert text == '{"label":"Low–Stable","v":[1,null]}'
    assert json.loads(text)["v"] == [1, None]
