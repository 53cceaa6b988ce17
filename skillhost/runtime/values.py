# skillhost/runtime/values.py
"""
Script value model.

Values crossing the sandbox boundary (context entries, payloads, reply values)
are restricted to a closed set: None, bool, int, float, str, list and dict with
string keys. Tuples are accepted and normalised to lists so that a value read
back from the durable tier compares equal to the one written.
"""

from __future__ import annotations
from typing import Any

SCALARS = (type(None), bool, int, float, str)


def ensure_script_value(value: Any, _path: str = "value") -> Any:
    """Return `value` normalised to the script value model or raise TypeError."""
    if isinstance(value, SCALARS):
        return value
    if isinstance(value, (list, tuple)):
        return [ensure_script_value(v, f"{_path}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise TypeError(f"{_path}: map keys must be str, got {type(k).__name__}")
            out[k] = ensure_script_value(v, f"{_path}.{k}")
        return out
    raise TypeError(f"{_path}: unsupported script value type {type(value).__name__}")

