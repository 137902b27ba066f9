"""Normalization of human-readable engagement counters ("1.2K", "3M", "42")."""
from __future__ import annotations

import math
import re
from typing import Any, Dict, Mapping

_LEADING_DIGITS = re.compile(r"^[0-9]+")
_NON_NUMERIC = re.compile(r"[^0-9.]")
_SUFFIX_MULTIPLIERS = {"k": 1_000, "m": 1_000_000}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _to_int(digits: str) -> int:
    try:
        return int(digits)
    except ValueError:
        # Beyond the interpreter's int-from-string digit limit.
        return 0


def normalize_metric(raw: Any) -> int:
    """Convert a raw counter into an integer; never raises.

    Empty or missing values become 0, ``K``/``M`` suffixes scale the value,
    any other noise is stripped and whatever remains unparseable is 0.
    """

    if raw is None:
        return 0
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        if not math.isfinite(raw):
            return 0
        return _round_half_up(raw)

    text = str(raw).strip().lower()
    if not text:
        return 0
    if text.isascii() and text.isdigit():
        return _to_int(text)

    multiplier = _SUFFIX_MULTIPLIERS.get(text[-1])
    if multiplier is not None:
        number = _NON_NUMERIC.sub("", text[:-1])
        try:
            value = float(number)
        except ValueError:
            return 0
        scaled = value * multiplier
        if not math.isfinite(scaled):
            return 0
        return _round_half_up(scaled)

    match = _LEADING_DIGITS.match(_NON_NUMERIC.sub("", text))
    if not match:
        return 0
    return _to_int(match.group(0))


def normalize_metrics(raw: Any) -> Dict[str, int]:
    """Normalize every counter of a record's metric mapping."""

    if not isinstance(raw, Mapping):
        return {}
    return {str(name): normalize_metric(value) for name, value in raw.items()}
