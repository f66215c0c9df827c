"""Validation helpers for aligned unit sequences."""

from __future__ import annotations

import math
from typing import Any

from .base import AlignUnit, CorrectedAlignUnit


def _require_string(value: Any, *, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path} must be a string")
    return value


def _require_finite(value: Any, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric")
    if not math.isfinite(value):
        raise ValueError(f"{path} must be finite")
    return float(value)


def validate_align_units(raw_units: Any, *, source: str = "alignment units") -> list[AlignUnit]:
    """Validate raw aligner output before correction."""

    if not isinstance(raw_units, list):
        raise ValueError(f"{source}: units must be a list")

    validated: list[AlignUnit] = []
    for idx, unit in enumerate(raw_units):
        unit_path = f"{source}: units[{idx}]"
        if not isinstance(unit, dict):
            raise ValueError(f"{unit_path} must be an object")
        validated.append(
            {
                "text": _require_string(unit.get("text"), path=f"{unit_path}.text"),
                "raw_start": _require_finite(unit.get("raw_start"), path=f"{unit_path}.raw_start"),
                "raw_end": _require_finite(unit.get("raw_end"), path=f"{unit_path}.raw_end"),
            }
        )
    return validated


def validate_monotonic_units(units: list[CorrectedAlignUnit], *, source: str = "corrected units") -> None:
    """Raise if starts decrease or any unit ends before it starts."""

    previous_start: float | None = None
    for idx, unit in enumerate(units):
        start = _require_finite(unit.get("start"), path=f"{source}: units[{idx}].start")
        end = _require_finite(unit.get("end"), path=f"{source}: units[{idx}].end")
        if end < start:
            raise ValueError(f"{source}: units[{idx}] ends ({end}) before it starts ({start})")
        if previous_start is not None and start < previous_start:
            raise ValueError(
                f"{source}: units[{idx}] starts at {start}, before the previous unit's start {previous_start}"
            )
        previous_start = start
