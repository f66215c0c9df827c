"""Monotonic repair of raw forced-alignment timestamps."""

from __future__ import annotations

from bisect import bisect_right
from typing import Sequence

from .base import AlignUnit, CorrectedAlignUnit


def longest_non_decreasing_subsequence(values: Sequence[float]) -> list[int]:
    """Indices of one longest non-decreasing subsequence, O(n log n).

    Patience sorting over ``values``; ``bisect_right`` lets equal values extend
    a pile, so ties count as ordered.
    """

    tails: list[float] = []
    tail_indices: list[int] = []
    predecessors: list[int] = [-1] * len(values)

    for index, value in enumerate(values):
        pile = bisect_right(tails, value)
        if pile > 0:
            predecessors[index] = tail_indices[pile - 1]
        if pile == len(tails):
            tails.append(value)
            tail_indices.append(index)
        else:
            tails[pile] = value
            tail_indices[pile] = index

    if not tail_indices:
        return []
    sequence: list[int] = []
    cursor = tail_indices[-1]
    while cursor != -1:
        sequence.append(cursor)
        cursor = predecessors[cursor]
    sequence.reverse()
    return sequence


def correct_timestamps(units: Sequence[AlignUnit]) -> list[CorrectedAlignUnit]:
    """Return units whose starts never decrease and whose ends never precede starts.

    Units on the longest non-decreasing run of raw starts keep their start.
    Every other unit is clamped, in order, into
    ``[previous corrected start, next kept unit's raw start]``; either bound
    is dropped when there is no such unit. All units end at
    ``max(start, raw_end)``. Never raises for well-typed input.
    """

    raw_starts = [float(unit["raw_start"]) for unit in units]
    keep = set(longest_non_decreasing_subsequence(raw_starts))

    next_kept_start: list[float | None] = [None] * len(units)
    upcoming: float | None = None
    for index in range(len(units) - 1, -1, -1):
        next_kept_start[index] = upcoming
        if index in keep:
            upcoming = raw_starts[index]

    corrected: list[CorrectedAlignUnit] = []
    previous_start: float | None = None
    for index, unit in enumerate(units):
        start = raw_starts[index]
        if index not in keep:
            if previous_start is not None:
                start = max(previous_start, start)
            ceiling = next_kept_start[index]
            if ceiling is not None:
                start = min(start, ceiling)
        end = max(start, float(unit["raw_end"]))
        corrected.append({"text": unit["text"], "start": start, "end": end})
        previous_start = start
    return corrected
