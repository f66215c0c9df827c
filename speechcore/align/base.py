"""Alignment data contracts."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence, TypedDict

if TYPE_CHECKING:
    import torch


class AlignUnit(TypedDict):
    """One character (CJK) or word with raw, possibly non-monotonic, timestamps."""

    text: str
    raw_start: float
    raw_end: float


class CorrectedAlignUnit(TypedDict):
    """Align unit after monotonic repair: ``start <= end`` and starts never decrease."""

    text: str
    start: float
    end: float


class UnitAligner(Protocol):
    """Anything that assigns raw timestamps to segmenter units for one chunk."""

    def align(
        self,
        features: torch.Tensor,
        units: Sequence[str],
        tokenizer: object,
        *,
        audio_duration: float | None = None,
    ) -> list[AlignUnit]:
        ...
