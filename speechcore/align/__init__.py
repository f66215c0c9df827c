"""Token segmentation, alignment contracts, and timestamp correction."""

from .base import AlignUnit, CorrectedAlignUnit, UnitAligner
from .correction import correct_timestamps, longest_non_decreasing_subsequence
from .segmenter import classify_hint, is_cjk_ideograph, segment_text
from .validation import validate_align_units, validate_monotonic_units

__all__ = [
    "AlignUnit",
    "CorrectedAlignUnit",
    "UnitAligner",
    "classify_hint",
    "correct_timestamps",
    "is_cjk_ideograph",
    "longest_non_decreasing_subsequence",
    "segment_text",
    "validate_align_units",
    "validate_monotonic_units",
]
