"""Deterministic transcript timestamp normalization helpers."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from .base import TranscriptSegment

_TIMESTAMP_SCALE_DECIMALS = 6
_TIMESTAMP_QUANTIZER = Decimal("1").scaleb(-_TIMESTAMP_SCALE_DECIMALS)


class TimestampNormalizationError(ValueError):
    """Raised when transcript timestamps cannot be normalized safely."""


def _as_decimal_seconds(value: Any, *, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TimestampNormalizationError(f"{path} must be numeric seconds")

    decimal_value = Decimal(str(value))
    if decimal_value.is_nan() or decimal_value.is_infinite():
        raise TimestampNormalizationError(f"{path} must be finite numeric seconds")
    if decimal_value < 0:
        raise TimestampNormalizationError(f"{path} must be non-negative")

    return decimal_value.quantize(_TIMESTAMP_QUANTIZER, rounding=ROUND_HALF_UP)


def normalize_transcript_segments(
    segments: list[TranscriptSegment],
    *,
    source: str,
    drop_zero_length: bool = False,
) -> list[TranscriptSegment]:
    """Normalize merged segments for the output contract.

    Rules:
    - timestamps are numeric seconds rounded half-up to 6 decimals
    - negative, NaN, and infinite timestamps are rejected
    - end must be greater than or equal to start
    - zero-length entries are kept unless ``drop_zero_length`` is set
    - ordering is stable by (start, end, original_index)
    - text and speaker are preserved exactly
    """

    normalized: list[tuple[Decimal, Decimal, int, TranscriptSegment]] = []

    for index, segment in enumerate(segments):
        segment_path = f"{source}: segments[{index}]"

        segment_id = segment.get("segment_id")
        text = segment.get("text")
        speaker = segment.get("speaker")
        if not isinstance(segment_id, str) or not segment_id.strip():
            raise TimestampNormalizationError(f"{segment_path}.segment_id must be a non-empty string")
        if not isinstance(text, str) or not text.strip():
            raise TimestampNormalizationError(f"{segment_path}.text must be a non-empty string")
        if not isinstance(speaker, str) or not speaker.strip():
            raise TimestampNormalizationError(f"{segment_path}.speaker must be a non-empty string")

        start = _as_decimal_seconds(segment.get("start"), path=f"{segment_path}.start")
        end = _as_decimal_seconds(segment.get("end"), path=f"{segment_path}.end")

        if end < start:
            raise TimestampNormalizationError(
                f"{segment_path} (segment_id={segment_id}): end must be greater than or equal to start"
            )
        if end == start and drop_zero_length:
            continue

        normalized.append(
            (
                start,
                end,
                index,
                {
                    "segment_id": segment_id,
                    "start": float(start),
                    "end": float(end),
                    "text": text,
                    "speaker": speaker,
                },
            )
        )

    normalized.sort(key=lambda item: (item[0], item[1], item[2]))
    return [item[3] for item in normalized]
