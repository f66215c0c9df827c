"""Merge chunk-local aligned units into one session-level transcript."""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from typing import Callable, Sequence

from speechcore.align.base import CorrectedAlignUnit
from speechcore.align.segmenter import is_cjk_ideograph
from speechcore.asr.base import TranscriptSegment

_SENTENCE_END = frozenset(".!?。！？…")
MIN_SEGMENT_SPACING_SECONDS = 0.001
_SEAM_DECIMALS = 6

Diarizer = Callable[[float, float], "str | None"]


@dataclass(frozen=True)
class ChunkTranscript:
    """Corrected units for one chunk; unit times are relative to ``offset``."""

    chunk_index: int
    offset: float
    duration: float
    text: str
    units: list[CorrectedAlignUnit]


@dataclass(frozen=True)
class SegmentationPolicy:
    pause_seconds: float = 0.8
    max_segment_seconds: float = 30.0


def rebase_units(units: Sequence[CorrectedAlignUnit], offset: float) -> list[CorrectedAlignUnit]:
    return [{"text": unit["text"], "start": unit["start"] + offset, "end": unit["end"] + offset} for unit in units]


def merge_chunk_units(chunks: Sequence[ChunkTranscript]) -> list[list[CorrectedAlignUnit]]:
    """Rebase each chunk onto the session timeline and drop overlap duplicates.

    A unit from a later chunk is discarded when its start falls before the end
    of the last unit retained from earlier chunks. Both sides are compared at
    microsecond precision. Returns absolute units grouped by chunk, in chunk
    order.
    """

    merged: list[list[CorrectedAlignUnit]] = []
    last_retained_end: float | None = None
    for chunk in sorted(chunks, key=lambda item: item.chunk_index):
        kept: list[CorrectedAlignUnit] = []
        boundary = None if last_retained_end is None else round(last_retained_end, _SEAM_DECIMALS)
        for unit in rebase_units(chunk.units, chunk.offset):
            # Offsets and unit times are summed separately, so compare rounded values.
            if boundary is not None and round(unit["start"], _SEAM_DECIMALS) < boundary:
                continue
            kept.append(unit)
        if kept:
            last_retained_end = max(unit["end"] for unit in kept)
        merged.append(kept)
    return merged


def _is_wide(char: str) -> bool:
    if is_cjk_ideograph(char):
        return True
    return unicodedata.east_asian_width(char) in ("W", "F")


def join_units(texts: Sequence[str]) -> str:
    """Join unit texts with spaces, except between two full-width (CJK) units."""

    out = ""
    for text in texts:
        if not text:
            continue
        if out and not (_is_wide(out[-1]) and _is_wide(text[0])):
            out += " "
        out += text
    return out


def group_units(
    units: Sequence[CorrectedAlignUnit],
    policy: SegmentationPolicy = SegmentationPolicy(),
) -> list[list[CorrectedAlignUnit]]:
    """Split one chunk's units at sentence punctuation, long pauses, or the length cap."""

    groups: list[list[CorrectedAlignUnit]] = []
    current: list[CorrectedAlignUnit] = []
    for unit in units:
        if current:
            pause = unit["start"] - current[-1]["end"]
            too_long = unit["end"] - current[0]["start"] > policy.max_segment_seconds
            if pause > policy.pause_seconds or too_long:
                groups.append(current)
                current = []
        current.append(unit)
        if unit["text"] and unit["text"][-1] in _SENTENCE_END:
            groups.append(current)
            current = []
    if current:
        groups.append(current)
    return groups


@dataclass
class _SegmentDraft:
    start: float
    end: float
    texts: list[str]


def build_transcript_segments(
    chunks: Sequence[ChunkTranscript],
    *,
    speaker_label: str,
    diarizer: Diarizer | None = None,
    policy: SegmentationPolicy = SegmentationPolicy(),
) -> list[TranscriptSegment]:
    """Produce ordered segments with strictly increasing starts and ``end >= start``.

    A segment whose start does not advance past the previous segment's start
    is folded into the previous segment.
    """

    drafts: list[_SegmentDraft] = []
    for chunk_units in merge_chunk_units(chunks):
        for group in group_units(chunk_units, policy):
            start = group[0]["start"]
            end = max(max(unit["end"] for unit in group), start)
            texts = [unit["text"] for unit in group]
            if drafts and start < drafts[-1].start + MIN_SEGMENT_SPACING_SECONDS:
                drafts[-1].texts.extend(texts)
                drafts[-1].end = max(drafts[-1].end, end)
                continue
            drafts.append(_SegmentDraft(start=start, end=end, texts=texts))

    segments: list[TranscriptSegment] = []
    for draft in drafts:
        text = join_units(draft.texts)
        if not text.strip():
            continue
        speaker = diarizer(draft.start, draft.end) if diarizer is not None else None
        segments.append(
            {
                "segment_id": f"seg_{len(segments) + 1:04d}",
                "start": draft.start,
                "end": draft.end,
                "text": text,
                "speaker": speaker if speaker else speaker_label,
            }
        )
    return segments
