"""Session orchestration and chunk merge."""

from .merge import (
    ChunkTranscript,
    SegmentationPolicy,
    build_transcript_segments,
    group_units,
    join_units,
    merge_chunk_units,
)
from .session import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_DEADLINE_EXCEEDED,
    STATUS_FAILED,
    SessionResult,
    TranscriptionSession,
    language_prompt_name,
    proportional_units,
)

__all__ = [
    "ChunkTranscript",
    "STATUS_CANCELLED",
    "STATUS_COMPLETED",
    "STATUS_DEADLINE_EXCEEDED",
    "STATUS_FAILED",
    "SegmentationPolicy",
    "SessionResult",
    "TranscriptionSession",
    "build_transcript_segments",
    "group_units",
    "join_units",
    "language_prompt_name",
    "merge_chunk_units",
    "proportional_units",
]
