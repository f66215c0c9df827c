"""Authoritative transcription backend interface and data contracts."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypedDict

from .config import TranscriptionConfig

if TYPE_CHECKING:
    import numpy as np


class TranscriptSegment(TypedDict):
    """Externally visible transcript unit; seconds are absolute to session start."""

    segment_id: str
    start: float | int
    end: float | int
    text: str
    speaker: str


class TranscriptionMeta(TypedDict):
    """Transcription metadata structure."""

    backend: str
    model: str
    version: str
    device: str
    status: str
    chunks_total: int
    chunks_completed: int


class TranscriptionResult(TypedDict):
    """Internal normalized transcription structure."""

    segments: list[TranscriptSegment]
    meta: TranscriptionMeta


class TranscriptionBackend(Protocol):
    """Contract for transcription backend implementations."""

    def transcribe(self, samples: np.ndarray, sample_rate: int, config: TranscriptionConfig) -> TranscriptionResult:
        """Return transcription output in the normalized internal structure."""
        ...
