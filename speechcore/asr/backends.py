"""Transcription backend implementations and validation helpers."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .base import TranscriptionResult, TranscriptSegment
from .config import TranscriptionConfig
from .timestamp_normalization import normalize_transcript_segments

if TYPE_CHECKING:
    import numpy as np

_STATUSES = frozenset({"completed", "cancelled", "deadline_exceeded", "failed"})


@dataclass(frozen=True)
class MockTranscriptionBackend:
    """Replay transcript segments from a local JSON file for deterministic testing."""

    mock_json_path: Path

    def transcribe(self, samples: np.ndarray, sample_rate: int, config: TranscriptionConfig) -> TranscriptionResult:
        del samples, sample_rate  # Unused by mock backend.
        if not self.mock_json_path.exists():
            raise ValueError(f"Mock transcription file does not exist: {self.mock_json_path}")

        try:
            raw_data = json.loads(self.mock_json_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Mock transcription JSON parse error in '{self.mock_json_path}': {exc.msg}") from exc

        if not isinstance(raw_data, dict):
            raise ValueError(f"{self.mock_json_path}: root must be an object")

        raw_meta = raw_data.get("meta") if isinstance(raw_data.get("meta"), dict) else {}
        resolved_model = "unknown"
        if config.model_path is not None:
            resolved_model = config.model_path.name or str(config.model_path)
        elif isinstance(raw_meta.get("model"), str) and raw_meta["model"].strip():
            resolved_model = raw_meta["model"].strip()

        resolved_version = "unknown"
        if isinstance(raw_meta.get("version"), str) and raw_meta["version"].strip():
            resolved_version = raw_meta["version"].strip()

        segments = raw_data.get("segments")
        if isinstance(segments, list):
            segments = [
                {**segment, "speaker": segment.get("speaker") or config.speaker_label}
                if isinstance(segment, dict)
                else segment
                for segment in segments
            ]
        chunks = len(segments) if isinstance(segments, list) else 0
        normalized: dict[str, Any] = {
            "segments": segments,
            "meta": {
                "backend": "mock",
                "model": resolved_model,
                "version": resolved_version,
                "device": "cpu",
                "status": "completed",
                "chunks_total": chunks,
                "chunks_completed": chunks,
            },
        }
        return validate_transcription_result(normalized, source=str(self.mock_json_path))


def _require_non_empty_string(value: Any, *, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{path} must be a non-empty string")
    return value


def _require_count(value: Any, *, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{path} must be a non-negative integer")
    return value


def validate_transcription_result(raw_data: Any, *, source: str = "transcription data") -> TranscriptionResult:
    """Validate and return transcription JSON that matches the output contract.

    Segments go through ``normalize_transcript_segments``; on top of that,
    segment starts must be strictly increasing.
    """

    if not isinstance(raw_data, dict):
        raise ValueError(f"{source}: root must be an object")

    segments_raw = raw_data.get("segments")
    meta_raw = raw_data.get("meta")

    if not isinstance(segments_raw, list):
        raise ValueError(f"{source}: 'segments' must be a list")
    if not isinstance(meta_raw, dict):
        raise ValueError(f"{source}: 'meta' must be an object")

    backend = _require_non_empty_string(meta_raw.get("backend"), path=f"{source}: meta.backend")
    model = _require_non_empty_string(meta_raw.get("model"), path=f"{source}: meta.model")
    version = _require_non_empty_string(meta_raw.get("version"), path=f"{source}: meta.version")
    device = _require_non_empty_string(meta_raw.get("device"), path=f"{source}: meta.device")
    status = _require_non_empty_string(meta_raw.get("status"), path=f"{source}: meta.status")
    if status not in _STATUSES:
        raise ValueError(f"{source}: meta.status must be one of {', '.join(sorted(_STATUSES))}")
    chunks_total = _require_count(meta_raw.get("chunks_total"), path=f"{source}: meta.chunks_total")
    chunks_completed = _require_count(meta_raw.get("chunks_completed"), path=f"{source}: meta.chunks_completed")
    if chunks_completed > chunks_total:
        raise ValueError(f"{source}: meta.chunks_completed cannot exceed meta.chunks_total")

    for idx, segment_raw in enumerate(segments_raw):
        if not isinstance(segment_raw, dict):
            raise ValueError(f"{source}: segments[{idx}] must be an object")

    segments: list[TranscriptSegment] = normalize_transcript_segments(segments_raw, source=source)
    for idx in range(1, len(segments)):
        if segments[idx]["start"] <= segments[idx - 1]["start"]:
            raise ValueError(
                f"{source}: segments[{idx}] (segment_id={segments[idx]['segment_id']}) "
                "must start strictly after the previous segment"
            )

    return {
        "segments": segments,
        "meta": {
            "backend": backend,
            "model": model,
            "version": version,
            "device": device,
            "status": status,
            "chunks_total": chunks_total,
            "chunks_completed": chunks_completed,
        },
    }
