"""Qwen3-ASR backend implementation on the in-tree torch model."""

from __future__ import annotations

from importlib import import_module
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .backends import validate_transcription_result
from .base import TranscriptionResult
from .config import TranscriptionConfig
from .device import resolve_device_with_details
from .model_resolution import resolve_model_path
from .timestamp_normalization import normalize_transcript_segments

if TYPE_CHECKING:
    import numpy as np


def _package_version() -> str:
    try:
        return version("speechcore")
    except PackageNotFoundError:
        return "unknown"


class Qwen3TranscriptionBackend:
    """Transcription backend that loads Qwen3-ASR safetensors weights once and reuses them.

    ``aligner_path`` optionally points at a Qwen3 forced-aligner snapshot; without
    it, unit timestamps are spread proportionally across each chunk.
    """

    def __init__(
        self,
        *,
        aligner_path: Path | None = None,
        diarizer: Callable[[float, float], str | None] | None = None,
    ):
        self.aligner_path = aligner_path
        self.diarizer = diarizer
        self._loaded: dict[tuple[str, str], tuple[Any, Any]] = {}

    def _load(self, model_dir: Path, device: str, config: TranscriptionConfig) -> tuple[Any, Any]:
        key = (str(model_dir), device)
        if key not in self._loaded:
            models_module = import_module("speechcore.models")
            model = models_module.load_pretrained(
                model_dir,
                config=config,
                device=device,
                log_callback=config.log_callback,
            )
            tokenizer = models_module.load_tokenizer(model_dir)
            self._loaded[key] = (model, tokenizer)
        return self._loaded[key]

    def transcribe(self, samples: np.ndarray, sample_rate: int, config: TranscriptionConfig) -> TranscriptionResult:
        device_resolution = resolve_device_with_details(config.device)
        if config.log_callback is not None:
            config.log_callback(f"device: {device_resolution.resolved} ({device_resolution.reason})")

        model_dir = resolve_model_path(config)
        model, tokenizer = self._load(model_dir, device_resolution.resolved, config)

        aligner = None
        aligner_tokenizer = None
        if self.aligner_path is not None:
            aligner, aligner_tokenizer = self._load(self.aligner_path, device_resolution.resolved, config)
            if not hasattr(aligner, "align"):
                raise ValueError(f"'{self.aligner_path}' is not a forced-aligner checkpoint.")

        session_module = import_module("speechcore.pipeline.session")
        session = session_module.TranscriptionSession(
            model,
            config,
            tokenizer=tokenizer,
            aligner=aligner,
            aligner_tokenizer=aligner_tokenizer,
            diarizer=self.diarizer,
        )
        outcome = session.run(samples, sample_rate, config.language)
        if outcome.error is not None and config.log_callback is not None:
            config.log_callback(f"asr: session ended with status={outcome.status}: {outcome.error}")

        segments = normalize_transcript_segments(outcome.segments, source="qwen3-asr")
        return validate_transcription_result(
            {
                "segments": segments,
                "meta": {
                    "backend": "qwen3-asr",
                    "model": model_dir.name or str(model_dir),
                    "version": _package_version(),
                    "device": device_resolution.resolved,
                    "status": outcome.status,
                    "chunks_total": outcome.chunks_total,
                    "chunks_completed": outcome.chunks_completed,
                },
            },
            source="qwen3-asr",
        )
