"""Chunk, encode, decode, align, and merge one audio input into transcript segments."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
import torch

from speechcore.align.base import AlignUnit, UnitAligner
from speechcore.align.correction import correct_timestamps
from speechcore.align.segmenter import classify_hint, segment_text
from speechcore.align.validation import validate_align_units, validate_monotonic_units
from speechcore.asr.base import TranscriptSegment
from speechcore.asr.config import TranscriptionConfig
from speechcore.asr.errors import AcceleratorComputeError, EmptyAudioInputError, TranscriptionCancelled
from speechcore.audio.chunker import AudioChunk, rms_dbfs, split_audio_into_chunks
from speechcore.audio.features import SAMPLE_RATE, compute_log_mel
from speechcore.audio.preprocess import resample_audio
from speechcore.models.qwen3_asr import Qwen3ASRModel
from speechcore.models.tokenizer import Tokenizer, clean_asr_output, detected_language

from .merge import ChunkTranscript, Diarizer, SegmentationPolicy, build_transcript_segments

STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_DEADLINE_EXCEEDED = "deadline_exceeded"
STATUS_FAILED = "failed"

_LANGUAGE_NAMES = {
    "zh": "Chinese",
    "en": "English",
    "yue": "Cantonese",
    "ar": "Arabic",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "pt": "Portuguese",
    "id": "Indonesian",
    "it": "Italian",
    "ko": "Korean",
    "ru": "Russian",
    "th": "Thai",
    "vi": "Vietnamese",
    "ja": "Japanese",
    "tr": "Turkish",
    "hi": "Hindi",
    "ms": "Malay",
    "nl": "Dutch",
    "sv": "Swedish",
    "da": "Danish",
    "fi": "Finnish",
    "pl": "Polish",
    "cs": "Czech",
    "fil": "Filipino",
    "fa": "Persian",
    "el": "Greek",
    "ro": "Romanian",
    "hu": "Hungarian",
    "mk": "Macedonian",
}


def language_prompt_name(language_hint: str | None) -> str | None:
    """Model-facing language name for a hint such as ``en`` or ``english``; ``None`` means auto-detect."""

    if language_hint is None:
        return None
    hint = language_hint.strip().lower().replace("_", "-")
    if not hint or hint == "auto":
        return None
    base = hint.split("-", 1)[0]
    if base in _LANGUAGE_NAMES:
        return _LANGUAGE_NAMES[base]
    for name in _LANGUAGE_NAMES.values():
        if name.lower() == hint:
            return name
    return None


@dataclass
class SessionResult:
    """Outcome of ``TranscriptionSession.run``.

    ``segments`` always holds the segments of fully completed chunks, even
    when ``status`` is not ``completed``.
    """

    segments: list[TranscriptSegment] = field(default_factory=list)
    status: str = STATUS_COMPLETED
    chunks_total: int = 0
    chunks_completed: int = 0
    error: str | None = None
    language: str | None = None

    @property
    def partial(self) -> bool:
        return self.status != STATUS_COMPLETED


def proportional_units(units: Sequence[str], duration: float) -> list[AlignUnit]:
    """Spread ``units`` across ``[0, duration]`` in proportion to their character counts."""

    total = sum(max(len(unit), 1) for unit in units)
    if total == 0:
        return []
    aligned: list[AlignUnit] = []
    cursor = 0
    for unit in units:
        start = duration * cursor / total
        cursor += max(len(unit), 1)
        aligned.append({"text": unit, "raw_start": start, "raw_end": duration * cursor / total})
    return aligned


class TranscriptionSession:
    """Runs the full transcription pipeline for one request.

    The model and aligner may be shared between sessions; every chunk gets
    its own ``DecodeSession`` so no decode cache outlives a chunk.
    """

    def __init__(
        self,
        model: Qwen3ASRModel,
        config: TranscriptionConfig,
        *,
        tokenizer: Tokenizer | None = None,
        aligner: UnitAligner | None = None,
        aligner_tokenizer: Tokenizer | None = None,
        diarizer: Diarizer | None = None,
        policy: SegmentationPolicy = SegmentationPolicy(),
        clock: Callable[[], float] = time.monotonic,
    ):
        if tokenizer is None:
            raise ValueError("TranscriptionSession requires a tokenizer to turn decoded ids into text.")
        self.model = model
        self.config = config
        self.tokenizer = tokenizer
        self.aligner = aligner
        self.aligner_tokenizer = aligner_tokenizer or tokenizer
        self.diarizer = diarizer
        self.policy = policy
        self._clock = clock

    def _log(self, message: str) -> None:
        if self.config.log_callback is not None:
            self.config.log_callback(message)

    def _stop_reason(self) -> str | None:
        if self.config.cancel_check is not None and self.config.cancel_check():
            return STATUS_CANCELLED
        if self.config.deadline is not None and self._clock() >= self.config.deadline:
            return STATUS_DEADLINE_EXCEEDED
        return None

    def _features(self, chunk: AudioChunk) -> torch.Tensor:
        return compute_log_mel(chunk.samples, n_mels=self.model.config.audio_config.num_mel_bins)

    def _encode(self, chunk: AudioChunk) -> torch.Tensor:
        return self.model.encode(self._features(chunk), chunk_index=chunk.index)

    def _encode_wave(self, chunks: Sequence[AudioChunk]) -> list[torch.Tensor]:
        if self.config.encode_workers == 1 or len(chunks) == 1:
            return [self._encode(chunk) for chunk in chunks]
        with ThreadPoolExecutor(max_workers=self.config.encode_workers) as executor:
            return list(executor.map(self._encode, chunks))

    def _assistant_prefix(self, language_hint: str | None) -> list[int]:
        name = language_prompt_name(language_hint)
        if name is None:
            return []
        return self.tokenizer.encode(f"language {name}<asr_text>")

    def _decode(self, chunk: AudioChunk, embeddings: torch.Tensor, prefix_ids: Sequence[int]) -> str:
        prompt_ids = self.model.build_prompt_ids(embeddings.shape[0], prefix_ids)
        prompt_embeds = self.model.embed_prompt(prompt_ids, embeddings)
        decoder = self.model.new_session(max_new_tokens=self.config.max_new_tokens)
        try:
            generated = decoder.generate(prompt_embeds, should_stop=self._stop_reason)
        except AcceleratorComputeError as exc:
            if exc.chunk_index is None:
                exc.chunk_index = chunk.index
            raise
        self._log(f"session: chunk {chunk.index + 1} decoded tokens={len(generated)}")
        return self.tokenizer.decode(list(prefix_ids) + generated)

    def _segment_hint(self, language_hint: str | None, raw_text: str) -> str | None:
        if language_hint is not None:
            return language_hint
        detected = detected_language(raw_text)
        if detected is not None and classify_hint(detected.lower()) is not None:
            return detected.lower()
        return None

    def _align(self, chunk: AudioChunk, units: list[str]) -> list[AlignUnit]:
        if not units:
            return []
        if self.aligner is None:
            return proportional_units(units, chunk.duration)
        raw = self.aligner.align(
            self._features(chunk),
            units,
            self.aligner_tokenizer,
            audio_duration=chunk.duration,
        )
        return validate_align_units(raw, source=f"chunk {chunk.index} aligner")

    def _transcribe_chunk(
        self,
        chunk: AudioChunk,
        embeddings: torch.Tensor,
        language_hint: str | None,
        prefix_ids: Sequence[int],
    ) -> tuple[ChunkTranscript, str | None]:
        raw_text = self._decode(chunk, embeddings, prefix_ids)
        text = clean_asr_output(raw_text)
        segment_hint = self._segment_hint(language_hint, raw_text)
        units = segment_text(text, segment_hint, log_callback=self.config.log_callback)
        corrected = correct_timestamps(self._align(chunk, units))
        validate_monotonic_units(corrected, source=f"chunk {chunk.index}")
        transcript = ChunkTranscript(
            chunk_index=chunk.index,
            offset=chunk.offset,
            duration=chunk.duration,
            text=text,
            units=corrected,
        )
        return transcript, detected_language(raw_text)

    def _is_silent(self, chunk: AudioChunk) -> bool:
        return self.config.skip_silent_chunks and rms_dbfs(chunk.samples) < self.config.silence_threshold_db

    def run(self, samples: np.ndarray, sample_rate: int, language_hint: str | None = None) -> SessionResult:
        """Transcribe ``samples`` and return ordered, non-overlapping segments.

        Encoding runs in waves of ``encode_workers`` chunks; each wave is
        decoded in chunk order before the next wave is encoded. Cancellation
        and the deadline are checked between chunks and between decode steps;
        the interrupted chunk contributes nothing.
        """

        self.model.require_weights()
        audio = np.asarray(samples, dtype=np.float32)
        if audio.size == 0:
            raise EmptyAudioInputError("cannot transcribe empty audio input (0 samples)")
        if audio.ndim > 1:
            audio = audio.mean(axis=-1)
        if sample_rate != SAMPLE_RATE:
            self._log(f"session: resampling {sample_rate} Hz -> {SAMPLE_RATE} Hz")
            audio = resample_audio(audio, sample_rate, SAMPLE_RATE)

        hint = language_hint if language_hint is not None else self.config.language
        chunks = split_audio_into_chunks(
            audio,
            SAMPLE_RATE,
            max_chunk_duration_seconds=self.config.max_chunk_duration_seconds,
            chunk_overlap_seconds=self.config.chunk_overlap_seconds,
        )
        result = SessionResult(chunks_total=len(chunks))
        self._log(f"session: {len(chunks)} chunk(s) from {audio.size / SAMPLE_RATE:.2f}s of audio")

        prefix_ids = self._assistant_prefix(hint)
        transcripts: list[ChunkTranscript] = []
        wave_size = self.config.encode_workers
        try:
            for wave_start in range(0, len(chunks), wave_size):
                wave = chunks[wave_start:wave_start + wave_size]
                reason = self._stop_reason()
                if reason:
                    raise TranscriptionCancelled(reason)

                active = [chunk for chunk in wave if not self._is_silent(chunk)]
                embeddings = dict(zip((chunk.index for chunk in active), self._encode_wave(active)))
                for chunk in wave:
                    reason = self._stop_reason()
                    if reason:
                        raise TranscriptionCancelled(reason)
                    if chunk.index not in embeddings:
                        self._log(f"session: chunk {chunk.index + 1}/{len(chunks)} skipped as silent")
                    else:
                        transcript, language = self._transcribe_chunk(
                            chunk, embeddings.pop(chunk.index), hint, prefix_ids
                        )
                        transcripts.append(transcript)
                        if result.language is None:
                            result.language = language
                    result.chunks_completed += 1
                    if self.config.progress_callback is not None:
                        self.config.progress_callback(result.chunks_completed / len(chunks))
        except TranscriptionCancelled as exc:
            result.status = exc.reason
            result.error = f"transcription stopped ({exc.reason}) after {result.chunks_completed} chunk(s)"
            self._log(f"session: {result.error}")
        except AcceleratorComputeError as exc:
            if not self.config.return_partial_on_failure:
                raise
            result.status = STATUS_FAILED
            result.error = str(exc)
            self._log(f"session: chunk {exc.chunk_index} failed: {exc}")

        if result.language is None:
            result.language = language_prompt_name(hint)
        result.segments = build_transcript_segments(
            transcripts,
            speaker_label=self.config.speaker_label,
            diarizer=self.diarizer,
            policy=self.policy,
        )
        return result
