"""Audio loading: ffmpeg canonical WAV conversion, soundfile decoding and resampling."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Callable

import numpy as np
import soundfile as sf
import torch
import torchaudio

from .features import SAMPLE_RATE

NATIVE_AUDIO_SUFFIXES = frozenset({".wav", ".flac", ".ogg", ".aiff", ".aif"})


def _sanitize_stem(path: Path) -> str:
    stem = path.stem.strip().lower()
    stem = re.sub(r"[^a-z0-9._-]+", "_", stem)
    return stem or "input"


def _run_ffmpeg_command(
    command: list[str],
    *,
    runner: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    try:
        runner(command, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise ValueError("ffmpeg executable not found while converting audio.") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        details = f" Details: {stderr}" if stderr else ""
        raise ValueError(f"ffmpeg audio conversion failed.{details}") from exc


def convert_to_canonical_wav(
    *,
    ffmpeg_binary: str,
    input_path: Path,
    output_dir: Path,
    runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
) -> Path:
    """Convert any media file to mono 16 kHz PCM WAV in ``output_dir``."""

    output_dir.mkdir(parents=True, exist_ok=True)
    canonical_wav_path = output_dir / f"{_sanitize_stem(input_path)}_canonical.wav"
    command = [
        ffmpeg_binary,
        "-y",
        "-i",
        str(input_path),
        "-vn",
        "-ac",
        "1",
        "-ar",
        str(SAMPLE_RATE),
        "-c:a",
        "pcm_s16le",
        str(canonical_wav_path),
    ]
    _run_ffmpeg_command(command, runner=runner)
    return canonical_wav_path


def resample_audio(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Band-limited sinc resampling; content above the target Nyquist is filtered out."""

    if source_rate == target_rate or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    waveform = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32))
    resampled = torchaudio.functional.resample(waveform, orig_freq=int(source_rate), new_freq=int(target_rate))
    return resampled.numpy().astype(np.float32, copy=False)


def load_audio(path: Path, *, target_sample_rate: int = SAMPLE_RATE) -> tuple[np.ndarray, int]:
    """Read an audio file as mono float32 at ``target_sample_rate``."""

    if not Path(path).exists():
        raise ValueError(f"Audio input does not exist: {path}")
    try:
        samples, sample_rate = sf.read(str(path), dtype="float32", always_2d=False)
    except (RuntimeError, sf.LibsndfileError) as exc:
        raise ValueError(f"Failed to decode audio '{path}': {exc}") from exc

    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    return resample_audio(samples, int(sample_rate), target_sample_rate), target_sample_rate
