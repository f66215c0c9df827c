"""Energy-aware splitting of long audio into bounded chunks."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from speechcore.asr.errors import EmptyAudioInputError


@dataclass(frozen=True)
class AudioChunk:
    """A slice of the session audio; ``offset`` is absolute seconds from session start."""

    index: int
    offset: float
    duration: float
    sample_rate: int
    samples: np.ndarray = field(repr=False, compare=False)

    @property
    def end(self) -> float:
        return self.offset + self.duration


def _as_mono_float(samples: object) -> np.ndarray:
    array = np.asarray(samples, dtype=np.float32)
    if array.ndim == 2:
        array = array.mean(axis=1)
    if array.ndim != 1:
        raise ValueError(f"samples must be a 1D mono sequence (got shape {array.shape})")
    return array


def _window_energy(samples: np.ndarray, centers: np.ndarray, half_window: int) -> np.ndarray:
    """Mean squared amplitude of ``samples`` in ``[c - half, c + half)`` for each center."""

    cumulative = np.concatenate(([0.0], np.cumsum(samples.astype(np.float64) ** 2)))
    lo = np.clip(centers - half_window, 0, samples.size)
    hi = np.clip(centers + half_window, 0, samples.size)
    counts = np.maximum(hi - lo, 1)
    return (cumulative[hi] - cumulative[lo]) / counts


def find_low_energy_cut(
    samples: np.ndarray,
    *,
    lower: int,
    upper: int,
    window: int,
) -> int:
    """Return the sample index in ``[lower, upper]`` at the centre of the quietest window.

    Ties resolve to the latest candidate so chunks stay as long as allowed.
    """

    if upper <= lower:
        return upper
    step = max(window // 2, 1)
    centers = np.arange(lower, upper + 1, step, dtype=np.int64)
    if centers[-1] != upper:
        centers = np.append(centers, upper)
    energy = _window_energy(samples, centers, max(window // 2, 1))
    reversed_best = int(np.argmin(energy[::-1]))
    return int(centers[len(centers) - 1 - reversed_best])


def split_audio_into_chunks(
    samples: object,
    sample_rate: int,
    *,
    max_chunk_duration_seconds: float = 20.0,
    chunk_overlap_seconds: float = 0.0,
    search_window_seconds: float = 5.0,
    energy_window_seconds: float = 0.1,
    min_chunk_duration_seconds: float = 1.0,
) -> list[AudioChunk]:
    """Split audio into ordered chunks no longer than ``max_chunk_duration_seconds``.

    Each cut is placed at the quietest ``energy_window_seconds`` window found
    within ``search_window_seconds`` before the latest allowed cut. The next
    chunk starts ``chunk_overlap_seconds`` before that cut. Audio that already
    fits yields one chunk. Only empty input is an error.
    """

    audio = _as_mono_float(samples)
    if audio.size == 0:
        raise EmptyAudioInputError("cannot chunk empty audio input (0 samples)")
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be greater than 0 (got {sample_rate})")
    if max_chunk_duration_seconds <= 0:
        raise ValueError("max_chunk_duration_seconds must be greater than 0")
    if chunk_overlap_seconds < 0 or chunk_overlap_seconds >= max_chunk_duration_seconds:
        raise ValueError("chunk_overlap_seconds must be >= 0 and smaller than max_chunk_duration_seconds")

    total = audio.size
    max_len = max(int(max_chunk_duration_seconds * sample_rate), 1)
    overlap = int(round(chunk_overlap_seconds * sample_rate))
    search = max(int(round(search_window_seconds * sample_rate)), 0)
    window = max(int(round(energy_window_seconds * sample_rate)), 1)
    min_len = min(max(int(round(min_chunk_duration_seconds * sample_rate)), overlap + 1), max_len)

    if total <= max_len:
        return [AudioChunk(index=0, offset=0.0, duration=total / sample_rate, sample_rate=sample_rate, samples=audio)]

    chunks: list[AudioChunk] = []
    start = 0
    while True:
        remaining = total - start
        if remaining <= max_len:
            cut = total
        else:
            upper = start + max_len
            lower = max(start + min_len, upper - search)
            cut = find_low_energy_cut(audio, lower=lower, upper=upper, window=window)

        chunks.append(
            AudioChunk(
                index=len(chunks),
                offset=start / sample_rate,
                duration=(cut - start) / sample_rate,
                sample_rate=sample_rate,
                samples=audio[start:cut],
            )
        )
        if cut >= total:
            break
        start = max(cut - overlap, start + 1)
    return chunks


def rms_dbfs(samples: np.ndarray) -> float:
    """Root-mean-square level in dB relative to full scale; silence floors at -200 dB."""

    if samples.size == 0:
        return -200.0
    rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
    return 20.0 * float(np.log10(max(rms, 1e-10)))
