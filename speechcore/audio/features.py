"""Whisper-style log-mel features (Slaney mel scale) for the audio tower."""

from __future__ import annotations

from functools import lru_cache

import numpy as np
import torch

SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160

_MIN_LOG_HERTZ = 1000.0
_MIN_LOG_MEL = 15.0
_LOG_STEP = 27.0 / np.log(6.4)


def hertz_to_mel(freq: np.ndarray) -> np.ndarray:
    freq = np.asarray(freq, dtype=np.float64)
    mels = 3.0 * freq / 200.0
    log_region = freq >= _MIN_LOG_HERTZ
    mels = np.where(log_region, _MIN_LOG_MEL + np.log(np.maximum(freq, 1e-12) / _MIN_LOG_HERTZ) * _LOG_STEP, mels)
    return mels


def mel_to_hertz(mels: np.ndarray) -> np.ndarray:
    mels = np.asarray(mels, dtype=np.float64)
    freq = 200.0 * mels / 3.0
    log_region = mels >= _MIN_LOG_MEL
    return np.where(log_region, _MIN_LOG_HERTZ * np.exp((mels - _MIN_LOG_MEL) / _LOG_STEP), freq)


@lru_cache(maxsize=4)
def mel_filter_bank(n_mels: int = 128, n_fft: int = N_FFT, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Slaney-normalised triangular filters, ``[n_fft // 2 + 1, n_mels]``."""

    fft_freqs = np.linspace(0, sample_rate // 2, 1 + n_fft // 2)
    mel_points = np.linspace(hertz_to_mel(0.0), hertz_to_mel(sample_rate / 2.0), n_mels + 2)
    filter_freqs = mel_to_hertz(mel_points)
    filter_diff = np.diff(filter_freqs)
    slopes = np.expand_dims(filter_freqs, 0) - np.expand_dims(fft_freqs, 1)
    down_slopes = -slopes[:, :-2] / filter_diff[:-1]
    up_slopes = slopes[:, 2:] / filter_diff[1:]
    filters = np.maximum(0.0, np.minimum(down_slopes, up_slopes))
    enorm = 2.0 / (filter_freqs[2:n_mels + 2] - filter_freqs[:n_mels])
    filters *= np.expand_dims(enorm, 0)
    filters.setflags(write=False)
    return filters


def num_feature_frames(num_samples: int) -> int:
    return max(num_samples, N_FFT) // HOP_LENGTH


def compute_log_mel(samples: np.ndarray | torch.Tensor, *, n_mels: int = 128) -> torch.Tensor:
    """Return ``[n_mels, frames]`` log-mel features for 16 kHz mono samples."""

    audio = torch.as_tensor(np.asarray(samples, dtype=np.float32)).reshape(-1)
    if audio.numel() < N_FFT:
        audio = torch.nn.functional.pad(audio, (0, N_FFT - audio.numel()))

    window = torch.hann_window(N_FFT)
    stft = torch.stft(audio, N_FFT, HOP_LENGTH, window=window, return_complex=True)
    power = stft[..., :-1].abs() ** 2

    filters = torch.from_numpy(np.array(mel_filter_bank(n_mels), dtype=np.float32))
    mel_spec = filters.T @ power
    log_spec = torch.clamp(mel_spec, min=1e-10).log10()
    log_spec = torch.maximum(log_spec, log_spec.max() - 8.0)
    return (log_spec + 4.0) / 4.0
