"""Audio chunking, feature extraction, and file loading."""

from .chunker import AudioChunk, find_low_energy_cut, rms_dbfs, split_audio_into_chunks
from .features import HOP_LENGTH, N_FFT, SAMPLE_RATE, compute_log_mel, mel_filter_bank
from .preprocess import NATIVE_AUDIO_SUFFIXES, convert_to_canonical_wav, load_audio, resample_audio

__all__ = [
    "AudioChunk",
    "HOP_LENGTH",
    "N_FFT",
    "NATIVE_AUDIO_SUFFIXES",
    "SAMPLE_RATE",
    "compute_log_mel",
    "convert_to_canonical_wav",
    "find_low_energy_cut",
    "load_audio",
    "mel_filter_bank",
    "resample_audio",
    "rms_dbfs",
    "split_audio_into_chunks",
]
