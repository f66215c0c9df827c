"""Error kinds surfaced by the transcription core."""

from __future__ import annotations


class ConfigValidationError(ValueError):
    """Raised when a configuration is rejected before any compute is attempted."""


class EmptyAudioInputError(ValueError):
    """Raised when a zero-length sample sequence reaches the chunker or session."""


class ModelNotLoadedError(ValueError):
    """Raised when encode/decode is requested before weights were supplied."""


class CacheInconsistencyError(ValueError):
    """Raised when a decode step does not match the cache offset.

    This indicates a programming error in the caller and is never retried.
    """


class AcceleratorComputeError(ValueError):
    """Raised when a tensor compute call fails inside encode or decode."""

    def __init__(self, message: str, *, chunk_index: int | None = None):
        super().__init__(message)
        self.chunk_index = chunk_index


class UnsupportedLanguageHint(Warning):
    """Reported (not raised) when the segmenter sees an unknown language tag."""

    def __init__(self, hint: str):
        super().__init__(f"unsupported language hint '{hint}'; falling back to whitespace segmentation")
        self.hint = hint


class TranscriptionCancelled(Exception):
    """Raised at a chunk or step boundary when the caller cancels or the deadline passes."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
