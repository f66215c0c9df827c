"""Transcription backend interfaces, configuration, and errors."""

from .backends import MockTranscriptionBackend, validate_transcription_result
from .base import TranscriptionBackend, TranscriptionMeta, TranscriptionResult, TranscriptSegment
from .config import DeviceType, TranscriptionConfig, validate_model_shape
from .device import DeviceResolution, resolve_device, resolve_device_with_details
from .errors import (
    AcceleratorComputeError,
    CacheInconsistencyError,
    ConfigValidationError,
    EmptyAudioInputError,
    ModelNotLoadedError,
    TranscriptionCancelled,
    UnsupportedLanguageHint,
)
from .model_resolution import ModelResolutionError, resolve_model_cache_dir, resolve_model_path
from .qwen3_backend import Qwen3TranscriptionBackend
from .registry import (
    BackendCapabilities,
    BackendRegistration,
    BackendStatus,
    get_backend,
    list_backend_status,
    list_backends,
    list_declared_backends,
)
from .timestamp_normalization import TimestampNormalizationError, normalize_transcript_segments

__all__ = [
    "AcceleratorComputeError",
    "BackendCapabilities",
    "BackendRegistration",
    "BackendStatus",
    "CacheInconsistencyError",
    "ConfigValidationError",
    "DeviceResolution",
    "DeviceType",
    "EmptyAudioInputError",
    "MockTranscriptionBackend",
    "ModelNotLoadedError",
    "ModelResolutionError",
    "Qwen3TranscriptionBackend",
    "TimestampNormalizationError",
    "TranscriptSegment",
    "TranscriptionBackend",
    "TranscriptionCancelled",
    "TranscriptionConfig",
    "TranscriptionMeta",
    "TranscriptionResult",
    "UnsupportedLanguageHint",
    "get_backend",
    "list_backend_status",
    "list_backends",
    "list_declared_backends",
    "normalize_transcript_segments",
    "resolve_device",
    "resolve_device_with_details",
    "resolve_model_cache_dir",
    "resolve_model_path",
    "validate_model_shape",
    "validate_transcription_result",
]
