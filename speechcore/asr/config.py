"""Transcription configuration contract used by CLI/backend/session plumbing."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Literal

from .errors import ConfigValidationError

if TYPE_CHECKING:
    from speechcore.models.config import ASRModelConfig

DeviceType = Literal["cpu", "cuda", "mps", "auto"]


@dataclass(frozen=True)
class TranscriptionConfig:
    """Model shape overrides, chunking policy, and runtime options.

    Model-shape fields default to the Qwen3-ASR 1.7B checkpoint layout. When a
    checkpoint is loaded from disk its own ``config.json`` wins unless
    ``apply_to_model_config`` is called with ``override_model_shape=True``.

    ``downsample_factor`` defaults to 1 because the audio tower's three
    stride-2 convolutions already reduce time 8x; larger values (4 is a common
    stride) add average pooling after the tower.
    """

    num_mel_bins: int = 128
    encoder_layers: int = 24
    encoder_attention_heads: int = 16
    decoder_hidden_size: int = 2048
    num_attention_heads: int = 16
    num_key_value_heads: int = 8
    head_dim: int = 128
    rope_theta: float = 1_000_000.0
    downsample_factor: int = 1
    max_chunk_duration_seconds: float = 20.0
    chunk_overlap_seconds: float = 0.0

    backend_name: str = "qwen3-asr"
    model_path: Path | None = None
    model_id: str | None = None
    revision: str | None = None
    device: DeviceType = "auto"
    language: str | None = None
    max_new_tokens: int = 448
    encode_workers: int = 1
    skip_silent_chunks: bool = True
    silence_threshold_db: float = -50.0
    speaker_label: str = "Speaker"
    return_partial_on_failure: bool = True
    download_progress: bool | None = None
    deadline: float | None = None
    progress_callback: Callable[[float], None] | None = None
    cancel_check: Callable[[], bool] | None = None
    log_callback: Callable[[str], None] | None = None

    def __post_init__(self) -> None:
        validate_model_shape(
            num_attention_heads=self.num_attention_heads,
            num_key_value_heads=self.num_key_value_heads,
            head_dim=self.head_dim,
            decoder_hidden_size=self.decoder_hidden_size,
            encoder_attention_heads=self.encoder_attention_heads,
        )
        positive_ints = {
            "num_mel_bins": self.num_mel_bins,
            "encoder_layers": self.encoder_layers,
            "downsample_factor": self.downsample_factor,
            "max_new_tokens": self.max_new_tokens,
            "encode_workers": self.encode_workers,
        }
        for name, value in positive_ints.items():
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigValidationError(f"{name} must be an integer >= 1 (got {value!r}).")

        if self.rope_theta <= 0:
            raise ConfigValidationError("rope_theta must be greater than 0.")
        if self.max_chunk_duration_seconds <= 0:
            raise ConfigValidationError("max_chunk_duration_seconds must be greater than 0.")
        if self.chunk_overlap_seconds < 0:
            raise ConfigValidationError("chunk_overlap_seconds must be >= 0.")
        if self.chunk_overlap_seconds >= self.max_chunk_duration_seconds:
            raise ConfigValidationError(
                "chunk_overlap_seconds must be smaller than max_chunk_duration_seconds."
            )
        if self.device not in {"cpu", "cuda", "mps", "auto"}:
            raise ConfigValidationError(
                f"Unsupported device '{self.device}'. Expected cpu, cuda, mps, or auto."
            )
        if not self.speaker_label.strip():
            raise ConfigValidationError("speaker_label must be a non-empty string.")

    def apply_to_model_config(
        self,
        model_config: ASRModelConfig,
        *,
        override_model_shape: bool = False,
    ) -> ASRModelConfig:
        """Return ``model_config`` with this config's overrides applied.

        Only ``downsample_factor`` is always applied; the remaining shape fields
        replace checkpoint values when ``override_model_shape`` is set.
        """

        audio = model_config.audio_config
        text = model_config.text_config
        if override_model_shape:
            audio = replace(
                audio,
                num_mel_bins=self.num_mel_bins,
                encoder_layers=self.encoder_layers,
                encoder_attention_heads=self.encoder_attention_heads,
            )
            text = replace(
                text,
                hidden_size=self.decoder_hidden_size,
                num_attention_heads=self.num_attention_heads,
                num_key_value_heads=self.num_key_value_heads,
                head_dim=self.head_dim,
                rope_theta=self.rope_theta,
            )
        return replace(
            model_config,
            audio_config=audio,
            text_config=text,
            downsample_factor=self.downsample_factor,
        )


def validate_model_shape(
    *,
    num_attention_heads: int,
    num_key_value_heads: int,
    head_dim: int,
    decoder_hidden_size: int | None = None,
    encoder_attention_heads: int | None = None,
) -> None:
    """Reject attention layouts that cannot be computed."""

    for name, value in (
        ("num_attention_heads", num_attention_heads),
        ("num_key_value_heads", num_key_value_heads),
        ("head_dim", head_dim),
    ):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigValidationError(f"{name} must be an integer >= 1 (got {value!r}).")

    if num_attention_heads % num_key_value_heads != 0:
        raise ConfigValidationError(
            "num_attention_heads must be divisible by num_key_value_heads for grouped-query attention "
            f"(got {num_attention_heads} % {num_key_value_heads} = {num_attention_heads % num_key_value_heads})."
        )
    if head_dim % 2 != 0:
        raise ConfigValidationError(f"head_dim must be even for rotary position encoding (got {head_dim}).")
    if decoder_hidden_size is not None and decoder_hidden_size < 1:
        raise ConfigValidationError("decoder_hidden_size must be >= 1.")
    if encoder_attention_heads is not None and encoder_attention_heads < 1:
        raise ConfigValidationError("encoder_attention_heads must be >= 1.")
