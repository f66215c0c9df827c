"""Checkpoint configuration structs for Qwen3-ASR and the Qwen3 forced aligner."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, TypeVar

from speechcore.asr.errors import ConfigValidationError
from speechcore.asr.config import validate_model_shape

_T = TypeVar("_T")

FORCED_ALIGNER_MODEL_TYPE = "qwen3_forced_aligner"
EOS_TOKEN_IDS: tuple[int, ...] = (151643, 151645)


def _from_mapping(cls: type[_T], raw: Mapping[str, Any] | None) -> _T:
    """Build a dataclass from the keys it declares, ignoring the rest."""

    if raw is None:
        return cls()
    if not isinstance(raw, Mapping):
        raise ConfigValidationError(f"{cls.__name__} source must be an object")
    known = {item.name for item in fields(cls)}  # type: ignore[arg-type]
    return cls(**{key: value for key, value in raw.items() if key in known})


@dataclass(frozen=True)
class AudioEncoderConfig:
    """Audio tower hyperparameters as named in ``audio_config``."""

    num_mel_bins: int = 128
    encoder_layers: int = 24
    encoder_attention_heads: int = 16
    encoder_ffn_dim: int = 4096
    d_model: int = 1024
    max_source_positions: int = 1500
    n_window: int = 50
    output_dim: int = 2048
    n_window_infer: int = 800
    downsample_hidden_size: int = 480

    def __post_init__(self) -> None:
        if self.d_model % self.encoder_attention_heads != 0:
            raise ConfigValidationError(
                f"d_model ({self.d_model}) must be divisible by encoder_attention_heads "
                f"({self.encoder_attention_heads})."
            )
        if self.n_window < 1 or self.n_window_infer < 2 * self.n_window:
            raise ConfigValidationError("n_window_infer must cover at least one conv window (2 * n_window).")

    @property
    def conv_window_frames(self) -> int:
        return 2 * self.n_window

    @property
    def conv_freq_bins(self) -> int:
        """Mel bins remaining after three stride-2 convolutions."""

        bins = self.num_mel_bins
        for _ in range(3):
            bins = (bins - 1) // 2 + 1
        return bins

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "AudioEncoderConfig":
        return _from_mapping(cls, raw)


@dataclass(frozen=True)
class TextConfig:
    """Qwen3 text decoder hyperparameters as named in ``text_config``."""

    vocab_size: int = 151936
    hidden_size: int = 2048
    intermediate_size: int = 6144
    num_hidden_layers: int = 28
    num_attention_heads: int = 16
    num_key_value_heads: int = 8
    head_dim: int = 128
    rms_norm_eps: float = 1e-6
    rope_theta: float = 1_000_000.0
    tie_word_embeddings: bool = True

    def __post_init__(self) -> None:
        validate_model_shape(
            num_attention_heads=self.num_attention_heads,
            num_key_value_heads=self.num_key_value_heads,
            head_dim=self.head_dim,
            decoder_hidden_size=self.hidden_size,
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "TextConfig":
        return _from_mapping(cls, raw)


@dataclass(frozen=True)
class ASRModelConfig:
    """Top-level Qwen3-ASR checkpoint config."""

    model_type: str = "qwen3_asr"
    audio_config: AudioEncoderConfig = field(default_factory=AudioEncoderConfig)
    text_config: TextConfig = field(default_factory=TextConfig)
    audio_token_id: int = 151676
    audio_start_token_id: int = 151669
    audio_end_token_id: int = 151670
    eos_token_ids: tuple[int, ...] = EOS_TOKEN_IDS
    # The conv stem already reduces time 8x; values > 1 pool further.
    downsample_factor: int = 1
    support_languages: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.audio_config.output_dim != self.text_config.hidden_size:
            raise ConfigValidationError(
                f"audio output_dim ({self.audio_config.output_dim}) must equal text hidden_size "
                f"({self.text_config.hidden_size})."
            )
        if self.downsample_factor < 1:
            raise ConfigValidationError("downsample_factor must be >= 1.")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ASRModelConfig":
        if not isinstance(raw, Mapping):
            raise ConfigValidationError("model config root must be an object")
        source: Mapping[str, Any] = raw.get("thinker_config") or raw
        return cls(
            model_type=str(raw.get("model_type", "qwen3_asr")),
            audio_config=AudioEncoderConfig.from_dict(source.get("audio_config")),
            text_config=TextConfig.from_dict(source.get("text_config")),
            audio_token_id=int(source.get("audio_token_id", 151676)),
            audio_start_token_id=int(source.get("audio_start_token_id", 151669)),
            audio_end_token_id=int(source.get("audio_end_token_id", 151670)),
            support_languages=tuple(raw.get("support_languages", ()) or ()),
        )


@dataclass(frozen=True)
class ForcedAlignerConfig(ASRModelConfig):
    """Forced aligner checkpoint config; the LM head classifies timestamp bins."""

    model_type: str = FORCED_ALIGNER_MODEL_TYPE
    timestamp_token_id: int = 151671
    classify_num: int = 5000
    timestamp_segment_time: float = 0.08

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.classify_num < 1:
            raise ConfigValidationError("classify_num must be >= 1.")
        if self.timestamp_segment_time <= 0:
            raise ConfigValidationError("timestamp_segment_time must be greater than 0.")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ForcedAlignerConfig":
        base = ASRModelConfig.from_dict(raw)
        source: Mapping[str, Any] = raw.get("thinker_config") or raw
        # Checkpoints publish the segment time in milliseconds.
        segment_ms = raw.get("timestamp_segment_time", source.get("timestamp_segment_time", 80))
        return cls(
            model_type=FORCED_ALIGNER_MODEL_TYPE,
            audio_config=base.audio_config,
            text_config=base.text_config,
            audio_token_id=base.audio_token_id,
            audio_start_token_id=base.audio_start_token_id,
            audio_end_token_id=base.audio_end_token_id,
            support_languages=base.support_languages,
            timestamp_token_id=int(raw.get("timestamp_token_id", source.get("timestamp_token_id", 151671))),
            classify_num=int(source.get("classify_num", raw.get("classify_num", 5000))),
            timestamp_segment_time=float(segment_ms) / 1000.0,
        )


def is_forced_aligner_config(raw: Mapping[str, Any]) -> bool:
    return raw.get("model_type") == FORCED_ALIGNER_MODEL_TYPE


def load_model_config(model_dir: Path) -> ASRModelConfig:
    """Read ``config.json`` and return the matching config struct."""

    config_path = Path(model_dir) / "config.json"
    if not config_path.exists():
        raise ConfigValidationError(f"Model config does not exist: {config_path}")
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigValidationError(f"Model config JSON parse error in '{config_path}': {exc.msg}") from exc

    if is_forced_aligner_config(raw):
        return ForcedAlignerConfig.from_dict(raw)
    return ASRModelConfig.from_dict(raw)
