"""Tensor models: audio tower, downsampler, Qwen3 decoder, forced aligner, loaders."""

from .cache import DecodeCache, KVCache
from .config import (
    ASRModelConfig,
    AudioEncoderConfig,
    ForcedAlignerConfig,
    TextConfig,
    load_model_config,
)
from .decoder import RotaryEmbedding, TextAttention, TextDecoderLayer, TextModel
from .downsample import Downsampler, downsampled_length
from .encoder import AudioEncoder, AudioEncoderLayer, sinusoidal_position_embedding
from .forced_aligner import ForcedAligner
from .qwen3_asr import DecodeSession, DecoderState, Qwen3ASRModel
from .tokenizer import HuggingFaceTokenizer, Tokenizer, clean_asr_output, load_tokenizer
from .weights import load_pretrained, load_safetensors_weights, sanitize_weights

__all__ = [
    "ASRModelConfig",
    "AudioEncoder",
    "AudioEncoderConfig",
    "AudioEncoderLayer",
    "DecodeCache",
    "DecodeSession",
    "DecoderState",
    "Downsampler",
    "ForcedAligner",
    "ForcedAlignerConfig",
    "HuggingFaceTokenizer",
    "KVCache",
    "Qwen3ASRModel",
    "RotaryEmbedding",
    "TextAttention",
    "TextConfig",
    "TextDecoderLayer",
    "TextModel",
    "Tokenizer",
    "clean_asr_output",
    "downsampled_length",
    "load_model_config",
    "load_pretrained",
    "load_safetensors_weights",
    "load_tokenizer",
    "sanitize_weights",
    "sinusoidal_position_embedding",
]
