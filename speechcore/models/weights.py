"""safetensors loading and checkpoint key/layout sanitisation."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Mapping

import torch
from safetensors import safe_open

from speechcore.asr.config import TranscriptionConfig

from .config import ForcedAlignerConfig, load_model_config
from .forced_aligner import ForcedAligner
from .qwen3_asr import Qwen3ASRModel

CONV_TARGET_LAYOUT = "HWOI"
_CONV_WEIGHT_KEYS = tuple(f"audio_tower.conv2d{index}.weight" for index in (1, 2, 3))
_DROPPED_KEY_SUFFIXES = ("rotary_emb.inv_freq", "positional_embedding.positional_embedding")


def load_safetensors_weights(model_dir: Path, *, dtype: torch.dtype | None = torch.float32) -> dict[str, torch.Tensor]:
    """Read every tensor from a single-file or sharded safetensors checkpoint."""

    model_dir = Path(model_dir)
    index_path = model_dir / "model.safetensors.index.json"
    if index_path.exists():
        index = json.loads(index_path.read_text(encoding="utf-8"))
        shard_names = sorted(set(index.get("weight_map", {}).values()))
        shard_paths = [model_dir / name for name in shard_names]
    else:
        shard_paths = sorted(model_dir.glob("*.safetensors"))

    if not shard_paths:
        raise ValueError(f"No safetensors weights found in '{model_dir}'.")

    weights: dict[str, torch.Tensor] = {}
    for shard_path in shard_paths:
        if not shard_path.exists():
            raise ValueError(f"Checkpoint shard listed in index is missing: {shard_path}")
        with safe_open(str(shard_path), framework="pt") as handle:
            for key in handle.keys():
                tensor = handle.get_tensor(key)
                if dtype is not None and tensor.is_floating_point():
                    tensor = tensor.to(dtype)
                weights[key] = tensor
    return weights


def conv_layout_permutation(source_layout: str, target_layout: str = CONV_TARGET_LAYOUT) -> tuple[int, ...]:
    if sorted(source_layout) != sorted(target_layout) or len(set(source_layout)) != 4:
        raise ValueError(f"Unsupported convolution weight layout '{source_layout}'. Expected a permutation of {target_layout}.")
    return tuple(source_layout.index(axis) for axis in target_layout)


def _rename_key(key: str) -> str:
    if key.startswith("thinker."):
        key = key[len("thinker."):]
    if key.startswith("model."):
        key = "text_model." + key[len("model."):]
    return key


def sanitize_weights(
    weights: Mapping[str, torch.Tensor],
    *,
    source_conv_layout: str = "OIHW",
    tie_word_embeddings: bool = True,
) -> dict[str, torch.Tensor]:
    """Map checkpoint tensors onto this package's module names and layouts.

    - ``thinker.`` is stripped and ``model.`` becomes ``text_model.``
    - conv stem weights are permuted from ``source_conv_layout`` to (kH, kW, out, in)
    - embedding and projection matrices are left as they are
    - a missing ``lm_head.weight`` is tied to the token embedding when allowed
    """

    permutation = conv_layout_permutation(source_conv_layout)
    sanitized: dict[str, torch.Tensor] = {}
    for raw_key, tensor in weights.items():
        key = _rename_key(raw_key)
        if key.endswith(_DROPPED_KEY_SUFFIXES):
            continue
        if key in _CONV_WEIGHT_KEYS:
            if tensor.dim() != 4:
                raise ValueError(f"{raw_key}: expected a 4D convolution weight, got shape {tuple(tensor.shape)}")
            tensor = tensor.permute(*permutation).contiguous()
        sanitized[key] = tensor

    if "lm_head.weight" not in sanitized and tie_word_embeddings:
        embedding = sanitized.get("text_model.embed_tokens.weight")
        if embedding is not None:
            sanitized["lm_head.weight"] = embedding
    return sanitized


def load_pretrained(
    model_dir: Path,
    *,
    config: TranscriptionConfig | None = None,
    device: str = "cpu",
    dtype: torch.dtype = torch.float32,
    source_conv_layout: str = "OIHW",
    log_callback: Callable[[str], None] | None = None,
) -> Qwen3ASRModel:
    """Build the model named by ``config.json`` and load its weights.

    Returns a ``ForcedAligner`` for ``qwen3_forced_aligner`` checkpoints and a
    ``Qwen3ASRModel`` otherwise.
    """

    model_config = load_model_config(Path(model_dir))
    if config is not None:
        model_config = config.apply_to_model_config(model_config)

    is_aligner = isinstance(model_config, ForcedAlignerConfig)
    model: Qwen3ASRModel = ForcedAligner(model_config) if is_aligner else Qwen3ASRModel(model_config)

    weights = sanitize_weights(
        load_safetensors_weights(Path(model_dir), dtype=dtype),
        source_conv_layout=source_conv_layout,
        tie_word_embeddings=model_config.text_config.tie_word_embeddings and not is_aligner,
    )
    missing, unexpected = model.load_state_dict(weights, strict=False)
    if missing:
        shown = ", ".join(sorted(missing)[:8])
        raise ValueError(
            f"Checkpoint at '{model_dir}' is missing {len(missing)} tensor(s) required by "
            f"{type(model).__name__}: {shown}"
        )
    if unexpected and log_callback is not None:
        log_callback(f"weights: ignored {len(unexpected)} unexpected tensor(s): {', '.join(sorted(unexpected)[:8])}")

    model.to(device=device, dtype=dtype)
    model.eval()
    model.weights_loaded = True
    if log_callback is not None:
        log_callback(
            f"weights: loaded {type(model).__name__} from {model_dir} "
            f"tensors={len(weights)} device={device} dtype={str(dtype).replace('torch.', '')}"
        )
    return model
