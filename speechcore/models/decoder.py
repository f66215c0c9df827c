"""Qwen3 causal text decoder with grouped-query attention and rotary positions."""

from __future__ import annotations

import torch
import torch.nn as nn
import torch.nn.functional as F

from .cache import DecodeCache, KVCache
from .config import TextConfig


class RotaryEmbedding(nn.Module):
    """NeoX-style (split-half) rotary position encoding."""

    def __init__(self, head_dim: int, theta: float):
        super().__init__()
        inv_freq = 1.0 / (theta ** (torch.arange(0, head_dim, 2, dtype=torch.float32) / head_dim))
        self.register_buffer("inv_freq", inv_freq, persistent=False)

    def forward(self, positions: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        angles = positions.to(torch.float32).unsqueeze(-1) * self.inv_freq.unsqueeze(0)
        emb = torch.cat([angles, angles], dim=-1)
        return emb.cos(), emb.sin()


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    half = x.shape[-1] // 2
    return torch.cat([-x[..., half:], x[..., :half]], dim=-1)


def apply_rotary(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """``x`` is ``[batch, heads, length, head_dim]``; cos/sin are ``[length, head_dim]``."""

    return (x * cos.to(x.dtype)) + (rotate_half(x) * sin.to(x.dtype))


def causal_mask(query_start: int, query_length: int, key_start: int, key_length: int, device: torch.device) -> torch.Tensor:
    """Boolean mask admitting key ``k`` for query ``q`` only when ``k <= q`` (absolute positions)."""

    q_abs = (query_start + torch.arange(query_length, device=device)).unsqueeze(1)
    k_abs = (key_start + torch.arange(key_length, device=device)).unsqueeze(0)
    return k_abs <= q_abs


class TextAttention(nn.Module):
    def __init__(self, config: TextConfig):
        super().__init__()
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim
        self.groups = self.num_heads // self.num_kv_heads
        self.q_proj = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=False)
        self.k_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=False)
        self.v_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=False)
        self.o_proj = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=False)
        self.q_norm = nn.RMSNorm(self.head_dim, eps=config.rms_norm_eps)
        self.k_norm = nn.RMSNorm(self.head_dim, eps=config.rms_norm_eps)

    def forward(
        self,
        x: torch.Tensor,
        rotary: tuple[torch.Tensor, torch.Tensor],
        position: int,
        layer_cache: KVCache | None = None,
    ) -> torch.Tensor:
        batch, length, _ = x.shape
        q = self.q_norm(self.q_proj(x).view(batch, length, self.num_heads, self.head_dim)).transpose(1, 2)
        k = self.k_norm(self.k_proj(x).view(batch, length, self.num_kv_heads, self.head_dim)).transpose(1, 2)
        v = self.v_proj(x).view(batch, length, self.num_kv_heads, self.head_dim).transpose(1, 2)

        cos, sin = rotary
        q = apply_rotary(q, cos, sin)
        k = apply_rotary(k, cos, sin)

        if layer_cache is not None:
            k, v = layer_cache.update(k, v)
        key_start = position + length - k.shape[2]

        if self.groups > 1:
            k = k.repeat_interleave(self.groups, dim=1)
            v = v.repeat_interleave(self.groups, dim=1)

        mask = causal_mask(position, length, key_start, k.shape[2], x.device)
        out = F.scaled_dot_product_attention(q, k, v, attn_mask=mask, dropout_p=0.0)
        out = out.transpose(1, 2).reshape(batch, length, self.num_heads * self.head_dim)
        return self.o_proj(out)


class TextMLP(nn.Module):
    def __init__(self, config: TextConfig):
        super().__init__()
        self.gate_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.up_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.down_proj = nn.Linear(config.intermediate_size, config.hidden_size, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))


class TextDecoderLayer(nn.Module):
    def __init__(self, config: TextConfig):
        super().__init__()
        self.self_attn = TextAttention(config)
        self.mlp = TextMLP(config)
        self.input_layernorm = nn.RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.post_attention_layernorm = nn.RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.rotary = RotaryEmbedding(config.head_dim, config.rope_theta)

    def forward(
        self,
        x: torch.Tensor,
        position: int = 0,
        layer_cache: KVCache | None = None,
        rotary: tuple[torch.Tensor, torch.Tensor] | None = None,
    ) -> torch.Tensor:
        if rotary is None:
            rotary = self.rotary(torch.arange(position, position + x.shape[1], device=x.device))
        x = x + self.self_attn(self.input_layernorm(x), rotary, position, layer_cache)
        return x + self.mlp(self.post_attention_layernorm(x))


class TextModel(nn.Module):
    """Embedding, decoder stack, and final norm; returns hidden states."""

    def __init__(self, config: TextConfig):
        super().__init__()
        self.config = config
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList(TextDecoderLayer(config) for _ in range(config.num_hidden_layers))
        self.norm = nn.RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.rotary = RotaryEmbedding(config.head_dim, config.rope_theta)

    def forward(
        self,
        inputs_embeds: torch.Tensor,
        position: int,
        cache: DecodeCache | None = None,
    ) -> torch.Tensor:
        """Run ``[batch, length, hidden]`` embeddings starting at absolute ``position``.

        With a cache, ``position`` must equal ``cache.offset`` and the cache
        advances by ``length`` once every layer has appended its keys/values.
        """

        if cache is not None:
            cache.expect_position(position)
        length = inputs_embeds.shape[1]
        rotary = self.rotary(torch.arange(position, position + length, device=inputs_embeds.device))

        h = inputs_embeds
        for index, layer in enumerate(self.layers):
            layer_cache = cache.layer(index) if cache is not None else None
            h = layer(h, position, layer_cache, rotary)

        if cache is not None:
            cache.advance(length)
        return self.norm(h)
