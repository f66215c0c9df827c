"""Qwen3-ASR audio tower: conv stem, sinusoidal positions, bidirectional attention."""

from __future__ import annotations

import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from speechcore.asr.errors import ModelNotLoadedError

from .config import AudioEncoderConfig


def sinusoidal_position_embedding(length: int, channels: int, max_timescale: float = 10000.0) -> torch.Tensor:
    """Return ``[length, channels]`` fixed sin/cos position embeddings."""

    if channels % 2 != 0:
        raise ValueError(f"sinusoidal embedding needs an even channel count (got {channels})")
    half = channels // 2
    log_timescale_increment = math.log(max_timescale) / max(half - 1, 1)
    inv_timescales = torch.exp(-log_timescale_increment * torch.arange(half, dtype=torch.float32))
    scaled_time = torch.arange(length, dtype=torch.float32).unsqueeze(1) * inv_timescales.unsqueeze(0)
    return torch.cat([torch.sin(scaled_time), torch.cos(scaled_time)], dim=1)


class SinusoidalPositionEmbedding(nn.Module):
    """Caches a table of ``max_positions`` rows and grows it when asked for more."""

    def __init__(self, max_positions: int, channels: int):
        super().__init__()
        self.channels = channels
        self.register_buffer(
            "table",
            sinusoidal_position_embedding(max_positions, channels),
            persistent=False,
        )

    def forward(self, length: int) -> torch.Tensor:
        if length > self.table.shape[0]:
            self.table = sinusoidal_position_embedding(length, self.channels).to(self.table.device)
        return self.table[:length]


class Conv2dHWOI(nn.Module):
    """2D convolution whose weight is stored as ``(kernelH, kernelW, out, in)``."""

    def __init__(self, in_channels: int, out_channels: int, kernel_size: int = 3, stride: int = 2, padding: int = 1):
        super().__init__()
        self.stride = stride
        self.padding = padding
        self.weight = nn.Parameter(torch.empty(kernel_size, kernel_size, out_channels, in_channels))
        self.bias = nn.Parameter(torch.zeros(out_channels))
        nn.init.kaiming_uniform_(self.weight, a=math.sqrt(5))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        weight = self.weight.permute(2, 3, 0, 1)
        return F.conv2d(x, weight, self.bias, stride=self.stride, padding=self.padding)


class AudioAttention(nn.Module):
    """Multi-head self-attention without a causal mask."""

    def __init__(self, embed_dim: int, num_heads: int):
        super().__init__()
        self.num_heads = num_heads
        self.head_dim = embed_dim // num_heads
        self.q_proj = nn.Linear(embed_dim, embed_dim)
        self.k_proj = nn.Linear(embed_dim, embed_dim)
        self.v_proj = nn.Linear(embed_dim, embed_dim)
        self.out_proj = nn.Linear(embed_dim, embed_dim)

    def forward(self, x: torch.Tensor, attention_mask: torch.Tensor | None = None) -> torch.Tensor:
        batch, length, _ = x.shape

        def heads(t: torch.Tensor) -> torch.Tensor:
            return t.view(batch, length, self.num_heads, self.head_dim).transpose(1, 2)

        q, k, v = heads(self.q_proj(x)), heads(self.k_proj(x)), heads(self.v_proj(x))
        out = F.scaled_dot_product_attention(q, k, v, attn_mask=attention_mask, dropout_p=0.0)
        out = out.transpose(1, 2).reshape(batch, length, self.num_heads * self.head_dim)
        return self.out_proj(out)


class AudioEncoderLayer(nn.Module):
    def __init__(self, config: AudioEncoderConfig):
        super().__init__()
        self.self_attn = AudioAttention(config.d_model, config.encoder_attention_heads)
        self.self_attn_layer_norm = nn.LayerNorm(config.d_model)
        self.fc1 = nn.Linear(config.d_model, config.encoder_ffn_dim)
        self.fc2 = nn.Linear(config.encoder_ffn_dim, config.d_model)
        self.final_layer_norm = nn.LayerNorm(config.d_model)

    def forward(self, x: torch.Tensor, attention_mask: torch.Tensor | None = None) -> torch.Tensor:
        x = x + self.self_attn(self.self_attn_layer_norm(x), attention_mask)
        return x + self.fc2(F.gelu(self.fc1(self.final_layer_norm(x))))


class AudioEncoder(nn.Module):
    """Maps log-mel features ``[mel, frames]`` to ``[tokens, output_dim]``.

    The conv stem runs on windows of ``2 * n_window`` mel frames (each window
    reduced 8x in time), position embeddings restart in every window, and
    attention is bidirectional inside blocks of ``n_window_infer`` mel frames.
    """

    def __init__(self, config: AudioEncoderConfig):
        super().__init__()
        self.config = config
        hidden = config.downsample_hidden_size
        self.conv2d1 = Conv2dHWOI(1, hidden)
        self.conv2d2 = Conv2dHWOI(hidden, hidden)
        self.conv2d3 = Conv2dHWOI(hidden, hidden)
        self.conv_out = nn.Linear(hidden * config.conv_freq_bins, config.d_model, bias=False)
        self.positional_embedding = SinusoidalPositionEmbedding(config.max_source_positions, config.d_model)
        self.layers = nn.ModuleList(AudioEncoderLayer(config) for _ in range(config.encoder_layers))
        self.ln_post = nn.LayerNorm(config.d_model)
        self.proj1 = nn.Linear(config.d_model, config.d_model)
        self.proj2 = nn.Linear(config.d_model, config.output_dim)
        self.weights_loaded = False

    def _conv_stem(self, window: torch.Tensor) -> torch.Tensor:
        x = window.unsqueeze(0).unsqueeze(0)
        x = F.gelu(self.conv2d1(x))
        x = F.gelu(self.conv2d2(x))
        x = F.gelu(self.conv2d3(x))
        _, channels, freq, time = x.shape
        return x.permute(0, 3, 1, 2).reshape(time, channels * freq)

    def attention_blocks(self, window_lengths: list[int]) -> list[int]:
        """Group per-window token counts into attention block lengths."""

        windows_per_block = max(self.config.n_window_infer // self.config.conv_window_frames, 1)
        blocks: list[int] = []
        for start in range(0, len(window_lengths), windows_per_block):
            blocks.append(sum(window_lengths[start:start + windows_per_block]))
        return blocks

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        if not self.weights_loaded:
            raise ModelNotLoadedError("audio encoder weights have not been loaded")
        if features.dim() == 3:
            if features.shape[0] != 1:
                raise ValueError("audio encoder processes one chunk at a time (batch must be 1)")
            features = features[0]
        if features.dim() != 2 or features.shape[0] != self.config.num_mel_bins:
            raise ValueError(
                f"expected features shaped [{self.config.num_mel_bins}, frames], got {tuple(features.shape)}"
            )
        features = features.to(self.proj2.weight.dtype)

        window = self.config.conv_window_frames
        pieces: list[torch.Tensor] = []
        for start in range(0, features.shape[1], window):
            tokens = self.conv_out(self._conv_stem(features[:, start:start + window]))
            pieces.append(tokens + self.positional_embedding(tokens.shape[0]).to(tokens.dtype))

        x = torch.cat(pieces, dim=0)
        blocks = self.attention_blocks([piece.shape[0] for piece in pieces])
        outputs: list[torch.Tensor] = []
        for block in torch.split(x, blocks, dim=0):
            h = block.unsqueeze(0)
            for layer in self.layers:
                h = layer(h)
            outputs.append(h.squeeze(0))
        x = torch.cat(outputs, dim=0)

        x = self.ln_post(x)
        return self.proj2(F.gelu(self.proj1(x)))
