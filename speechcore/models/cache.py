"""Incremental key/value cache owned by a single decode session."""

from __future__ import annotations

from dataclasses import dataclass, field

import torch

from speechcore.asr.errors import CacheInconsistencyError


@dataclass
class KVCache:
    """Accumulated keys/values for one decoder layer, ``[batch, kv_heads, length, head_dim]``."""

    keys: torch.Tensor | None = None
    values: torch.Tensor | None = None

    @property
    def length(self) -> int:
        return 0 if self.keys is None else int(self.keys.shape[2])

    def update(self, keys: torch.Tensor, values: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        if self.keys is None or self.values is None:
            self.keys, self.values = keys, values
        else:
            self.keys = torch.cat([self.keys, keys], dim=2)
            self.values = torch.cat([self.values, values], dim=2)
        return self.keys, self.values


@dataclass
class DecodeCache:
    """Per-layer KV caches plus the number of tokens incorporated so far.

    ``offset`` only moves forward, and only through ``advance``. After
    ``invalidate`` the cache must be discarded; every access raises.
    """

    num_layers: int
    layers: dict[int, KVCache] = field(default_factory=dict)
    offset: int = 0
    valid: bool = True

    def layer(self, index: int) -> KVCache:
        self.ensure_valid()
        if not 0 <= index < self.num_layers:
            raise CacheInconsistencyError(f"layer index {index} outside cache of {self.num_layers} layers")
        return self.layers.setdefault(index, KVCache())

    def expect_position(self, position: int) -> None:
        """Fail unless ``position`` is exactly the next slot to fill."""

        self.ensure_valid()
        if position != self.offset:
            raise CacheInconsistencyError(
                f"decode position {position} does not match cache offset {self.offset}"
            )

    def advance(self, count: int) -> None:
        self.ensure_valid()
        if count < 1:
            raise CacheInconsistencyError(f"cache can only advance forward (got {count})")
        new_offset = self.offset + count
        for index, layer_cache in self.layers.items():
            if layer_cache.length != new_offset:
                raise CacheInconsistencyError(
                    f"layer {index} holds {layer_cache.length} positions, expected {new_offset}"
                )
        self.offset = new_offset

    def ensure_valid(self) -> None:
        if not self.valid:
            raise CacheInconsistencyError("decode cache was invalidated and cannot be reused")

    def invalidate(self) -> None:
        self.layers.clear()
        self.valid = False
