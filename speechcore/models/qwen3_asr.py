"""Qwen3-ASR model assembly and the per-session greedy decode state machine."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, Sequence

import torch
import torch.nn as nn

from speechcore.asr.errors import (
    AcceleratorComputeError,
    CacheInconsistencyError,
    ModelNotLoadedError,
    TranscriptionCancelled,
)

from .cache import DecodeCache
from .config import ASRModelConfig
from .decoder import TextModel
from .downsample import Downsampler
from .encoder import AudioEncoder

TOKEN_IM_START = 151644
TOKEN_IM_END = 151645
TOKEN_NEWLINE = 198
TOKEN_SYSTEM = 8948
TOKEN_USER = 872
TOKEN_ASSISTANT = 77091


class DecoderState(str, Enum):
    EMPTY = "empty"
    DECODING = "decoding"
    FINISHED = "finished"
    FAILED = "failed"


class Qwen3ASRModel(nn.Module):
    """Audio tower + downsampler + Qwen3 text model + output head."""

    def __init__(self, config: ASRModelConfig):
        super().__init__()
        self.config = config
        self.audio_tower = AudioEncoder(config.audio_config)
        self.downsampler = Downsampler(config.downsample_factor)
        self.text_model = TextModel(config.text_config)
        self.lm_head = nn.Linear(config.text_config.hidden_size, self.output_classes, bias=False)
        self._weights_loaded = False

    @property
    def output_classes(self) -> int:
        return self.config.text_config.vocab_size

    @property
    def weights_loaded(self) -> bool:
        return self._weights_loaded

    @weights_loaded.setter
    def weights_loaded(self, value: bool) -> None:
        self._weights_loaded = value
        self.audio_tower.weights_loaded = value

    def require_weights(self) -> None:
        if not self._weights_loaded:
            raise ModelNotLoadedError(
                "model weights have not been loaded; use load_pretrained() or mark weights_loaded after load_state_dict()"
            )

    @property
    def device(self) -> torch.device:
        return self.lm_head.weight.device

    def encode(self, features: torch.Tensor, *, chunk_index: int | None = None) -> torch.Tensor:
        """Return downsampled audio embeddings ``[tokens, hidden]`` for one chunk."""

        self.require_weights()
        try:
            with torch.no_grad():
                embeddings = self.audio_tower(features.to(self.device))
                return self.downsampler(embeddings)
        except RuntimeError as exc:
            raise AcceleratorComputeError(
                f"audio encoder compute failed: {exc}", chunk_index=chunk_index
            ) from exc

    def build_prompt_ids(self, num_audio_tokens: int, assistant_prefix_ids: Sequence[int] = ()) -> list[int]:
        """Chat-template prompt with ``num_audio_tokens`` audio placeholders."""

        prefix = [
            TOKEN_IM_START, TOKEN_SYSTEM, TOKEN_NEWLINE, TOKEN_IM_END, TOKEN_NEWLINE,
            TOKEN_IM_START, TOKEN_USER, TOKEN_NEWLINE, self.config.audio_start_token_id,
        ]
        suffix = [
            self.config.audio_end_token_id, TOKEN_IM_END, TOKEN_NEWLINE,
            TOKEN_IM_START, TOKEN_ASSISTANT, TOKEN_NEWLINE,
        ]
        return prefix + [self.config.audio_token_id] * num_audio_tokens + suffix + list(assistant_prefix_ids)

    def embed_prompt(self, prompt_ids: Sequence[int], audio_embeddings: torch.Tensor) -> torch.Tensor:
        """Token embeddings with audio placeholder rows replaced by ``audio_embeddings``."""

        ids = torch.tensor(list(prompt_ids), dtype=torch.long, device=self.device)
        with torch.no_grad():
            embeds = self.text_model.embed_tokens(ids).clone()
        positions = (ids == self.config.audio_token_id).nonzero(as_tuple=True)[0]
        if positions.shape[0] != audio_embeddings.shape[0]:
            raise ValueError(
                f"prompt holds {positions.shape[0]} audio placeholders but {audio_embeddings.shape[0]} "
                "audio embeddings were supplied"
            )
        embeds[positions] = audio_embeddings.to(embeds.dtype)
        return embeds

    def new_session(self, *, max_new_tokens: int = 448) -> "DecodeSession":
        self.require_weights()
        return DecodeSession(self, max_new_tokens=max_new_tokens)


class DecodeSession:
    """Greedy decode of one chunk against an exclusively owned ``DecodeCache``.

    EMPTY -> DECODING on the first prefill/step; DECODING -> FINISHED on EOS or
    the token budget; any cache mismatch or compute failure -> FAILED. Steps
    are serialized; a concurrent step is a contract violation.
    """

    def __init__(self, model: Qwen3ASRModel, *, max_new_tokens: int = 448):
        self.model = model
        self.max_new_tokens = max_new_tokens
        self.cache = DecodeCache(num_layers=model.config.text_config.num_hidden_layers)
        self.state = DecoderState.EMPTY
        self.generated: list[int] = []
        self._step_lock = threading.Lock()

    def _run(self, embeds: torch.Tensor, position: int) -> torch.Tensor:
        if self.state in (DecoderState.FINISHED, DecoderState.FAILED):
            raise CacheInconsistencyError(f"decode session is {self.state.value}; its cache cannot be reused")
        if not self._step_lock.acquire(blocking=False):
            raise CacheInconsistencyError("concurrent decode steps on one session are not allowed")
        try:
            self.state = DecoderState.DECODING
            with torch.no_grad():
                hidden = self.model.text_model(embeds.unsqueeze(0), position, self.cache)
                return self.model.lm_head(hidden[0, -1]).float()
        except CacheInconsistencyError:
            self._close(DecoderState.FAILED)
            raise
        except RuntimeError as exc:
            self._close(DecoderState.FAILED)
            raise AcceleratorComputeError(f"decoder compute failed at position {position}: {exc}") from exc
        finally:
            self._step_lock.release()

    def prefill(self, prompt_embeds: torch.Tensor) -> torch.Tensor:
        """Feed the whole prompt ``[length, hidden]``; returns next-token logits."""

        if self.state is not DecoderState.EMPTY:
            raise CacheInconsistencyError("prefill is only valid on an empty session")
        return self._run(prompt_embeds, 0)

    def step(self, token_id: int, position: int) -> torch.Tensor:
        """Feed one token at ``position`` (must equal ``cache.offset``); returns logits."""

        ids = torch.tensor([token_id], dtype=torch.long, device=self.model.device)
        with torch.no_grad():
            embed = self.model.text_model.embed_tokens(ids)
        return self._run(embed, position)

    def generate(
        self,
        prompt_embeds: torch.Tensor,
        *,
        should_stop: Callable[[], str | None] | None = None,
    ) -> list[int]:
        """Prefill then decode greedily until EOS or ``max_new_tokens``.

        ``should_stop`` is polled before every step; a non-empty reason aborts
        the session and raises ``TranscriptionCancelled``.
        """

        eos = set(self.model.config.eos_token_ids)
        logits = self.prefill(prompt_embeds)
        while True:
            token = int(torch.argmax(logits).item())
            if token in eos:
                break
            self.generated.append(token)
            if len(self.generated) >= self.max_new_tokens:
                break
            reason = should_stop() if should_stop is not None else None
            if reason:
                self._close(DecoderState.FAILED)
                raise TranscriptionCancelled(reason)
            logits = self.step(token, self.cache.offset)
        self._close(DecoderState.FINISHED)
        return list(self.generated)

    def _close(self, state: DecoderState) -> None:
        self.state = state
        self.cache.invalidate()
