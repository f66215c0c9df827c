"""Qwen3 forced aligner: one forward pass, timestamp bins classified per unit."""

from __future__ import annotations

from typing import Sequence

import torch

from speechcore.align.base import AlignUnit
from speechcore.asr.errors import AcceleratorComputeError

from .config import ForcedAlignerConfig
from .qwen3_asr import Qwen3ASRModel
from .tokenizer import Tokenizer


class ForcedAligner(Qwen3ASRModel):
    """Shares the Qwen3-ASR tower/decoder; ``lm_head`` scores ``classify_num`` time bins.

    The input is ``<audio_start> pads <audio_end>`` followed by every unit's
    tokens and two ``<timestamp>`` markers. The argmax bin at the first marker
    is the unit's start, at the second its end; both are multiplied by
    ``timestamp_segment_time``. Nothing forces the result to be monotonic.
    """

    config: ForcedAlignerConfig

    def __init__(self, config: ForcedAlignerConfig):
        super().__init__(config)

    @property
    def output_classes(self) -> int:
        return self.config.classify_num

    def build_alignment_ids(self, num_audio_tokens: int, unit_token_ids: Sequence[Sequence[int]]) -> list[int]:
        ids = [self.config.audio_start_token_id]
        ids.extend([self.config.audio_token_id] * num_audio_tokens)
        ids.append(self.config.audio_end_token_id)
        for token_ids in unit_token_ids:
            ids.extend(token_ids)
            ids.extend([self.config.timestamp_token_id, self.config.timestamp_token_id])
        return ids

    def align(
        self,
        features: torch.Tensor,
        units: Sequence[str],
        tokenizer: Tokenizer,
        *,
        audio_duration: float | None = None,
    ) -> list[AlignUnit]:
        """Return one raw ``AlignUnit`` per unit text, in order."""

        if not units:
            return []
        audio_embeddings = self.encode(features)
        unit_token_ids = [tokenizer.encode(unit) for unit in units]
        prompt_ids = self.build_alignment_ids(audio_embeddings.shape[0], unit_token_ids)
        embeds = self.embed_prompt(prompt_ids, audio_embeddings)

        try:
            with torch.no_grad():
                hidden = self.text_model(embeds.unsqueeze(0), 0)
                logits = self.lm_head(hidden[0])
        except RuntimeError as exc:
            raise AcceleratorComputeError(f"forced aligner compute failed: {exc}") from exc

        ids = torch.tensor(prompt_ids, device=logits.device)
        marker_positions = (ids == self.config.timestamp_token_id).nonzero(as_tuple=True)[0]
        bins = torch.argmax(logits[marker_positions], dim=-1).tolist()
        seconds = [bin_index * self.config.timestamp_segment_time for bin_index in bins]
        if audio_duration is not None:
            seconds = [min(value, audio_duration) for value in seconds]

        aligned: list[AlignUnit] = []
        for index, text in enumerate(units):
            aligned.append(
                {
                    "text": text,
                    "raw_start": float(seconds[2 * index]),
                    "raw_end": float(seconds[2 * index + 1]),
                }
            )
        return aligned
