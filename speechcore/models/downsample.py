"""Fixed-stride time reduction between the audio tower and the text decoder."""

from __future__ import annotations

import torch
import torch.nn as nn
import torch.nn.functional as F


def downsampled_length(length: int, stride: int) -> int:
    return -(-length // stride)


class Downsampler(nn.Module):
    """Average non-overlapping windows of ``stride`` frames along the time axis.

    Output length is ``ceil(frames / stride)``; a trailing partial window is
    averaged over the frames it actually holds.
    """

    def __init__(self, stride: int = 1):
        super().__init__()
        if isinstance(stride, bool) or not isinstance(stride, int) or stride < 1:
            raise ValueError(f"downsample stride must be an integer >= 1 (got {stride!r})")
        self.stride = stride

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """``x`` is ``[frames, width]`` or ``[batch, frames, width]``."""

        if self.stride == 1:
            return x
        squeeze = x.dim() == 2
        if squeeze:
            x = x.unsqueeze(0)

        frames = x.shape[1]
        pad = downsampled_length(frames, self.stride) * self.stride - frames
        counts = torch.ones(1, frames, 1, dtype=x.dtype, device=x.device)
        if pad:
            x = F.pad(x, (0, 0, 0, pad))
            counts = F.pad(counts, (0, 0, 0, pad))

        batch, padded, width = x.shape
        sums = x.view(batch, padded // self.stride, self.stride, width).sum(dim=2)
        totals = counts.view(1, padded // self.stride, self.stride, 1).sum(dim=2)
        out = sums / totals
        return out.squeeze(0) if squeeze else out
