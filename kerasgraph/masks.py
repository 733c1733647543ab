# kerasgraph/masks.py

from __future__ import annotations

from typing import Optional, Sequence, Union

import torch

from .pooling import broadcast_mask, to_channels_first

Lengths = Union[torch.Tensor, Sequence[int]]


def _as_lengths(lengths: Lengths, name: str) -> torch.Tensor:
    tensor = torch.as_tensor(lengths, dtype=torch.long)
    if tensor.dim() != 1:
        raise ValueError(f"{name} must be a 1-D sequence of per-example lengths.")
    if tensor.numel() and int(tensor.min()) < 0:
        raise ValueError(f"{name} must be non-negative.")
    return tensor


def _ensure_size(size: Optional[int], lengths: torch.Tensor, name: str) -> int:
    inferred = int(lengths.max()) if lengths.numel() else 0
    if size is None:
        return inferred
    if inferred > size:
        raise ValueError(f"{name} {inferred} exceeds the extent {size}.")
    return int(size)


def sequence_mask(lengths: Lengths, max_len: Optional[int] = None) -> torch.Tensor:
    """
    [B, T] float mask keeping the first ``lengths[b]`` steps of example b.

    Args:
        lengths: Valid length per example.
        max_len: Total length T. If omitted, the longest length is used.
    """
    lens = _as_lengths(lengths, "lengths")
    total = _ensure_size(max_len, lens, "length")
    steps = torch.arange(total).unsqueeze(0)
    return (steps < lens.unsqueeze(1)).to(torch.float32)


def spatial_mask(
    heights: Lengths,
    widths: Lengths,
    height: Optional[int] = None,
    width: Optional[int] = None,
) -> torch.Tensor:
    """
    [B, H, W] float mask where example b keeps rows < heights[b] and
    columns < widths[b]; both extents are truncated independently.
    """
    hs = _as_lengths(heights, "heights")
    ws = _as_lengths(widths, "widths")
    if hs.shape != ws.shape:
        raise ValueError("heights and widths must have one entry per example.")
    rows = sequence_mask(hs, _ensure_size(height, hs, "height"))
    cols = sequence_mask(ws, _ensure_size(width, ws, "width"))
    return rows.unsqueeze(2) * cols.unsqueeze(1)


def valid_lengths(mask: torch.Tensor, dim: int = -1) -> torch.Tensor:
    """Number of non-zero mask entries along ``dim``."""
    return (torch.as_tensor(mask) != 0).sum(dim=dim)


def apply_mask(
    activation: torch.Tensor,
    mask: torch.Tensor,
    data_format: str = "channels_first",
) -> torch.Tensor:
    """
    Zero the masked-out positions of ``activation``.

    ``mask`` follows the same layout rules as masked pooling; the result keeps
    the activation's layout.
    """
    mask = torch.as_tensor(mask, device=activation.device)
    x, mask = to_channels_first(activation, mask, data_format)
    m = broadcast_mask(x, mask)
    out = torch.where(m != 0, x, torch.zeros((), dtype=x.dtype, device=x.device))
    if data_format == "channels_last":
        out = out.movedim(1, -1)
    return out
