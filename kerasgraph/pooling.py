# kerasgraph/pooling.py

from __future__ import annotations

import math
from enum import Enum
from typing import Optional, Tuple, Union

import torch
import torch.nn as nn

from .errors import ConfigurationError
from .layers import OutputType

DATA_FORMATS = ("channels_first", "channels_last")


class PoolingType(Enum):
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    PNORM = "pnorm"

    @classmethod
    def parse(cls, value: Union[str, "PoolingType"]) -> "PoolingType":
        """Accept an enum member or a case-insensitive name ('avg', 'average', 'mean', ...)."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {
            "sum": cls.SUM,
            "avg": cls.AVG,
            "average": cls.AVG,
            "mean": cls.AVG,
            "max": cls.MAX,
            "pnorm": cls.PNORM,
            "p_norm": cls.PNORM,
        }
        if key not in aliases:
            raise ConfigurationError(f"Unknown pooling type {value!r}")
        return aliases[key]


def _check_pnorm(pnorm: int) -> int:
    if int(pnorm) != pnorm or pnorm < 1:
        raise ValueError(f"pnorm must be a positive integer, got {pnorm!r}")
    return int(pnorm)


def to_channels_first(
    activation: torch.Tensor,
    mask: Optional[torch.Tensor],
    data_format: str,
) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    if data_format not in DATA_FORMATS:
        raise ValueError(f"data_format must be one of {DATA_FORMATS}, got {data_format!r}")
    if activation.dim() < 3:
        raise ValueError(
            f"Global pooling needs [batch, channels, ...] input with at least one reduced axis; "
            f"got shape {tuple(activation.shape)}"
        )
    if data_format == "channels_last":
        activation = activation.movedim(-1, 1)
        if mask is not None and mask.dim() == activation.dim():
            mask = mask.movedim(-1, 1)
    return activation, mask


def broadcast_mask(activation: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
    """
    Lay ``mask`` out against a channels-first activation.

    A mask without the channel axis ([B, T], [B, H, W], ...) gets one of size 1
    inserted; a full-rank mask must broadcast as-is ([B, 1, H, 1], ...). The
    mask keeps its own dtype so fractional weights survive integer activations.
    """
    mask = torch.as_tensor(mask, device=activation.device)
    if mask.dim() == activation.dim() - 1:
        mask = mask.unsqueeze(1)
    elif mask.dim() != activation.dim():
        raise ValueError(
            f"Mask of shape {tuple(mask.shape)} cannot be applied to activation of shape "
            f"{tuple(activation.shape)}"
        )
    try:
        shape = torch.broadcast_shapes(mask.shape, activation.shape)
    except RuntimeError:
        shape = None
    if shape != activation.shape:
        raise ValueError(
            f"Mask of shape {tuple(mask.shape)} does not broadcast to activation shape "
            f"{tuple(activation.shape)}"
        )
    if mask.dtype != torch.bool and bool((mask < 0).any()):
        raise ValueError("Mask values must be non-negative.")
    return mask.expand_as(activation)


def _lowest(dtype: torch.dtype) -> Union[int, float]:
    if dtype.is_floating_point:
        return torch.finfo(dtype).min
    if dtype == torch.bool:
        return False
    return torch.iinfo(dtype).min


def _reduce_dims(activation: torch.Tensor) -> Tuple[int, ...]:
    return tuple(range(2, activation.dim()))


def pool(
    activation: torch.Tensor,
    pooling_type: Union[str, PoolingType],
    pnorm: int = 2,
    data_format: str = "channels_first",
) -> torch.Tensor:
    """
    Unmasked global pooling: reduce every axis except batch and channel.

    Returns a [batch, channels] tensor.
    """
    pooling_type = PoolingType.parse(pooling_type)
    x, _ = to_channels_first(activation, None, data_format)
    dims = _reduce_dims(x)
    if pooling_type is PoolingType.SUM:
        return x.sum(dim=dims)
    if pooling_type is PoolingType.AVG:
        return x.sum(dim=dims) / math.prod(x.shape[2:])
    if pooling_type is PoolingType.MAX:
        return x.amax(dim=dims)
    p = _check_pnorm(pnorm)
    return x.abs().pow(p).sum(dim=dims).pow(1.0 / p)


def masked_pool(
    activation: torch.Tensor,
    mask: Optional[torch.Tensor],
    pooling_type: Union[str, PoolingType],
    pnorm: int = 2,
    data_format: str = "channels_first",
) -> torch.Tensor:
    """
    Global pooling restricted to the positions where ``mask`` is non-zero.

    For every example the result matches pooling the unmasked elements alone:
      - SUM:   sum of x * mask; masked positions contribute exactly zero.
      - AVG:   masked sum divided by that example's count of non-zero mask
               entries (clamped to 1, so an empty example yields 0).
      - MAX:   masked positions are replaced with the dtype minimum first.
      - PNORM: (sum |x|^p * mask) ** (1/p).

    Args:
      activation: [B, C, ...] (or [B, ..., C] with data_format='channels_last').
      mask: Non-negative weights, either without the channel axis
        ([B, T], [B, H, W], ...) or full rank with size-1 broadcast axes
        ([B, 1, H, 1], [B, 1, H, W], ...). None means no masking.
      pooling_type: PoolingType or its name.
      pnorm: p for PNORM pooling.
      data_format: 'channels_first' or 'channels_last'.

    Returns:
      [B, C] tensor.
    """
    pooling_type = PoolingType.parse(pooling_type)
    if mask is None:
        return pool(activation, pooling_type, pnorm=pnorm, data_format=data_format)

    mask = torch.as_tensor(mask, device=activation.device)
    x, mask = to_channels_first(activation, mask, data_format)
    m = broadcast_mask(x, mask)
    keep = m != 0
    dims = _reduce_dims(x)

    if pooling_type is PoolingType.MAX:
        lowest = torch.full((), _lowest(x.dtype), dtype=x.dtype, device=x.device)
        return torch.where(keep, x, lowest).amax(dim=dims)

    if m.is_floating_point() and not x.is_floating_point():
        x = x.to(m.dtype)
    m = m.to(x.dtype)
    zeros = torch.zeros((), dtype=x.dtype, device=x.device)

    if pooling_type is PoolingType.PNORM:
        p = _check_pnorm(pnorm)
        summed = torch.where(keep, x.abs().pow(p) * m, zeros).sum(dim=dims)
        return summed.pow(1.0 / p)

    summed = torch.where(keep, x * m, zeros).sum(dim=dims)
    if pooling_type is PoolingType.SUM:
        return summed
    count = keep.sum(dim=dims).clamp(min=1)
    return summed / count.to(summed.dtype if summed.is_floating_point() else torch.float32)


class GlobalPooling(nn.Module):
    """
    Global pooling layer with optional per-example masking.

    Responsibilities:
      - Reduce every non-batch, non-channel axis with SUM/AVG/MAX/PNORM.
      - Honour a per-call mask so variable-length sequences and variable-size
        images pool exactly as if they had been sliced to their valid region.
    """

    def __init__(
        self,
        pooling_type: Union[str, PoolingType] = PoolingType.MAX,
        pnorm: int = 2,
        data_format: str = "channels_first",
        collapse_dimensions: bool = True,
    ) -> None:
        super().__init__()
        if data_format not in DATA_FORMATS:
            raise ValueError(f"data_format must be one of {DATA_FORMATS}, got {data_format!r}")
        self.pooling_type = PoolingType.parse(pooling_type)
        self.pnorm = _check_pnorm(pnorm)
        self.data_format = data_format
        self.collapse_dimensions = collapse_dimensions

    def extra_repr(self) -> str:
        return (
            f"pooling_type={self.pooling_type.name}, pnorm={self.pnorm}, "
            f"data_format={self.data_format!r}, collapse_dimensions={self.collapse_dimensions}"
        )

    def forward(self, x: torch.Tensor, mask: Optional[torch.Tensor] = None) -> torch.Tensor:  # type: ignore[override]
        out = masked_pool(x, mask, self.pooling_type, pnorm=self.pnorm, data_format=self.data_format)
        if self.collapse_dimensions:
            return out
        ones = [1] * (x.dim() - 2)
        if self.data_format == "channels_first":
            return out.reshape(out.shape[0], out.shape[1], *ones)
        return out.reshape(out.shape[0], *ones, out.shape[1])

    def output_type(self, input_type: OutputType) -> OutputType:
        if input_type.kind == "ff":
            raise ValueError("Global pooling needs a sequence or spatial input type.")
        if self.collapse_dimensions:
            return OutputType("ff", (input_type.channels,))
        ones = tuple(1 for _ in input_type.spatial)
        if input_type.channels_last:
            return OutputType(input_type.kind, ones + (input_type.channels,), True)
        return OutputType(input_type.kind, (input_type.channels,) + ones, False)
