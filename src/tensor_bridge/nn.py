"""Elementwise neural-network helpers on :class:`~tensor_bridge.Tensor`."""

from __future__ import annotations

import numpy as np

from . import engine
from .indexing import resolve_axis
from .tensor import Tensor


def softmax(tensor: Tensor, dim: int) -> Tensor:
    """Numerically stable softmax along ``dim``."""

    axis = resolve_axis(tensor.rank, dim)
    tensor._require_float("softmax")
    with engine.backend_errors():
        values = tensor._compute()
        shifted = np.exp(values - values.max(axis=axis, keepdims=True))
        result = shifted / shifted.sum(axis=axis, keepdims=True)
    return tensor._like(result)


def silu(tensor: Tensor) -> Tensor:
    """``x * sigmoid(x)``."""

    tensor._require_float("silu")
    with engine.backend_errors():
        values = tensor._compute()
        result = values / (1.0 + np.exp(-values))
    return tensor._like(result)


__all__ = ["silu", "softmax"]
