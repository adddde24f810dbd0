"""Runtime selection of a quantization encoding and the quantized handle."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Mapping, Tuple

import numpy as np

from .. import engine
from ..device import CPU, Device, DeviceLike, as_device
from ..dtypes import DType
from ..errors import BackendFailure, UnknownFormat
from . import formats
from .formats import QuantizationFormat

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ..tensor import Tensor

logger = logging.getLogger(__name__)

QUANTIZATION_FORMATS: Mapping[str, QuantizationFormat] = {
    fmt.tag: fmt
    for fmt in (
        formats.Q2K,
        formats.Q3K,
        formats.Q4_0,
        formats.Q4_1,
        formats.Q4K,
        formats.Q5_0,
        formats.Q5_1,
        formats.Q5K,
        formats.Q6K,
        formats.Q8_0,
        formats.Q8_1,
        formats.Q8K,
        formats.F16,
        formats.F32,
    )
}


def lookup_format(tag: str) -> QuantizationFormat:
    """Return the encoding registered under ``tag`` (case-sensitive)."""

    fmt = QUANTIZATION_FORMATS.get(tag) if isinstance(tag, str) else None
    if fmt is None:
        raise UnknownFormat(tag)
    return fmt


class QTensor:
    """Immutable quantized tensor: encoded blocks plus the logical shape.

    Every encoding produces the same handle type; the selected format is
    carried as data.
    """

    __slots__ = ("_blocks", "_shape", "_format", "_device")

    def __init__(
        self,
        blocks: np.ndarray,
        shape: Tuple[int, ...],
        fmt: QuantizationFormat,
        device: Device = CPU,
    ) -> None:
        if blocks.dtype != fmt.record:
            raise BackendFailure(
                f"block layout mismatch for {fmt.tag}: got {blocks.dtype}"
            )
        if blocks.shape[0] * fmt.block_size != int(np.prod(shape, dtype=np.int64)):
            raise BackendFailure(
                f"{blocks.shape[0]} blocks of {fmt.tag} do not cover shape {list(shape)}"
            )
        self._blocks = engine.freeze(blocks)
        self._shape = tuple(int(dim) for dim in shape)
        self._format = fmt
        self._device = device

    @property
    def format(self) -> QuantizationFormat:
        return self._format

    @property
    def blocks(self) -> np.ndarray:
        return self._blocks

    @property
    def ggml_dtype(self) -> str:
        return self._format.ggml_dtype

    @property
    def rank(self) -> int:
        return len(self._shape)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def nbytes(self) -> int:
        return int(self._blocks.nbytes)

    def dequantize(self, device: DeviceLike = "cpu") -> "Tensor":
        return dequantize(self, device)

    def matmul_t(self, lhs: "Tensor") -> "Tensor":
        """Compute ``lhs @ self.T``."""

        return quantized_matmul(self, lhs)

    def __repr__(self) -> str:
        return f"QTensor[{list(self._shape)}, {self.ggml_dtype}]"


def quantize(tensor: "Tensor", tag: str) -> QTensor:
    """Encode ``tensor`` with the format registered under ``tag``."""

    fmt = lookup_format(tag)
    shape = tensor.shape
    source = tensor.to_dtype(DType.F32).storage.reshape(-1)
    count = source.size
    if count % fmt.block_size != 0:
        raise BackendFailure(
            f"tensor size ({count}) is not divisible by block size {fmt.block_size}"
            f" for {fmt.tag}"
        )
    logger.debug(
        "Quantizing %d elements of shape %s as %s (%d blocks)",
        count,
        list(shape),
        fmt.tag,
        count // fmt.block_size,
    )
    with engine.backend_errors(), np.errstate(invalid="ignore", over="ignore"):
        blocks = fmt.encode(np.ascontiguousarray(source).reshape(-1, fmt.block_size))
    return QTensor(blocks, shape, fmt, as_device(tensor.device))


def _decode(handle: QTensor) -> np.ndarray:
    with engine.backend_errors():
        values = handle.format.decode(handle.blocks)
        return values.astype(np.float32).reshape(handle.shape)


def dequantize(handle: QTensor, device: DeviceLike = "cpu") -> "Tensor":
    """Decode ``handle`` into an F32 tensor with the original shape."""

    from ..tensor import Tensor

    return Tensor.from_compute(_decode(handle), DType.F32, as_device(device))


def quantized_matmul(handle: QTensor, rhs: "Tensor") -> "Tensor":
    """Multiply ``rhs`` by the transpose of the rank-2 quantized weights."""

    from ..tensor import Tensor

    if handle.rank != 2:
        raise BackendFailure(f"quantized matmul expects rank-2 weights, got rank {handle.rank}")
    n, k = handle.shape
    lhs = rhs.to_dtype(DType.F32).storage
    if lhs.ndim == 0 or lhs.shape[-1] != k:
        raise BackendFailure(
            f"shape mismatch in quantized matmul, lhs: {list(lhs.shape)}, rhs: [{n}, {k}]"
        )
    weights = _decode(handle)
    with engine.backend_errors():
        result = np.matmul(lhs, weights.T)
    return Tensor.from_compute(result, DType.F32, as_device(rhs.device))


def format_table() -> Dict[str, Tuple[int, int]]:
    """Map every tag to ``(block_size, type_size)``."""

    return {tag: (fmt.block_size, fmt.type_size) for tag, fmt in QUANTIZATION_FORMATS.items()}


__all__ = [
    "QTensor",
    "QUANTIZATION_FORMATS",
    "dequantize",
    "format_table",
    "lookup_format",
    "quantize",
    "quantized_matmul",
]
