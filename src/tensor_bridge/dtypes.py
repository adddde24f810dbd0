"""The closed set of element types a :class:`~tensor_bridge.Tensor` can hold."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union, assert_never

import numpy as np


class DType(enum.Enum):
    """Element type tag stored alongside every tensor."""

    U8 = "u8"
    U32 = "u32"
    I64 = "i64"
    F16 = "f16"
    BF16 = "bf16"
    F32 = "f32"
    F64 = "f64"

    def __repr__(self) -> str:
        return self.name

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, value: Union["DType", str]) -> "DType":
        if isinstance(value, DType):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
        raise TypeError(f"invalid dtype '{value}'")

    @property
    def is_float(self) -> bool:
        return element_type(self).is_float


@dataclass(frozen=True)
class ElementType:
    """Static description of how one element type is stored and exported.

    ``storage`` is the numpy dtype of the backing array. ``host`` is the
    dtype values are widened to before they become Python scalars; the two
    only differ for the 16-bit floats, which are always exported as float32.
    """

    dtype: DType
    storage: np.dtype
    host: np.dtype
    size: int
    is_float: bool

    def widen(self, array: np.ndarray) -> np.ndarray:
        """Return ``array`` (in storage layout) converted to the host dtype."""

        if self.dtype is DType.BF16:
            return bf16_bits_to_f32(array)
        if array.dtype == self.host:
            return array
        return array.astype(self.host)

    def narrow(self, array: np.ndarray) -> np.ndarray:
        """Convert arbitrary numeric values into this type's storage layout."""

        if self.dtype is DType.BF16:
            return f32_to_bf16_bits(np.asarray(array, dtype=np.float32))
        return np.asarray(array).astype(self.storage)


_U8 = ElementType(DType.U8, np.dtype(np.uint8), np.dtype(np.uint8), 1, False)
_U32 = ElementType(DType.U32, np.dtype(np.uint32), np.dtype(np.uint32), 4, False)
_I64 = ElementType(DType.I64, np.dtype(np.int64), np.dtype(np.int64), 8, False)
_F16 = ElementType(DType.F16, np.dtype(np.float16), np.dtype(np.float32), 2, True)
# numpy has no bfloat16: keep the raw bit patterns.
_BF16 = ElementType(DType.BF16, np.dtype(np.uint16), np.dtype(np.float32), 2, True)
_F32 = ElementType(DType.F32, np.dtype(np.float32), np.dtype(np.float32), 4, True)
_F64 = ElementType(DType.F64, np.dtype(np.float64), np.dtype(np.float64), 8, True)


def element_type(dtype: DType) -> ElementType:
    """Exhaustive dispatch from a dtype tag to its element descriptor."""

    match dtype:
        case DType.U8:
            return _U8
        case DType.U32:
            return _U32
        case DType.I64:
            return _I64
        case DType.F16:
            return _F16
        case DType.BF16:
            return _BF16
        case DType.F32:
            return _F32
        case DType.F64:
            return _F64
        case _:
            assert_never(dtype)


ELEMENT_TYPES = {dtype: element_type(dtype) for dtype in DType}

_NUMPY_TO_DTYPE = {
    np.dtype(np.uint8): DType.U8,
    np.dtype(np.uint32): DType.U32,
    np.dtype(np.int64): DType.I64,
    np.dtype(np.float16): DType.F16,
    np.dtype(np.float32): DType.F32,
    np.dtype(np.float64): DType.F64,
}


def dtype_for_numpy(np_dtype) -> DType:
    """Map a numpy dtype onto the closed set; bf16 never appears in numpy."""

    native = np.dtype(np_dtype).newbyteorder("=")
    resolved = _NUMPY_TO_DTYPE.get(native)
    if resolved is None:
        raise TypeError(f"unsupported numpy dtype {np.dtype(np_dtype)}")
    return resolved


def bf16_bits_to_f32(bits: np.ndarray) -> np.ndarray:
    raw = np.asarray(bits, dtype=np.uint16).astype(np.uint32)
    raw <<= 16
    return raw.view(np.float32)


def f32_to_bf16_bits(values: np.ndarray) -> np.ndarray:
    """Round float32 values to bfloat16 (nearest-even), returning raw bits."""

    values = np.asarray(values, dtype=np.float32)
    raw = values.copy().view(np.uint32)
    nan = np.isnan(values)
    rounding = ((raw >> 16) & 1) + np.uint32(0x7FFF)
    rounded = ((raw + rounding) >> 16).astype(np.uint16)
    if nan.any():
        rounded = np.where(nan, np.uint16(0x7FC0), rounded)
    return rounded


u8 = DType.U8
u32 = DType.U32
i64 = DType.I64
f16 = DType.F16
bf16 = DType.BF16
f32 = DType.F32
f64 = DType.F64


__all__ = [
    "DType",
    "ELEMENT_TYPES",
    "ElementType",
    "bf16",
    "bf16_bits_to_f32",
    "dtype_for_numpy",
    "element_type",
    "f16",
    "f32",
    "f32_to_bf16_bits",
    "f64",
    "i64",
    "u32",
    "u8",
]
