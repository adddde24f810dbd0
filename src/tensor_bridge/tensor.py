"""Opaque tensor handle exposed to host code.

A :class:`Tensor` wraps read-only numpy storage together with its element
type tag and device. Axis and position arguments are normalised with
:mod:`tensor_bridge.indexing` before any numpy call; numpy failures surface
as :class:`~tensor_bridge.errors.BackendFailure`.
"""

from __future__ import annotations

import logging
import math
import operator
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from . import dispatch, engine
from .device import CPU, Device, DeviceLike, as_device
from .dtypes import DType, bf16_bits_to_f32, dtype_for_numpy, element_type
from .errors import BackendFailure
from .indexing import resolve_axes, resolve_axis, resolve_position

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from .quantized import QTensor

logger = logging.getLogger(__name__)

_U32_LIMIT = 2**32
_I64_MAX = 2**63 - 1
_MAX_CONSTRUCTOR_RANK = 3


def _as_shape(shape: Sequence[int]) -> Tuple[int, ...]:
    if isinstance(shape, (str, bytes)) or not isinstance(shape, Iterable):
        raise TypeError(f"expected a sequence of dimensions, got {type(shape).__name__}")
    dims = []
    for dim in shape:
        if isinstance(dim, bool):
            raise TypeError(f"invalid dimension {dim!r}")
        value = operator.index(dim)
        if value < 0:
            raise TypeError(f"invalid dimension {value}")
        dims.append(value)
    return tuple(dims)


def _infer_storage(values) -> Tuple[np.ndarray, DType]:
    if isinstance(values, np.ndarray):
        dtype = dtype_for_numpy(values.dtype)
        return np.array(values, dtype=values.dtype.newbyteorder("="), copy=True), dtype
    try:
        array = np.asarray(values)
    except ValueError as exc:
        raise TypeError(f"incorrect type {type(values).__name__} for tensor") from exc
    if array.ndim > _MAX_CONSTRUCTOR_RANK:
        raise TypeError(f"incorrect type {type(values).__name__} for tensor")
    if array.dtype.kind in "iu":
        if array.size and (array.min() < 0 or array.max() >= _U32_LIMIT):
            if array.max() > _I64_MAX:
                raise TypeError(f"incorrect type {type(values).__name__} for tensor")
            return array.astype(np.int64), DType.I64
        return array.astype(np.uint32), DType.U32
    if array.dtype.kind == "f":
        return array.astype(np.float32), DType.F32
    raise TypeError(f"incorrect type {type(values).__name__} for tensor")


class Tensor:
    """N-dimensional array with a fixed element type, shape and device."""

    __slots__ = ("_storage", "_dtype", "_device")

    def __init__(self, values) -> None:
        storage, dtype = _infer_storage(values)
        self._storage = engine.freeze(storage)
        self._dtype = dtype
        self._device = CPU

    @classmethod
    def _wrap(cls, storage: np.ndarray, dtype: DType, device: Device) -> "Tensor":
        tensor = cls.__new__(cls)
        tensor._storage = engine.freeze(storage)
        tensor._dtype = dtype
        tensor._device = device
        return tensor

    @classmethod
    def _from_storage(
        cls, storage: np.ndarray, dtype: DType, device: Device = CPU
    ) -> "Tensor":
        """Adopt an array already laid out as ``dtype`` storage."""

        expected = element_type(dtype).storage
        if storage.dtype != expected:
            raise BackendFailure(
                f"storage dtype {storage.dtype} does not match {dtype} ({expected})"
            )
        return cls._wrap(storage, dtype, device)

    @classmethod
    def from_compute(
        cls, values: np.ndarray, dtype: Union[DType, str], device: DeviceLike = CPU
    ) -> "Tensor":
        """Build a tensor of ``dtype`` from values in any numeric numpy layout."""

        dtype = DType.parse(dtype)
        with engine.backend_errors():
            storage = element_type(dtype).narrow(values)
        return cls._wrap(storage, dtype, as_device(device))

    # Engine-facing accessors -------------------------------------------

    @property
    def storage(self) -> np.ndarray:
        return self._storage

    def _compute(self) -> np.ndarray:
        if self._dtype is DType.BF16:
            return bf16_bits_to_f32(self._storage)
        return self._storage

    def _like(self, values: np.ndarray, dtype: Optional[DType] = None) -> "Tensor":
        dtype = self._dtype if dtype is None else dtype
        with engine.backend_errors():
            storage = element_type(dtype).narrow(values)
        return Tensor._wrap(storage, dtype, self._device)

    def _require_float(self, op: str) -> None:
        if not element_type(self._dtype).is_float:
            raise BackendFailure(f"unsupported dtype {self._dtype} for op {op}")

    # Introspection -------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, ...]:
        return engine.shape(self)

    @property
    def stride(self) -> Tuple[int, ...]:
        itemsize = self._storage.itemsize
        return tuple(int(step) // itemsize for step in self._storage.strides)

    @property
    def dtype(self) -> DType:
        return self._dtype

    @property
    def device(self) -> str:
        return str(self._device)

    @property
    def rank(self) -> int:
        return engine.rank(self)

    @property
    def nbytes(self) -> int:
        return self._storage.size * dispatch.element_size(self)

    def elem_count(self) -> int:
        return int(self._storage.size)

    def values(self):
        """Return the data as a Python value, list, list of lists, ..."""

        return dispatch.to_host_tree(self)

    def numpy(self) -> np.ndarray:
        return dispatch.to_numpy(self)

    def __repr__(self) -> str:
        body = np.array2string(self._compute(), separator=", ")
        return f"Tensor({body}, dtype={self._dtype}, device={self._device})"

    def __str__(self) -> str:
        return self.__repr__()

    # Element-wise operations --------------------------------------------

    def _unary(self, op: str, fn: Callable[[np.ndarray], np.ndarray]) -> "Tensor":
        self._require_float(op)
        with engine.backend_errors():
            return self._like(fn(self._compute()))

    def sin(self) -> "Tensor":
        return self._unary("sin", np.sin)

    def cos(self) -> "Tensor":
        return self._unary("cos", np.cos)

    def log(self) -> "Tensor":
        return self._unary("log", np.log)

    def sqr(self) -> "Tensor":
        with engine.backend_errors():
            values = self._compute()
            return self._like(values * values)

    def sqrt(self) -> "Tensor":
        return self._unary("sqrt", np.sqrt)

    def recip(self) -> "Tensor":
        return self._unary("recip", np.reciprocal)

    def exp(self) -> "Tensor":
        return self._unary("exp", np.exp)

    def powf(self, p: float) -> "Tensor":
        return self._unary("powf", lambda values: np.power(values, float(p)))

    def _check_same(self, rhs: "Tensor", op: str) -> None:
        if rhs._dtype is not self._dtype:
            raise BackendFailure(
                f"dtype mismatch in {op}, lhs: {self._dtype}, rhs: {rhs._dtype}"
            )
        if rhs._device != self._device:
            raise BackendFailure(
                f"device mismatch in {op}, lhs: {self._device}, rhs: {rhs._device}"
            )

    def _binary(
        self,
        op: str,
        fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
        rhs: "Tensor",
        *,
        broadcast: bool,
    ) -> "Tensor":
        self._check_same(rhs, op)
        if not broadcast and rhs.shape != self.shape:
            raise BackendFailure(
                f"shape mismatch in {op}, lhs: {list(self.shape)}, rhs: {list(rhs.shape)}"
            )
        with engine.backend_errors():
            return self._like(fn(self._compute(), rhs._compute()))

    def _scalar_or_tensor(
        self, op: str, fn: Callable[[np.ndarray, object], np.ndarray], rhs
    ) -> "Tensor":
        if isinstance(rhs, Tensor):
            return self._binary(op, fn, rhs, broadcast=False)
        if isinstance(rhs, (int, float)) and not isinstance(rhs, bool):
            with engine.backend_errors():
                return self._like(fn(self._compute(), float(rhs)))
        raise TypeError(f"unsupported rhs for {op}")

    def matmul(self, rhs: "Tensor") -> "Tensor":
        self._check_same(rhs, "matmul")
        if self.rank < 2 or rhs.rank < 2:
            raise BackendFailure(
                f"matmul requires rank >= 2, lhs: {list(self.shape)}, rhs: {list(rhs.shape)}"
            )
        with engine.backend_errors():
            return self._like(np.matmul(self._compute(), rhs._compute()))

    def broadcast_add(self, rhs: "Tensor") -> "Tensor":
        return self._binary("broadcast_add", np.add, rhs, broadcast=True)

    def broadcast_sub(self, rhs: "Tensor") -> "Tensor":
        return self._binary("broadcast_sub", np.subtract, rhs, broadcast=True)

    def broadcast_mul(self, rhs: "Tensor") -> "Tensor":
        return self._binary("broadcast_mul", np.multiply, rhs, broadcast=True)

    def broadcast_div(self, rhs: "Tensor") -> "Tensor":
        return self._binary("broadcast_div", np.true_divide, rhs, broadcast=True)

    def where_cond(self, on_true: "Tensor", on_false: "Tensor") -> "Tensor":
        if element_type(self._dtype).is_float:
            raise BackendFailure(f"unsupported dtype {self._dtype} for op where_cond")
        on_true._check_same(on_false, "where_cond")
        for branch in (on_true, on_false):
            if branch.shape != self.shape:
                raise BackendFailure(
                    "shape mismatch in where_cond, "
                    f"cond: {list(self.shape)}, branch: {list(branch.shape)}"
                )
        with engine.backend_errors():
            selected = np.where(self._storage != 0, on_true._compute(), on_false._compute())
        return on_true._like(selected)

    def __add__(self, rhs) -> "Tensor":
        return self._scalar_or_tensor("add", np.add, rhs)

    def __radd__(self, rhs) -> "Tensor":
        return self.__add__(rhs)

    def __mul__(self, rhs) -> "Tensor":
        return self._scalar_or_tensor("mul", np.multiply, rhs)

    def __rmul__(self, rhs) -> "Tensor":
        return self.__mul__(rhs)

    def __sub__(self, rhs) -> "Tensor":
        return self._scalar_or_tensor("sub", np.subtract, rhs)

    def __truediv__(self, rhs) -> "Tensor":
        return self._scalar_or_tensor("div", np.true_divide, rhs)

    # Shape manipulation ---------------------------------------------------

    def reshape(self, shape: Sequence[int]) -> "Tensor":
        dims = _as_shape(shape)
        if math.prod(dims) != self.elem_count():
            raise BackendFailure(
                f"shape mismatch in reshape, lhs: {list(self.shape)}, rhs: {list(dims)}"
            )
        with engine.backend_errors():
            return Tensor._wrap(self._storage.reshape(dims), self._dtype, self._device)

    def broadcast_as(self, shape: Sequence[int]) -> "Tensor":
        dims = _as_shape(shape)
        with engine.backend_errors():
            expanded = np.broadcast_to(self._storage, dims)
        return Tensor._wrap(np.array(expanded, copy=True), self._dtype, self._device)

    def broadcast_left(self, shape: Sequence[int]) -> "Tensor":
        return self.broadcast_as(_as_shape(shape) + self.shape)

    def squeeze(self, dim: int) -> "Tensor":
        axis = resolve_axis(self.rank, dim)
        if self.shape[axis] != 1:
            return self
        return Tensor._wrap(np.squeeze(self._storage, axis=axis), self._dtype, self._device)

    def unsqueeze(self, dim: int) -> "Tensor":
        axis = resolve_axis(self.rank + 1, dim)
        return Tensor._wrap(np.expand_dims(self._storage, axis), self._dtype, self._device)

    def transpose(self, dim1: int, dim2: int) -> "Tensor":
        first = resolve_axis(self.rank, dim1)
        second = resolve_axis(self.rank, dim2)
        return Tensor._wrap(
            np.swapaxes(self._storage, first, second), self._dtype, self._device
        )

    def t(self) -> "Tensor":
        if self.rank < 2:
            raise BackendFailure(f"t() expects a tensor with at least 2 dims, got {self.rank}")
        return self.transpose(-2, -1)

    def flatten_from(self, dim: int) -> "Tensor":
        axis = resolve_axis(self.rank, dim)
        dims = self.shape[:axis] + (math.prod(self.shape[axis:]),)
        return self.reshape(dims)

    def flatten_to(self, dim: int) -> "Tensor":
        axis = resolve_axis(self.rank, dim)
        dims = (math.prod(self.shape[: axis + 1]),) + self.shape[axis + 1 :]
        return self.reshape(dims)

    def flatten_all(self) -> "Tensor":
        return self.reshape((self.elem_count(),))

    # Indexing --------------------------------------------------------------

    def get(self, index: int) -> "Tensor":
        axis = resolve_axis(self.rank, 0)
        position = resolve_position(self.shape[axis], index)
        return Tensor._wrap(self._storage[position], self._dtype, self._device)

    def narrow(self, dim: int, start: int, len: int) -> "Tensor":
        axis = resolve_axis(self.rank, dim)
        extent = self.shape[axis]
        begin = resolve_position(extent, start)
        length = operator.index(len)
        if length < 0 or begin + length > extent:
            raise BackendFailure(
                f"narrow invalid args start + len > dim_len: {list(self.shape)}, "
                f"dim: {axis}, start: {begin}, len: {length}"
            )
        index = [slice(None)] * self.rank
        index[axis] = slice(begin, begin + length)
        return Tensor._wrap(self._storage[tuple(index)], self._dtype, self._device)

    def index_select(self, indexes: "Tensor", dim: int) -> "Tensor":
        axis = resolve_axis(self.rank, dim)
        if element_type(indexes.dtype).is_float:
            raise BackendFailure(
                f"unsupported dtype {indexes.dtype} for op index_select indexes"
            )
        if indexes.rank != 1:
            raise BackendFailure(
                f"index_select expects a rank 1 index tensor, got rank {indexes.rank}"
            )
        positions = indexes.storage.astype(np.int64)
        extent = self.shape[axis]
        if positions.size and (positions.min() < 0 or positions.max() >= extent):
            raise BackendFailure(
                f"index_select index out of range for dimension {axis} of size {extent}"
            )
        with engine.backend_errors():
            selected = np.take(self._storage, positions, axis=axis)
        return Tensor._wrap(selected, self._dtype, self._device)

    # Reductions ------------------------------------------------------------

    def _reduce_keepdim(self, fn, dim: int, dtype: Optional[DType] = None) -> "Tensor":
        axis = resolve_axis(self.rank, dim)
        with engine.backend_errors():
            reduced = fn(self._compute(), axis=axis, keepdims=True)
        return self._like(reduced, dtype)

    def argmax_keepdim(self, dim: int) -> "Tensor":
        return self._reduce_keepdim(np.argmax, dim, DType.U32)

    def argmin_keepdim(self, dim: int) -> "Tensor":
        return self._reduce_keepdim(np.argmin, dim, DType.U32)

    def max_keepdim(self, dim: int) -> "Tensor":
        return self._reduce_keepdim(np.max, dim)

    def min_keepdim(self, dim: int) -> "Tensor":
        return self._reduce_keepdim(np.min, dim)

    def sum_keepdim(self, dims: Union[int, Sequence[int]]) -> "Tensor":
        axes = tuple(resolve_axes(self.rank, dims))
        with engine.backend_errors():
            return self._like(np.sum(self._compute(), axis=axes, keepdims=True))

    def sum_all(self) -> "Tensor":
        with engine.backend_errors():
            return self._like(np.sum(self._compute()))

    def mean_all(self) -> "Tensor":
        elements = self.elem_count()
        with engine.backend_errors():
            total = np.sum(self._compute(), dtype=np.float64)
            return self._like(np.asarray(total / elements))

    # Conversion ------------------------------------------------------------

    def to_dtype(self, dtype: Union[DType, str]) -> "Tensor":
        target = DType.parse(dtype)
        if target is self._dtype:
            return self
        logger.debug("Converting tensor %s -> %s", self._dtype, target)
        return self._like(self._compute(), target)

    def to_device(self, device: DeviceLike) -> "Tensor":
        target = as_device(device)
        if target == self._device:
            return self
        return Tensor._wrap(self._storage, self._dtype, target)

    def contiguous(self) -> "Tensor":
        if self.is_contiguous():
            return self
        return Tensor._wrap(
            np.ascontiguousarray(self._storage), self._dtype, self._device
        )

    def is_contiguous(self) -> bool:
        return bool(self._storage.flags.c_contiguous)

    def is_fortran_contiguous(self) -> bool:
        return bool(self._storage.flags.f_contiguous)

    def detach(self) -> "Tensor":
        return Tensor._wrap(self._storage, self._dtype, self._device)

    def copy(self) -> "Tensor":
        return Tensor._wrap(np.array(self._storage, copy=True), self._dtype, self._device)

    def quantize(self, quantized_dtype: str) -> "QTensor":
        from .quantized import quantize

        return quantize(self, quantized_dtype)


def tensor(values) -> Tensor:
    return Tensor(values)


def _filled(fill, shape, dtype, device) -> Tensor:
    dims = _as_shape(shape)
    target = DType.F32 if dtype is None else DType.parse(dtype)
    return Tensor.from_compute(np.full(dims, fill, dtype=np.float64), target, as_device(device))


def ones(shape: Sequence[int], *, dtype=None, device: Optional[DeviceLike] = None) -> Tensor:
    return _filled(1, shape, dtype, device)


def zeros(shape: Sequence[int], *, dtype=None, device: Optional[DeviceLike] = None) -> Tensor:
    return _filled(0, shape, dtype, device)


def rand(shape: Sequence[int], *, device: Optional[DeviceLike] = None) -> Tensor:
    """Uniform samples from ``[0, 1)`` as float32."""

    dims = _as_shape(shape)
    rng = np.random.default_rng()
    return Tensor.from_compute(rng.random(dims, dtype=np.float32), DType.F32, as_device(device))


def randn(shape: Sequence[int], *, device: Optional[DeviceLike] = None) -> Tensor:
    """Standard normal samples as float32."""

    dims = _as_shape(shape)
    rng = np.random.default_rng()
    return Tensor.from_compute(
        rng.standard_normal(dims, dtype=np.float32), DType.F32, as_device(device)
    )


def _check_joinable(tensors: Sequence[Tensor], op: str) -> None:
    first = tensors[0]
    for other in tensors[1:]:
        first._check_same(other, op)


def cat(tensors: Sequence[Tensor], dim: int) -> Tensor:
    """Concatenate the tensors across one axis."""

    tensors = list(tensors)
    if not tensors:
        raise ValueError("empty input to cat")
    axis = resolve_axis(tensors[0].rank, dim)
    _check_joinable(tensors, "cat")
    first = tensors[0]
    with engine.backend_errors():
        joined = np.concatenate([item.storage for item in tensors], axis=axis)
    return Tensor._wrap(joined, first.dtype, first._device)


def stack(tensors: Sequence[Tensor], dim: int) -> Tensor:
    """Stack the tensors along a new axis inserted at ``dim``."""

    tensors = list(tensors)
    if not tensors:
        raise ValueError("empty input to stack")
    axis = resolve_axis(tensors[0].rank + 1, dim)
    _check_joinable(tensors, "stack")
    first = tensors[0]
    with engine.backend_errors():
        joined = np.stack([item.storage for item in tensors], axis=axis)
    return Tensor._wrap(joined, first.dtype, first._device)


__all__ = [
    "Tensor",
    "cat",
    "ones",
    "rand",
    "randn",
    "stack",
    "tensor",
    "zeros",
]
