"""Narrow interface onto the numpy engine that stores and computes tensors.

The rest of the bridge only talks to tensor storage through these helpers,
and every numpy failure crossing this boundary becomes a
:class:`~tensor_bridge.errors.BackendFailure` with the original message.
"""

from __future__ import annotations

import contextlib
from typing import Iterator, Protocol, Tuple

import numpy as np

from .dtypes import DType, ElementType
from .errors import BackendFailure, TensorBridgeError


class TensorStorage(Protocol):
    @property
    def storage(self) -> np.ndarray: ...

    @property
    def dtype(self) -> DType: ...


@contextlib.contextmanager
def backend_errors() -> Iterator[None]:
    """Re-raise engine failures as :class:`BackendFailure`."""

    try:
        yield
    except TensorBridgeError:
        raise
    except (ValueError, TypeError, IndexError, ArithmeticError, MemoryError) as exc:
        raise BackendFailure(str(exc)) from exc


def rank(tensor: TensorStorage) -> int:
    return tensor.storage.ndim


def shape(tensor: TensorStorage) -> Tuple[int, ...]:
    return tuple(int(dim) for dim in tensor.storage.shape)


def element_type(tensor: TensorStorage) -> DType:
    return tensor.dtype


def _expect_rank(tensor: TensorStorage, expected: int) -> np.ndarray:
    array = tensor.storage
    if array.ndim != expected:
        raise BackendFailure(f"unexpected rank, expected: {expected}, got: {array.ndim}")
    return array


def _check_element(tensor: TensorStorage, element: ElementType) -> None:
    if tensor.dtype is not element.dtype:
        raise BackendFailure(
            f"unexpected dtype, expected: {element.dtype}, got: {tensor.dtype}"
        )


def read_scalar(tensor: TensorStorage, element: ElementType) -> np.ndarray:
    _check_element(tensor, element)
    return _expect_rank(tensor, 0)


def read_vector1(tensor: TensorStorage, element: ElementType) -> np.ndarray:
    _check_element(tensor, element)
    return _expect_rank(tensor, 1)


def read_vector2(tensor: TensorStorage, element: ElementType) -> np.ndarray:
    _check_element(tensor, element)
    return _expect_rank(tensor, 2)


def read_vector3(tensor: TensorStorage, element: ElementType) -> np.ndarray:
    _check_element(tensor, element)
    return _expect_rank(tensor, 3)


def freeze(array: np.ndarray) -> np.ndarray:
    """Return a read-only view so handles stay immutable once built."""

    view = np.asarray(array).view()
    view.flags.writeable = False
    return view


__all__ = [
    "TensorStorage",
    "backend_errors",
    "element_type",
    "freeze",
    "rank",
    "read_scalar",
    "read_vector1",
    "read_vector2",
    "read_vector3",
    "shape",
]
