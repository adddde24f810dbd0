"""Generic operations dispatched over the stored element type of a tensor."""

from __future__ import annotations

import abc
import logging
from typing import Generic, TypeVar

import numpy as np

from . import engine
from .dtypes import ElementType, element_type
from .errors import UnsupportedRank

logger = logging.getLogger(__name__)

MAX_HOST_TREE_RANK = 3

Output = TypeVar("Output")


class DTypeMap(abc.ABC, Generic[Output]):
    """Visitor run once per call with the tensor's statically known element type.

    Subclasses implement :meth:`f`; :meth:`map` reads the dtype tag, resolves
    the matching :class:`ElementType` and invokes :meth:`f` with it.
    """

    @abc.abstractmethod
    def f(self, tensor: engine.TensorStorage, element: ElementType) -> Output:
        raise NotImplementedError

    def map(self, tensor: engine.TensorStorage) -> Output:
        element = element_type(engine.element_type(tensor))
        return self.f(tensor, element)


class ToHostTree(DTypeMap[object]):
    """Export tensor contents as a scalar or nested lists of host scalars."""

    def f(self, tensor: engine.TensorStorage, element: ElementType) -> object:
        rank = engine.rank(tensor)
        if rank > MAX_HOST_TREE_RANK:
            raise UnsupportedRank(rank)
        with engine.backend_errors():
            if rank == 0:
                return element.widen(engine.read_scalar(tensor, element)).item()
            if rank == 1:
                values = engine.read_vector1(tensor, element)
            elif rank == 2:
                values = engine.read_vector2(tensor, element)
            else:
                values = engine.read_vector3(tensor, element)
            return element.widen(values).tolist()


class ToNumpy(DTypeMap[np.ndarray]):
    """Export a host ndarray; 16-bit floats come out as float32."""

    def f(self, tensor: engine.TensorStorage, element: ElementType) -> np.ndarray:
        with engine.backend_errors():
            return np.array(element.widen(tensor.storage), copy=True)


class ElementSize(DTypeMap[int]):
    def f(self, tensor: engine.TensorStorage, element: ElementType) -> int:
        return element.size


def to_host_tree(tensor: engine.TensorStorage) -> object:
    """Convert a rank 0-3 tensor into plain Python values.

    Raises :class:`UnsupportedRank` for higher ranks.
    """

    logger.debug(
        "Converting %s tensor of rank %d to host values",
        engine.element_type(tensor),
        engine.rank(tensor),
    )
    return ToHostTree().map(tensor)


def to_numpy(tensor: engine.TensorStorage) -> np.ndarray:
    return ToNumpy().map(tensor)


def element_size(tensor: engine.TensorStorage) -> int:
    return ElementSize().map(tensor)


__all__ = [
    "DTypeMap",
    "ElementSize",
    "MAX_HOST_TREE_RANK",
    "ToHostTree",
    "ToNumpy",
    "element_size",
    "to_host_tree",
    "to_numpy",
]
