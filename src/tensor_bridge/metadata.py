"""Conversion of typed metadata value trees into plain host values.

Model metadata (GGUF key/value tables, safetensors ``__metadata__``) is a
tree of tagged scalars and arrays. :func:`to_host` flattens the tags away
while keeping every value exact: 64-bit integers stay Python ``int`` and
F32 values are rounded through float32 exactly once.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import numpy as np

from .config import get_settings
from .errors import MaxDepthExceeded

logger = logging.getLogger(__name__)


class ValueType(enum.IntEnum):
    """Metadata value kinds, numbered as in the GGUF key/value table."""

    U8 = 0
    I8 = 1
    U16 = 2
    I16 = 3
    U32 = 4
    I32 = 5
    F32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    U64 = 10
    I64 = 11
    F64 = 12

    def __repr__(self) -> str:
        return f"ValueType.{self.name}"


_INTEGER_RANGES: Dict[ValueType, Tuple[int, int]] = {
    ValueType.U8: (0, 2**8 - 1),
    ValueType.I8: (-(2**7), 2**7 - 1),
    ValueType.U16: (0, 2**16 - 1),
    ValueType.I16: (-(2**15), 2**15 - 1),
    ValueType.U32: (0, 2**32 - 1),
    ValueType.I32: (-(2**31), 2**31 - 1),
    ValueType.U64: (0, 2**64 - 1),
    ValueType.I64: (-(2**63), 2**63 - 1),
}


@dataclass(frozen=True)
class MetadataValue:
    """One tagged metadata value. ``ARRAY`` values hold a tuple of children."""

    kind: ValueType
    value: Any

    def __post_init__(self) -> None:
        kind = ValueType(self.kind)
        object.__setattr__(self, "kind", kind)
        value = self.value
        if kind in _INTEGER_RANGES:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise TypeError(f"{kind.name} metadata expects an int, got {type(value).__name__}")
            low, high = _INTEGER_RANGES[kind]
            if not low <= int(value) <= high:
                raise ValueError(f"{value} is out of range for {kind.name} metadata")
            object.__setattr__(self, "value", int(value))
        elif kind in (ValueType.F32, ValueType.F64):
            if isinstance(value, bool) or not isinstance(value, (int, float, np.floating, np.integer)):
                raise TypeError(f"{kind.name} metadata expects a float, got {type(value).__name__}")
        elif kind is ValueType.BOOL:
            if not isinstance(value, (bool, np.bool_)):
                raise TypeError(f"BOOL metadata expects a bool, got {type(value).__name__}")
            object.__setattr__(self, "value", bool(value))
        elif kind is ValueType.STRING:
            if not isinstance(value, str):
                raise TypeError(f"STRING metadata expects a str, got {type(value).__name__}")
        else:
            items = tuple(value)
            for item in items:
                if not isinstance(item, MetadataValue):
                    raise TypeError(
                        f"ARRAY metadata expects MetadataValue items, got {type(item).__name__}"
                    )
            object.__setattr__(self, "value", items)

    @classmethod
    def string(cls, value: str) -> "MetadataValue":
        return cls(ValueType.STRING, value)

    @classmethod
    def array(cls, items: Iterable["MetadataValue"]) -> "MetadataValue":
        return cls(ValueType.ARRAY, tuple(items))

    @classmethod
    def u32(cls, value: int) -> "MetadataValue":
        return cls(ValueType.U32, value)

    @classmethod
    def i64(cls, value: int) -> "MetadataValue":
        return cls(ValueType.I64, value)

    @classmethod
    def f32(cls, value: float) -> "MetadataValue":
        return cls(ValueType.F32, value)

    @classmethod
    def f64(cls, value: float) -> "MetadataValue":
        return cls(ValueType.F64, value)

    @classmethod
    def boolean(cls, value: bool) -> "MetadataValue":
        return cls(ValueType.BOOL, value)


def _scalar_to_host(value: MetadataValue):
    kind = value.kind
    if kind in _INTEGER_RANGES:
        return int(value.value)
    if kind is ValueType.F32:
        return float(np.float32(value.value))
    if kind is ValueType.F64:
        return float(value.value)
    if kind is ValueType.BOOL:
        return bool(value.value)
    return str(value.value)


def _to_host(value: MetadataValue, depth: int, limit: int):
    if value.kind is not ValueType.ARRAY:
        return _scalar_to_host(value)
    depth += 1
    if depth > limit:
        raise MaxDepthExceeded(depth, limit)
    return [_to_host(item, depth, limit) for item in value.value]


def to_host(value: MetadataValue, *, max_depth: Optional[int] = None):
    """Convert ``value`` into host scalars and (nested) lists.

    A top-level array counts as depth 1; deeper nesting than ``max_depth``
    (default: the configured ``max_metadata_depth``) raises
    :class:`MaxDepthExceeded`.
    """

    limit = get_settings().max_metadata_depth if max_depth is None else max_depth
    return _to_host(value, 0, limit)


def metadata_to_host(
    mapping: Mapping[str, MetadataValue], *, max_depth: Optional[int] = None
) -> Dict[str, Any]:
    logger.debug("Converting %d metadata entries", len(mapping))
    return {key: to_host(value, max_depth=max_depth) for key, value in mapping.items()}


__all__ = [
    "MetadataValue",
    "ValueType",
    "metadata_to_host",
    "to_host",
]
