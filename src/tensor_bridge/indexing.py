"""Normalisation of signed, Python-style axis and position arguments.

Negative values count from the end. Every axis or position handed to the
numeric engine goes through :func:`resolve_axis` or :func:`resolve_position`
first, so the engine is never asked for an out-of-range access.
"""

from __future__ import annotations

import operator
from typing import Iterable, List, Union

from .errors import OutOfRange


def _resolve(bound: int, requested: int, kind: str) -> int:
    if isinstance(requested, bool):
        raise TypeError(f"expected an integer index, got {requested!r}")
    requested = operator.index(requested)
    if requested >= 0:
        if requested >= bound:
            raise OutOfRange(requested, bound, kind=kind)
        return requested
    if -requested > bound:
        raise OutOfRange(requested, bound, kind=kind)
    return bound + requested


def resolve_axis(rank: int, requested: int) -> int:
    """Return the canonical axis for ``requested`` in a tensor of ``rank`` dims.

    ``-rank`` resolves to ``0``; ``rank`` itself is always rejected.
    """

    return _resolve(rank, requested, "rank")


def resolve_position(extent: int, requested: int) -> int:
    """Return the canonical position for ``requested`` along an axis of ``extent``."""

    return _resolve(extent, requested, "dimension")


def resolve_axes(rank: int, requested: Union[int, Iterable[int]]) -> List[int]:
    """Resolve one axis or a sequence of axes, preserving the caller's order."""

    try:
        operator.index(requested)
    except TypeError:
        return [resolve_axis(rank, axis) for axis in requested]
    return [resolve_axis(rank, requested)]


__all__ = ["resolve_axes", "resolve_axis", "resolve_position"]
