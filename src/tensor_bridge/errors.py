"""Error kinds raised by the tensor bridge."""

from __future__ import annotations


class TensorBridgeError(RuntimeError):
    """Base class for every error raised by :mod:`tensor_bridge`."""


class OutOfRange(TensorBridgeError, IndexError):
    """Raised when a signed axis or position falls outside its valid window."""

    def __init__(self, value: int, bound: int, *, kind: str = "rank") -> None:
        self.value = value
        self.bound = bound
        self.kind = kind
        if kind == "rank":
            subject = "dimension index"
            target = f"tensor rank {bound}"
        else:
            subject = "index"
            target = f"tensor dimension {bound}"
        direction = "large" if value >= 0 else "low"
        super().__init__(f"{subject} {value} is too {direction} for {target}")

    @property
    def rank(self) -> int | None:
        return self.bound if self.kind == "rank" else None


class UnsupportedRank(TensorBridgeError, TypeError):
    """Raised when host conversion is requested for a tensor of rank > 3."""

    def __init__(self, rank: int) -> None:
        self.rank = rank
        super().__init__(f"conversion to host values is not handled for rank {rank}")


class BackendFailure(TensorBridgeError):
    """Raised when the numeric engine fails; carries its message unchanged."""


class UnknownFormat(TensorBridgeError, ValueError):
    """Raised when a quantization format tag is not in the vocabulary."""

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"unknown quantized-dtype {tag}")


class MaxDepthExceeded(TensorBridgeError, ValueError):
    """Raised when a metadata array nests deeper than the configured limit."""

    def __init__(self, depth: int, limit: int) -> None:
        self.depth = depth
        self.limit = limit
        super().__init__(f"metadata array nesting depth {depth} exceeds limit {limit}")


__all__ = [
    "BackendFailure",
    "MaxDepthExceeded",
    "OutOfRange",
    "TensorBridgeError",
    "UnknownFormat",
    "UnsupportedRank",
]
