"""Runtime settings shared across the bridge."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

DEFAULT_MAX_METADATA_DEPTH = 64

_FALSE_VALUES = {"", "0", "false", "no"}


@dataclass(frozen=True)
class BridgeSettings:
    """Process-wide knobs; override with ``TENSOR_BRIDGE_*`` variables."""

    max_metadata_depth: int = DEFAULT_MAX_METADATA_DEPTH
    default_device: str = "cpu"
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.max_metadata_depth <= 0:
            raise ValueError("max_metadata_depth must be a positive integer")
        if self.default_device not in ("cpu", "cuda"):
            raise ValueError(f"invalid device '{self.default_device}'")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeSettings":
        env = os.environ if environ is None else environ
        settings = cls()
        depth = env.get("TENSOR_BRIDGE_MAX_METADATA_DEPTH")
        if depth is not None:
            try:
                settings = replace(settings, max_metadata_depth=int(depth))
            except ValueError as exc:
                raise ValueError(
                    f"TENSOR_BRIDGE_MAX_METADATA_DEPTH must be an integer, got {depth!r}"
                ) from exc
        device = env.get("TENSOR_BRIDGE_DEVICE")
        if device:
            settings = replace(settings, default_device=device.lower())
        verbose = env.get("TENSOR_BRIDGE_VERBOSE")
        if verbose is not None:
            settings = replace(settings, verbose=verbose.lower() not in _FALSE_VALUES)
        return settings


_ACTIVE_SETTINGS = BridgeSettings.from_env()


def get_settings() -> BridgeSettings:
    return _ACTIVE_SETTINGS


def set_settings(settings: BridgeSettings) -> BridgeSettings:
    """Install ``settings`` and return the previously active ones."""

    global _ACTIVE_SETTINGS
    previous = _ACTIVE_SETTINGS
    _ACTIVE_SETTINGS = settings
    return previous


__all__ = [
    "BridgeSettings",
    "DEFAULT_MAX_METADATA_DEPTH",
    "get_settings",
    "set_settings",
]
