"""Execution locales and the lazily initialised accelerator cache."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Union

from .errors import BackendFailure

logger = logging.getLogger(__name__)

_TORCH_IMPORT_ATTEMPTED = False
_TORCH_MODULE = None


def _get_torch():
    global _TORCH_IMPORT_ATTEMPTED, _TORCH_MODULE
    if not _TORCH_IMPORT_ATTEMPTED:
        _TORCH_IMPORT_ATTEMPTED = True
        try:  # pragma: no cover - optional dependency
            import torch as torch_module
        except ImportError:  # pragma: no cover - torch is an optional extra
            _TORCH_MODULE = None
        else:
            _TORCH_MODULE = torch_module
    return _TORCH_MODULE


@dataclass(frozen=True)
class Device:
    kind: str
    ordinal: int = 0

    def __str__(self) -> str:
        return self.kind

    @property
    def is_cpu(self) -> bool:
        return self.kind == "cpu"


CPU = Device("cpu")

DeviceLike = Union[Device, str]


def _init_cuda() -> Device:
    torch_module = _get_torch()
    if torch_module is None:
        raise BackendFailure("CUDA support requires the optional torch dependency")
    if not torch_module.cuda.is_available():
        raise BackendFailure("no CUDA device is available")
    native = torch_module.device("cuda", 0)
    return Device("cuda", native.index or 0)


class DeviceCache:
    """Init-once cache for accelerator devices, guarded by a single lock.

    Failed initialisations are not cached, so a later call retries.
    """

    def __init__(self, factories: Optional[Mapping[str, Callable[[], Device]]] = None) -> None:
        self._lock = threading.Lock()
        self._factories: Dict[str, Callable[[], Device]] = dict(
            factories if factories is not None else {"cuda": _init_cuda}
        )
        self._devices: Dict[str, Device] = {}

    def get(self, kind: str) -> Device:
        if kind == "cpu":
            return CPU
        factory = self._factories.get(kind)
        if factory is None:
            raise TypeError(f"invalid device '{kind}'")
        with self._lock:
            cached = self._devices.get(kind)
            if cached is not None:
                return cached
            device = factory()
            self._devices[kind] = device
            logger.info("Initialised %s device (ordinal %d)", kind, device.ordinal)
            return device

    def cached(self, kind: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(kind)

    def reset(self) -> None:
        with self._lock:
            self._devices.clear()


DEVICE_CACHE = DeviceCache()


def as_device(value: Optional[DeviceLike], cache: Optional[DeviceCache] = None) -> Device:
    """Resolve ``"cpu"``/``"cuda"`` (or a :class:`Device`) to a usable device."""

    if value is None:
        from .config import get_settings

        value = get_settings().default_device
    if isinstance(value, Device):
        return value
    if not isinstance(value, str):
        raise TypeError(f"invalid device '{value}'")
    return (cache or DEVICE_CACHE).get(value)


def cuda_is_available() -> bool:
    torch_module = _get_torch()
    return bool(torch_module is not None and torch_module.cuda.is_available())


__all__ = [
    "CPU",
    "DEVICE_CACHE",
    "Device",
    "DeviceCache",
    "DeviceLike",
    "as_device",
    "cuda_is_available",
]
