"""Typed boundary between host Python values and numpy-backed tensors."""

from __future__ import annotations

import importlib
from types import ModuleType

from .config import BridgeSettings, get_settings, set_settings
from .device import DEVICE_CACHE, Device, DeviceCache, cuda_is_available
from .dispatch import DTypeMap, to_host_tree, to_numpy
from .dtypes import DType, bf16, f16, f32, f64, i64, u8, u32
from .errors import (
    BackendFailure,
    MaxDepthExceeded,
    OutOfRange,
    TensorBridgeError,
    UnknownFormat,
    UnsupportedRank,
)
from .indexing import resolve_axes, resolve_axis, resolve_position
from .io import (
    list_gguf,
    list_safetensors,
    load_gguf,
    load_gguf_metadata,
    load_safetensors,
    read_gguf_metadata,
    read_safetensors_metadata,
    save_safetensors,
)
from .metadata import MetadataValue, ValueType, metadata_to_host, to_host
from .quantized import (
    QTensor,
    QUANTIZATION_FORMATS,
    QuantizationFormat,
    dequantize,
    quantize,
    quantized_matmul,
)
from .tensor import Tensor, cat, ones, rand, randn, stack, tensor, zeros
from .utils import get_num_threads, has_accelerate, has_mkl

__version__ = "0.1.0"

_LAZY_SUBMODULES = ("nn", "tools")


def __getattr__(name: str) -> ModuleType:
    if name in _LAZY_SUBMODULES:
        module = importlib.import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "BackendFailure",
    "BridgeSettings",
    "DEVICE_CACHE",
    "DType",
    "DTypeMap",
    "Device",
    "DeviceCache",
    "MaxDepthExceeded",
    "MetadataValue",
    "OutOfRange",
    "QTensor",
    "QUANTIZATION_FORMATS",
    "QuantizationFormat",
    "Tensor",
    "TensorBridgeError",
    "UnknownFormat",
    "UnsupportedRank",
    "ValueType",
    "bf16",
    "cat",
    "cuda_is_available",
    "dequantize",
    "f16",
    "f32",
    "f64",
    "get_num_threads",
    "get_settings",
    "has_accelerate",
    "has_mkl",
    "i64",
    "list_gguf",
    "list_safetensors",
    "load_gguf",
    "load_gguf_metadata",
    "load_safetensors",
    "metadata_to_host",
    "ones",
    "quantize",
    "quantized_matmul",
    "rand",
    "randn",
    "read_gguf_metadata",
    "read_safetensors_metadata",
    "resolve_axes",
    "resolve_axis",
    "resolve_position",
    "save_safetensors",
    "set_settings",
    "stack",
    "tensor",
    "to_host",
    "to_host_tree",
    "to_numpy",
    "u32",
    "u8",
    "zeros",
]
