"""Reading and writing tensor bundles.

safetensors bundles are read and written in full. GGUF files are read
through the ``gguf`` package: their key/value metadata and any tensors
stored as plain floats or integers. ggml block-quantized payloads are
rejected because their layout differs from :mod:`tensor_bridge.quantized`.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .dtypes import DType, dtype_for_numpy, element_type
from .errors import BackendFailure
from .metadata import MetadataValue, ValueType, metadata_to_host
from .tensor import Tensor

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

_SAFETENSORS_DTYPES: Dict[str, DType] = {
    "U8": DType.U8,
    "U32": DType.U32,
    "I64": DType.I64,
    "F16": DType.F16,
    "BF16": DType.BF16,
    "F32": DType.F32,
    "F64": DType.F64,
}
_CODES = {dtype: code for code, dtype in _SAFETENSORS_DTYPES.items()}


def _read_header(path: Path) -> Tuple[Dict[str, Any], int]:
    with path.open("rb") as handle:
        header_len_raw = handle.read(8)
        if len(header_len_raw) != 8:
            raise ValueError(f"Invalid safetensors header in {path}")
        header_len = int.from_bytes(header_len_raw, "little")
        header_bytes = handle.read(header_len)
        if len(header_bytes) != header_len:
            raise ValueError(f"Incomplete safetensors header in {path}")
    try:
        header = json.loads(header_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Unable to parse safetensors header in {path}") from exc
    if not isinstance(header, dict):
        raise TypeError("Safetensors header must be a JSON object")
    return header, 8 + header_len


def _tensor_index(header: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    index: Dict[str, Dict[str, Any]] = {}
    for name, entry in header.items():
        if name.startswith("__") or not isinstance(entry, dict):
            continue
        if not {"dtype", "shape", "data_offsets"}.issubset(entry):
            continue
        index[name] = {
            "dtype": entry["dtype"],
            "shape": tuple(int(dim) for dim in entry["shape"]),
            "data_offsets": tuple(int(offset) for offset in entry["data_offsets"]),
        }
    return index


def _read_payload(handle, base_offset: int, entry: Mapping[str, Any]) -> bytearray:
    start, end = entry["data_offsets"]
    length = end - start
    handle.seek(base_offset + start)
    buffer = bytearray(length)
    read = handle.readinto(buffer)
    if read != length:
        raise IOError("Unexpected end of safetensors payload")
    return buffer


def _dtype_for(code: str, name: str) -> DType:
    dtype = _SAFETENSORS_DTYPES.get(code)
    if dtype is None:
        raise TypeError(f"unsupported safetensors dtype {code} for tensor '{name}'")
    return dtype


def load_safetensors(path: PathLike) -> Dict[str, Tensor]:
    """Load every tensor of a bundle, keyed by name."""

    from safetensors import safe_open

    path = Path(path)
    header, base_offset = _read_header(path)
    index = _tensor_index(header)
    dtypes = {name: _dtype_for(entry["dtype"], name) for name, entry in index.items()}
    tensors: Dict[str, Tensor] = {}
    if DType.BF16 not in dtypes.values():
        with safe_open(str(path), framework="numpy") as reader:
            for name, dtype in dtypes.items():
                tensors[name] = Tensor._from_storage(reader.get_tensor(name), dtype)
    else:
        # The numpy codec cannot produce bfloat16 arrays; decode the payload directly.
        logger.debug("Reading %s from its raw payload (bf16 entries present)", path)
        with path.open("rb") as handle:
            for name, dtype in dtypes.items():
                entry = index[name]
                storage = element_type(dtype).storage
                payload = _read_payload(handle, base_offset, entry)
                array = np.frombuffer(payload, dtype=storage.newbyteorder("<"))
                tensors[name] = Tensor._from_storage(
                    array.astype(storage).reshape(entry["shape"]), dtype
                )
    logger.debug("Loaded %d tensors from %s", len(tensors), path)
    return tensors


def _write_raw(
    path: Path, tensors: Mapping[str, Tensor], metadata: Optional[Mapping[str, str]]
) -> None:
    header: Dict[str, Any] = {}
    if metadata:
        header["__metadata__"] = dict(metadata)
    chunks = []
    offset = 0
    for name in sorted(tensors):
        item = tensors[name]
        data = np.ascontiguousarray(item.storage).astype(item.storage.dtype.newbyteorder("<")).tobytes()
        header[name] = {
            "dtype": _CODES[item.dtype],
            "shape": list(item.shape),
            "data_offsets": [offset, offset + len(data)],
        }
        chunks.append(data)
        offset += len(data)
    encoded = json.dumps(header, separators=(",", ":")).encode("utf-8")
    encoded += b" " * (-len(encoded) % 8)
    with path.open("wb") as handle:
        handle.write(len(encoded).to_bytes(8, "little"))
        handle.write(encoded)
        for chunk in chunks:
            handle.write(chunk)


def save_safetensors(
    path: PathLike,
    tensors: Mapping[str, Tensor],
    metadata: Optional[Mapping[str, str]] = None,
) -> None:
    """Write ``tensors`` (and an optional string table) as one bundle."""

    from safetensors.numpy import save_file

    path = Path(path)
    for name, item in tensors.items():
        if not isinstance(item, Tensor):
            raise TypeError(f"expected a Tensor for '{name}', got {type(item).__name__}")
    if any(item.dtype is DType.BF16 for item in tensors.values()):
        # numpy has no bfloat16, so the codec cannot tag the raw bits itself.
        _write_raw(path, tensors, metadata)
    else:
        arrays = {name: np.ascontiguousarray(item.storage) for name, item in tensors.items()}
        save_file(arrays, str(path), metadata=dict(metadata) if metadata else None)
    logger.debug("Saved %d tensors to %s", len(tensors), path)


def read_safetensors_metadata(path: PathLike) -> Dict[str, MetadataValue]:
    """Return the bundle's ``__metadata__`` table as STRING values."""

    header, _ = _read_header(Path(path))
    table = header.get("__metadata__") or {}
    if not isinstance(table, dict):
        raise TypeError("Safetensors __metadata__ must be a JSON object")
    return {str(key): MetadataValue.string(str(value)) for key, value in table.items()}


def list_safetensors(path: PathLike) -> Dict[str, Tuple[DType, Tuple[int, ...]]]:
    """Map tensor names to ``(dtype, shape)`` without reading payloads."""

    header, _ = _read_header(Path(path))
    return {
        name: (_dtype_for(entry["dtype"], name), entry["shape"])
        for name, entry in _tensor_index(header).items()
    }


# Key length, key bytes and value type precede the value parts of a KV field.
_GGUF_VALUE_PART = 3
_GGUF_PLAIN_TYPES = frozenset({"F16", "F32", "F64", "I64"})


def _gguf_reader(path: PathLike):
    from gguf import GGUFReader

    return GGUFReader(str(Path(path)), "r")


def _gguf_value(parts: Sequence[np.ndarray], cursor: int, type_code: int) -> Tuple[MetadataValue, int]:
    """Decode the value starting at ``parts[cursor]``; return it with the next cursor."""

    kind = ValueType(int(type_code))
    if kind is ValueType.STRING:
        # A length part followed by the UTF-8 bytes.
        text = bytes(parts[cursor + 1]).decode("utf-8")
        return MetadataValue.string(text), cursor + 2
    if kind is ValueType.ARRAY:
        item_code = int(parts[cursor][0])
        count = int(parts[cursor + 1][0])
        cursor += 2
        items: List[MetadataValue] = []
        for _ in range(count):
            item, cursor = _gguf_value(parts, cursor, item_code)
            items.append(item)
        return MetadataValue.array(items), cursor
    raw = parts[cursor][0]
    if kind in (ValueType.F32, ValueType.F64):
        value: Any = float(raw)
    elif kind is ValueType.BOOL:
        value = bool(raw)
    else:
        value = int(raw)
    return MetadataValue(kind, value), cursor + 1


def _gguf_fields(reader) -> Dict[str, MetadataValue]:
    table: Dict[str, MetadataValue] = {}
    for name, field in reader.fields.items():
        if name.startswith("GGUF."):
            # version and counts from the file header
            continue
        value, _ = _gguf_value(field.parts, _GGUF_VALUE_PART, field.types[0])
        table[name] = value
    return table


def read_gguf_metadata(path: PathLike) -> Dict[str, MetadataValue]:
    """Return the key/value table of a GGUF file as typed metadata values."""

    table = _gguf_fields(_gguf_reader(path))
    logger.debug("Read %d GGUF metadata entries from %s", len(table), path)
    return table


def load_gguf_metadata(path: PathLike, *, max_depth: Optional[int] = None) -> Dict[str, Any]:
    """Return the key/value table of a GGUF file as host values."""

    return metadata_to_host(read_gguf_metadata(path), max_depth=max_depth)


def list_gguf(path: PathLike) -> Dict[str, Tuple[str, Tuple[int, ...]]]:
    """Map GGUF tensor names to ``(ggml type name, shape)``.

    Shapes are in numpy order (outermost dimension first), the reverse of the
    order ggml stores them in.
    """

    reader = _gguf_reader(path)
    return {
        info.name: (info.tensor_type.name, tuple(int(dim) for dim in reversed(list(info.shape))))
        for info in reader.tensors
    }


def load_gguf(path: PathLike) -> Tuple[Dict[str, Tensor], Dict[str, Any]]:
    """Load the tensors and host metadata of a GGUF file.

    Only tensors stored as plain floats or integers can be loaded; a ggml
    block-quantized tensor raises :class:`BackendFailure`.
    """

    reader = _gguf_reader(path)
    tensors: Dict[str, Tensor] = {}
    for info in reader.tensors:
        type_name = info.tensor_type.name
        if type_name not in _GGUF_PLAIN_TYPES:
            raise BackendFailure(
                f"cannot load gguf tensor '{info.name}': ggml type {type_name} is not supported"
            )
        shape = tuple(int(dim) for dim in reversed(list(info.shape)))
        data = np.asarray(info.data)
        array = np.array(data, dtype=data.dtype.newbyteorder("="), copy=True).reshape(shape)
        tensors[info.name] = Tensor._from_storage(array, dtype_for_numpy(array.dtype))
    metadata = metadata_to_host(_gguf_fields(reader))
    logger.debug("Loaded %d tensors from %s", len(tensors), path)
    return tensors, metadata


__all__ = [
    "list_gguf",
    "list_safetensors",
    "load_gguf",
    "load_gguf_metadata",
    "load_safetensors",
    "read_gguf_metadata",
    "read_safetensors_metadata",
    "save_safetensors",
]
