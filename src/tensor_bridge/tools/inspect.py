"""Inspect the tensors stored in a safetensors bundle.

Lists every tensor with its dtype and shape, prints the bundle's metadata
table and can optionally dump host values or measure quantization error.

Example
-------
python -m tensor_bridge.tools.inspect \
    --model model.safetensors --quantize q4k
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional, TextIO

import numpy as np

from ..config import get_settings
from ..dispatch import MAX_HOST_TREE_RANK
from ..errors import TensorBridgeError
from ..io import load_safetensors, read_safetensors_metadata
from ..metadata import metadata_to_host
from ..quantized import QUANTIZATION_FORMATS, dequantize, quantize
from ..tensor import Tensor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tensor-inspect",
        description="List the tensors of a safetensors bundle.",
    )
    parser.add_argument(
        "--model",
        type=Path,
        required=True,
        help="Path to the .safetensors file",
    )
    parser.add_argument(
        "--quantize",
        metavar="TAG",
        choices=sorted(QUANTIZATION_FORMATS),
        help="Quantize every float tensor and report size and max error",
    )
    parser.add_argument(
        "--values",
        action="store_true",
        help=f"Print host values of tensors up to rank {MAX_HOST_TREE_RANK}",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=get_settings().verbose,
        help="Enable debug logging",
    )
    return parser


def describe(name: str, item: Tensor) -> str:
    return f"{name}: {item.dtype} {list(item.shape)}"


def quantization_report(name: str, item: Tensor, tag: str) -> str:
    fmt = QUANTIZATION_FORMATS[tag]
    if not item.dtype.is_float:
        return f"{name}: skipped ({item.dtype} is not a float dtype)"
    if item.elem_count() % fmt.block_size != 0:
        return f"{name}: skipped ({item.elem_count()} elements, block size {fmt.block_size})"
    handle = quantize(item, tag)
    restored = dequantize(handle).numpy()
    error = float(np.max(np.abs(restored - item.numpy()), initial=0.0))
    return f"{name}: {handle!r} {handle.nbytes} bytes, max abs error {error:.6g}"


def inspect_bundle(
    path: Path,
    *,
    quantize_tag: Optional[str] = None,
    show_values: bool = False,
    out: Optional[TextIO] = None,
) -> None:
    tensors = load_safetensors(path)
    metadata = metadata_to_host(read_safetensors_metadata(path))
    print(f"model_path: {path.resolve()}", file=out)
    print(f"tensors: {len(tensors)}", file=out)
    for name, item in tensors.items():
        print(describe(name, item), file=out)
        if show_values and item.rank <= MAX_HOST_TREE_RANK:
            print(f"  {item.values()}", file=out)
    if metadata:
        print("metadata:", file=out)
        for key, value in sorted(metadata.items()):
            print(f"  {key} = {value}", file=out)
    if quantize_tag is not None:
        print(f"quantization ({quantize_tag}):", file=out)
        for name, item in tensors.items():
            print(f"  {quantization_report(name, item, quantize_tag)}", file=out)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    try:
        inspect_bundle(args.model, quantize_tag=args.quantize, show_values=args.values)
    except (OSError, ValueError, TypeError, TensorBridgeError) as exc:
        logger.debug("Inspection of %s failed", args.model, exc_info=True)
        print(f"tensor-inspect: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
