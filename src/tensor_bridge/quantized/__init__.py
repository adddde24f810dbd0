"""Block quantization encodings selected by a runtime string tag."""

from .formats import QK_K, QK_LEGACY, QuantizationFormat
from .registry import (
    QTensor,
    QUANTIZATION_FORMATS,
    dequantize,
    format_table,
    lookup_format,
    quantize,
    quantized_matmul,
)

__all__ = [
    "QK_K",
    "QK_LEGACY",
    "QTensor",
    "QUANTIZATION_FORMATS",
    "QuantizationFormat",
    "dequantize",
    "format_table",
    "lookup_format",
    "quantize",
    "quantized_matmul",
]
