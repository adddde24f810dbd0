"""Fixed-block quantization encodings.

Each encoding works on contiguous groups of float32 source values and stores
one numpy record per block. Record sizes match the ggml type sizes, but the
code planes are packed little-endian, bit by bit, rather than in ggml's
interleaved order.

Legacy formats use 32-element blocks with a float16 scale (and a float16
minimum for the affine variants). k-quants use 256-element super-blocks
split into 16- or 32-element sub-blocks whose scales (and minimums) are
themselves quantized against float16 super-block scales.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np

QK_LEGACY = 32
QK_K = 256


@dataclass(frozen=True)
class QuantizationFormat:
    """One quantization encoding, selected by its format tag."""

    tag: str
    ggml_dtype: str
    block_size: int
    record: np.dtype
    encode: Callable[[np.ndarray], np.ndarray]
    decode: Callable[[np.ndarray], np.ndarray]

    @property
    def type_size(self) -> int:
        """Encoded bytes per block."""

        return self.record.itemsize

    def __repr__(self) -> str:
        return f"QuantizationFormat({self.tag!r}, block_size={self.block_size})"


# ---------------------------------------------------------------------------
# Helpers


def pack_codes(codes: np.ndarray, bits: int) -> np.ndarray:
    """Pack ``(blocks, n)`` unsigned codes of width ``bits`` into bytes."""

    codes = codes.astype(np.uint8)
    shifts = np.arange(bits, dtype=np.uint8)
    planes = (codes[..., None] >> shifts) & 1
    return np.packbits(planes.reshape(codes.shape[0], -1), axis=-1, bitorder="little")


def unpack_codes(packed: np.ndarray, bits: int, count: int) -> np.ndarray:
    """Inverse of :func:`pack_codes` for ``count`` codes per block."""

    planes = np.unpackbits(packed, axis=-1, count=count * bits, bitorder="little")
    planes = planes.reshape(packed.shape[0], count, bits).astype(np.uint16)
    weights = np.left_shift(np.uint16(1), np.arange(bits, dtype=np.uint16))
    return (planes * weights).sum(axis=-1).astype(np.uint8)


def _round(values: np.ndarray) -> np.ndarray:
    # Half away from zero, like C's roundf.
    return np.trunc(values + np.copysign(0.5, values))


def _safe_div(num, den: np.ndarray) -> np.ndarray:
    num = np.broadcast_to(np.asarray(num, dtype=np.float32), np.shape(den))
    out = np.zeros(np.shape(den), dtype=np.float32)
    return np.divide(num, den, out=out, where=den != 0)


def _signed_absmax(values: np.ndarray) -> np.ndarray:
    """Value with the largest magnitude along the last axis, sign kept."""

    index = np.argmax(np.abs(values), axis=-1)
    return np.take_along_axis(values, index[..., None], axis=-1)[..., 0]


def _f16(values: np.ndarray) -> np.ndarray:
    return np.asarray(values, dtype=np.float32).astype(np.float16)


def _empty(record: np.dtype, count: int) -> np.ndarray:
    return np.zeros(count, dtype=record)


# ---------------------------------------------------------------------------
# Legacy 32-element formats


def _legacy_symmetric(bits: int, record: np.dtype):
    half = 1 << (bits - 1)
    top = (1 << bits) - 1

    def encode(x: np.ndarray) -> np.ndarray:
        d = _signed_absmax(x) / -half
        inv = _safe_div(1.0, d)
        q = np.clip(np.trunc(x * inv[:, None] + half + 0.5), 0, top)
        blocks = _empty(record, x.shape[0])
        blocks["d"] = _f16(d)
        blocks["qs"] = pack_codes(q, bits)
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        q = unpack_codes(blocks["qs"], bits, QK_LEGACY).astype(np.float32)
        d = blocks["d"].astype(np.float32)
        return (q - half) * d[:, None]

    return encode, decode


def _legacy_affine(bits: int, record: np.dtype):
    top = (1 << bits) - 1

    def encode(x: np.ndarray) -> np.ndarray:
        lo = x.min(axis=1)
        hi = x.max(axis=1)
        d = (hi - lo) / top
        inv = _safe_div(1.0, d)
        q = np.clip(np.trunc((x - lo[:, None]) * inv[:, None] + 0.5), 0, top)
        blocks = _empty(record, x.shape[0])
        blocks["d"] = _f16(d)
        blocks["m"] = _f16(lo)
        blocks["qs"] = pack_codes(q, bits)
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        q = unpack_codes(blocks["qs"], bits, QK_LEGACY).astype(np.float32)
        d = blocks["d"].astype(np.float32)
        m = blocks["m"].astype(np.float32)
        return q * d[:, None] + m[:, None]

    return encode, decode


def _q8_legacy(record: np.dtype, with_sum: bool):
    def encode(x: np.ndarray) -> np.ndarray:
        d = np.abs(x).max(axis=1) / 127.0
        inv = _safe_div(1.0, d)
        q = np.clip(_round(x * inv[:, None]), -127, 127)
        blocks = _empty(record, x.shape[0])
        blocks["d"] = _f16(d)
        blocks["qs"] = q.astype(np.int8)
        if with_sum:
            blocks["s"] = _f16(d * q.sum(axis=1))
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        d = blocks["d"].astype(np.float32)
        return blocks["qs"].astype(np.float32) * d[:, None]

    return encode, decode


# ---------------------------------------------------------------------------
# k-quants (256-element super-blocks)


def _kquant_affine_codes(
    x: np.ndarray, bits: int, sub: int, scale_bits: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    count = x.shape[0]
    groups = x.reshape(count, -1, sub)
    top = (1 << bits) - 1
    scale_top = (1 << scale_bits) - 1
    group_min = np.minimum(groups.min(axis=-1), 0.0)
    group_scale = (groups.max(axis=-1) - group_min) / top
    d = _f16(group_scale.max(axis=-1) / scale_top)
    dmin = _f16((-group_min).max(axis=-1) / scale_top)
    sc = np.clip(_round(group_scale * _safe_div(1.0, d.astype(np.float32))[:, None]), 0, scale_top)
    mn = np.clip(_round(-group_min * _safe_div(1.0, dmin.astype(np.float32))[:, None]), 0, scale_top)
    scale = d.astype(np.float32)[:, None] * sc
    offset = dmin.astype(np.float32)[:, None] * mn
    q = np.clip(_round((groups + offset[..., None]) * _safe_div(1.0, scale)[..., None]), 0, top)
    return d, dmin, sc.astype(np.uint8), mn.astype(np.uint8), q.reshape(count, -1)


def _kquant_affine_values(blocks, sc, mn, q, sub: int) -> np.ndarray:
    count = q.shape[0]
    d = blocks["d"].astype(np.float32)[:, None]
    dmin = blocks["dmin"].astype(np.float32)[:, None]
    scale = (d * sc.astype(np.float32))[..., None]
    offset = (dmin * mn.astype(np.float32))[..., None]
    groups = q.reshape(count, -1, sub).astype(np.float32)
    return (groups * scale - offset).reshape(count, QK_K)


def _q2k(record: np.dtype):
    bits, sub = 2, 16

    def encode(x: np.ndarray) -> np.ndarray:
        d, dmin, sc, mn, q = _kquant_affine_codes(x, bits, sub, 4)
        blocks = _empty(record, x.shape[0])
        blocks["scales"] = sc | (mn << 4)
        blocks["qs"] = pack_codes(q, bits)
        blocks["d"] = d
        blocks["dmin"] = dmin
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        scales = blocks["scales"]
        q = unpack_codes(blocks["qs"], bits, QK_K)
        return _kquant_affine_values(blocks, scales & 0x0F, scales >> 4, q, sub)

    return encode, decode


def _kquant_affine6(bits: int, record: np.dtype):
    sub = 32
    groups = QK_K // sub

    def encode(x: np.ndarray) -> np.ndarray:
        d, dmin, sc, mn, q = _kquant_affine_codes(x, bits, sub, 6)
        blocks = _empty(record, x.shape[0])
        blocks["d"] = d
        blocks["dmin"] = dmin
        blocks["scales"] = pack_codes(np.concatenate([sc, mn], axis=1), 6)
        blocks["qs"] = pack_codes(q, bits)
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        scales = unpack_codes(blocks["scales"], 6, 2 * groups)
        q = unpack_codes(blocks["qs"], bits, QK_K)
        return _kquant_affine_values(blocks, scales[:, :groups], scales[:, groups:], q, sub)

    return encode, decode


def _kquant_symmetric_codes(
    x: np.ndarray, bits: int, sub: int, scale_bits: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    count = x.shape[0]
    groups = x.reshape(count, -1, sub)
    half = 1 << (bits - 1)
    scale_half = 1 << (scale_bits - 1)
    group_scale = _signed_absmax(groups) / -half
    iscale = _safe_div(-scale_half, _signed_absmax(group_scale))
    sc = np.clip(_round(group_scale * iscale[:, None]), -scale_half, scale_half - 1)
    d = _f16(_safe_div(1.0, iscale))
    scale = d.astype(np.float32)[:, None] * sc
    q = np.clip(_round(groups * _safe_div(1.0, scale)[..., None]), -half, half - 1)
    return d, sc.astype(np.int16), q.reshape(count, -1).astype(np.int16)


def _kquant_symmetric_values(d: np.ndarray, sc: np.ndarray, q: np.ndarray, sub: int) -> np.ndarray:
    count = q.shape[0]
    scale = (d.astype(np.float32)[:, None] * sc.astype(np.float32))[..., None]
    groups = q.reshape(count, -1, sub).astype(np.float32)
    return (groups * scale).reshape(count, QK_K)


def _q3k(record: np.dtype):
    bits, sub = 3, 16

    def encode(x: np.ndarray) -> np.ndarray:
        d, sc, q = _kquant_symmetric_codes(x, bits, sub, 6)
        blocks = _empty(record, x.shape[0])
        blocks["qs"] = pack_codes(q + 4, bits)
        blocks["scales"] = pack_codes(sc + 32, 6)
        blocks["d"] = d
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        q = unpack_codes(blocks["qs"], bits, QK_K).astype(np.int16) - 4
        sc = unpack_codes(blocks["scales"], 6, QK_K // sub).astype(np.int16) - 32
        return _kquant_symmetric_values(blocks["d"], sc, q, sub)

    return encode, decode


def _q6k(record: np.dtype):
    bits, sub = 6, 16

    def encode(x: np.ndarray) -> np.ndarray:
        d, sc, q = _kquant_symmetric_codes(x, bits, sub, 8)
        blocks = _empty(record, x.shape[0])
        blocks["qs"] = pack_codes(q + 32, bits)
        blocks["scales"] = sc.astype(np.int8)
        blocks["d"] = d
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        q = unpack_codes(blocks["qs"], bits, QK_K).astype(np.int16) - 32
        return _kquant_symmetric_values(blocks["d"], blocks["scales"], q, sub)

    return encode, decode


def _q8k(record: np.dtype):
    def encode(x: np.ndarray) -> np.ndarray:
        iscale = _safe_div(-128.0, _signed_absmax(x))
        q = np.clip(_round(x * iscale[:, None]), -128, 127)
        blocks = _empty(record, x.shape[0])
        blocks["d"] = _safe_div(1.0, iscale)
        blocks["qs"] = q.astype(np.int8)
        blocks["bsums"] = q.reshape(x.shape[0], 16, 16).sum(axis=-1).astype(np.int16)
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        return blocks["qs"].astype(np.float32) * blocks["d"][:, None]

    return encode, decode


def _passthrough(np_dtype):
    record = np.dtype([("value", np_dtype)])

    def encode(x: np.ndarray) -> np.ndarray:
        blocks = _empty(record, x.shape[0])
        blocks["value"] = x[:, 0].astype(record["value"])
        return blocks

    def decode(blocks: np.ndarray) -> np.ndarray:
        return blocks["value"].astype(np.float32)[:, None]

    return record, encode, decode


# ---------------------------------------------------------------------------
# Block records


_Q4_0 = np.dtype([("d", "<f2"), ("qs", "u1", (16,))])
_Q4_1 = np.dtype([("d", "<f2"), ("m", "<f2"), ("qs", "u1", (16,))])
_Q5_0 = np.dtype([("d", "<f2"), ("qs", "u1", (20,))])
_Q5_1 = np.dtype([("d", "<f2"), ("m", "<f2"), ("qs", "u1", (20,))])
_Q8_0 = np.dtype([("d", "<f2"), ("qs", "i1", (32,))])
_Q8_1 = np.dtype([("d", "<f2"), ("s", "<f2"), ("qs", "i1", (32,))])
_Q2K = np.dtype([("scales", "u1", (16,)), ("qs", "u1", (64,)), ("d", "<f2"), ("dmin", "<f2")])
_Q3K = np.dtype([("qs", "u1", (96,)), ("scales", "u1", (12,)), ("d", "<f2")])
_Q4K = np.dtype([("d", "<f2"), ("dmin", "<f2"), ("scales", "u1", (12,)), ("qs", "u1", (128,))])
_Q5K = np.dtype([("d", "<f2"), ("dmin", "<f2"), ("scales", "u1", (12,)), ("qs", "u1", (160,))])
_Q6K = np.dtype([("qs", "u1", (192,)), ("scales", "i1", (16,)), ("d", "<f2")])
_Q8K = np.dtype([("d", "<f4"), ("qs", "i1", (256,)), ("bsums", "<i2", (16,))])


def _format(tag: str, ggml_dtype: str, block_size: int, record: np.dtype, codec) -> QuantizationFormat:
    encode, decode = codec
    return QuantizationFormat(tag, ggml_dtype, block_size, record, encode, decode)


Q2K = _format("q2k", "Q2K", QK_K, _Q2K, _q2k(_Q2K))
Q3K = _format("q3k", "Q3K", QK_K, _Q3K, _q3k(_Q3K))
Q4_0 = _format("q4_0", "Q4_0", QK_LEGACY, _Q4_0, _legacy_symmetric(4, _Q4_0))
Q4_1 = _format("q4_1", "Q4_1", QK_LEGACY, _Q4_1, _legacy_affine(4, _Q4_1))
Q4K = _format("q4k", "Q4K", QK_K, _Q4K, _kquant_affine6(4, _Q4K))
Q5_0 = _format("q5_0", "Q5_0", QK_LEGACY, _Q5_0, _legacy_symmetric(5, _Q5_0))
Q5_1 = _format("q5_1", "Q5_1", QK_LEGACY, _Q5_1, _legacy_affine(5, _Q5_1))
Q5K = _format("q5k", "Q5K", QK_K, _Q5K, _kquant_affine6(5, _Q5K))
Q6K = _format("q6k", "Q6K", QK_K, _Q6K, _q6k(_Q6K))
Q8_0 = _format("q8_0", "Q8_0", QK_LEGACY, _Q8_0, _q8_legacy(_Q8_0, with_sum=False))
Q8_1 = _format("q8_1", "Q8_1", QK_LEGACY, _Q8_1, _q8_legacy(_Q8_1, with_sum=True))
Q8K = _format("q8k", "Q8K", QK_K, _Q8K, _q8k(_Q8K))

_F16_RECORD, _f16_encode, _f16_decode = _passthrough("<f2")
_F32_RECORD, _f32_encode, _f32_decode = _passthrough("<f4")
F16 = QuantizationFormat("f16", "F16", 1, _F16_RECORD, _f16_encode, _f16_decode)
F32 = QuantizationFormat("f32", "F32", 1, _F32_RECORD, _f32_encode, _f32_decode)


__all__ = [
    "F16",
    "F32",
    "Q2K",
    "Q3K",
    "Q4K",
    "Q4_0",
    "Q4_1",
    "Q5K",
    "Q5_0",
    "Q5_1",
    "Q6K",
    "Q8K",
    "Q8_0",
    "Q8_1",
    "QK_K",
    "QK_LEGACY",
    "QuantizationFormat",
    "pack_codes",
    "unpack_codes",
]
