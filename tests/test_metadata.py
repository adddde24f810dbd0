import numpy as np
import pytest

from tensor_bridge import MaxDepthExceeded, MetadataValue, ValueType, metadata_to_host, to_host
from tensor_bridge.config import BridgeSettings, set_settings


def _nest(depth: int) -> MetadataValue:
    value = MetadataValue.u32(1)
    for _ in range(depth):
        value = MetadataValue.array([value])
    return value


@pytest.mark.parametrize(
    "value, expected",
    [
        (MetadataValue(ValueType.U8, 255), 255),
        (MetadataValue(ValueType.I8, -128), -128),
        (MetadataValue(ValueType.U16, 65535), 65535),
        (MetadataValue(ValueType.I16, -2), -2),
        (MetadataValue.u32(2**32 - 1), 2**32 - 1),
        (MetadataValue(ValueType.I32, -(2**31)), -(2**31)),
        (MetadataValue(ValueType.U64, 2**64 - 1), 2**64 - 1),
        (MetadataValue.i64(-(2**63)), -(2**63)),
        (MetadataValue.f64(0.1), 0.1),
        (MetadataValue.boolean(True), True),
        (MetadataValue.string("llama"), "llama"),
    ],
)
def test_scalars_convert_without_narrowing(value: MetadataValue, expected) -> None:
    result = to_host(value)
    assert result == expected
    assert type(result) is type(expected)


def test_f32_is_rounded_through_float32_once() -> None:
    result = to_host(MetadataValue.f32(0.1))
    assert isinstance(result, float)
    assert result == float(np.float32(0.1))
    assert result != 0.1


def test_mixed_three_level_array_keeps_order_and_kind() -> None:
    tree = MetadataValue.array(
        [
            MetadataValue.u32(7),
            MetadataValue.array(
                [
                    MetadataValue.string("a"),
                    MetadataValue.array([MetadataValue.boolean(False), MetadataValue.f64(2.5)]),
                ]
            ),
            MetadataValue.i64(-3),
        ]
    )

    assert to_host(tree) == [7, ["a", [False, 2.5]], -3]
    inner = to_host(tree)[1][1]
    assert type(inner[0]) is bool
    assert type(inner[1]) is float


def test_empty_array() -> None:
    assert to_host(MetadataValue.array([])) == []


def test_depth_limit_counts_top_level_array() -> None:
    assert to_host(_nest(3), max_depth=3) == [[[1]]]
    with pytest.raises(MaxDepthExceeded) as excinfo:
        to_host(_nest(4), max_depth=3)
    assert excinfo.value.depth == 4
    assert excinfo.value.limit == 3
    assert isinstance(excinfo.value, ValueError)


def test_depth_limit_defaults_to_settings() -> None:
    previous = set_settings(BridgeSettings(max_metadata_depth=2))
    try:
        with pytest.raises(MaxDepthExceeded):
            to_host(_nest(3))
    finally:
        set_settings(previous)
    assert to_host(_nest(3)) == [[[1]]]


def test_metadata_to_host() -> None:
    table = {
        "general.name": MetadataValue.string("tiny"),
        "tokenizer.scores": MetadataValue.array([MetadataValue.f32(0.5), MetadataValue.f32(-1.0)]),
    }
    assert metadata_to_host(table) == {"general.name": "tiny", "tokenizer.scores": [0.5, -1.0]}


@pytest.mark.parametrize(
    "kind, value, error",
    [
        (ValueType.U8, 256, ValueError),
        (ValueType.I8, 128, ValueError),
        (ValueType.U32, -1, ValueError),
        (ValueType.U32, 1.5, TypeError),
        (ValueType.I64, True, TypeError),
        (ValueType.BOOL, 1, TypeError),
        (ValueType.STRING, b"bytes", TypeError),
        (ValueType.ARRAY, [1, 2], TypeError),
    ],
)
def test_invalid_values_are_rejected(kind: ValueType, value, error) -> None:
    with pytest.raises(error):
        MetadataValue(kind, value)


def test_kind_accepts_gguf_codes() -> None:
    assert MetadataValue(4, 3).kind is ValueType.U32
