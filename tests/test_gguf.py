from types import SimpleNamespace

import numpy as np
import pytest

gguf = pytest.importorskip("gguf")

import tensor_bridge as tb
from tensor_bridge import BackendFailure, DType, ValueType
from tensor_bridge import io as bridge_io


def _write_model(path) -> None:
    writer = gguf.GGUFWriter(str(path), "tiny")
    writer.add_uint32("tiny.context_length", 128)
    writer.add_float32("tiny.rope.scale", 0.1)
    writer.add_bool("tiny.use_bias", True)
    writer.add_string("general.name", "tiny-model")
    writer.add_array("tokenizer.ggml.tokens", ["<s>", "hi", "</s>"])
    writer.add_array("tiny.groups", [[1, 2], [3]])
    writer.add_tensor("embed", np.arange(6, dtype=np.float32).reshape(2, 3))
    writer.add_tensor("norm", np.array([0.5, -1.0], dtype=np.float16))
    writer.write_header_to_file()
    writer.write_kv_data_to_file()
    writer.write_tensors_to_file()
    writer.close()


@pytest.fixture
def model_path(tmp_path):
    path = tmp_path / "model.gguf"
    _write_model(path)
    return path


def test_read_gguf_metadata_types(model_path) -> None:
    table = tb.read_gguf_metadata(model_path)

    assert table["tiny.context_length"].kind is ValueType.U32
    assert table["tiny.rope.scale"].kind is ValueType.F32
    assert table["tiny.use_bias"].kind is ValueType.BOOL
    assert table["general.name"].kind is ValueType.STRING
    tokens = table["tokenizer.ggml.tokens"]
    assert tokens.kind is ValueType.ARRAY
    assert [item.kind for item in tokens.value] == [ValueType.STRING] * 3
    groups = table["tiny.groups"]
    assert [item.kind for item in groups.value] == [ValueType.ARRAY, ValueType.ARRAY]
    assert groups.value[0].value[0].kind is ValueType.I32
    assert not any(key.startswith("GGUF.") for key in table)


def test_load_gguf_metadata_host_values(model_path) -> None:
    metadata = tb.load_gguf_metadata(model_path)

    assert metadata["general.architecture"] == "tiny"
    assert metadata["general.name"] == "tiny-model"
    assert metadata["tiny.context_length"] == 128
    assert metadata["tiny.rope.scale"] == pytest.approx(0.1, rel=1e-6)
    assert metadata["tiny.use_bias"] is True
    assert metadata["tokenizer.ggml.tokens"] == ["<s>", "hi", "</s>"]
    assert metadata["tiny.groups"] == [[1, 2], [3]]


def test_load_gguf_metadata_depth_limit(model_path) -> None:
    with pytest.raises(tb.MaxDepthExceeded):
        tb.load_gguf_metadata(model_path, max_depth=1)


def test_list_gguf(model_path) -> None:
    assert tb.list_gguf(model_path) == {"embed": ("F32", (2, 3)), "norm": ("F16", (2,))}


def test_load_gguf_tensors(model_path) -> None:
    tensors, metadata = tb.load_gguf(model_path)

    assert set(tensors) == {"embed", "norm"}
    embed = tensors["embed"]
    assert embed.dtype is DType.F32
    assert embed.shape == (2, 3)
    assert embed.values() == [[0.0, 1.0, 2.0], [3.0, 4.0, 5.0]]
    assert tensors["norm"].dtype is DType.F16
    assert tensors["norm"].values() == [0.5, -1.0]
    assert metadata["general.name"] == "tiny-model"


def test_load_gguf_rejects_block_quantized_tensors(monkeypatch) -> None:
    block = SimpleNamespace(
        name="blk.0.attn_q.weight",
        tensor_type=SimpleNamespace(name="Q4_0"),
        shape=np.array([32, 1]),
        data=np.zeros((1, 18), dtype=np.uint8),
    )
    reader = SimpleNamespace(fields={}, tensors=[block])
    monkeypatch.setattr(bridge_io, "_gguf_reader", lambda path: reader)

    with pytest.raises(BackendFailure, match="Q4_0"):
        tb.load_gguf("unused.gguf")
    assert tb.list_gguf("unused.gguf") == {"blk.0.attn_q.weight": ("Q4_0", (1, 32))}
