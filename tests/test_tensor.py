import numpy as np
import pytest

import tensor_bridge as tb
from tensor_bridge import BackendFailure, DType, OutOfRange, Tensor


def _arange(*shape: int, dtype: DType = DType.F32) -> Tensor:
    return Tensor.from_compute(np.arange(int(np.prod(shape))).reshape(shape), dtype)


@pytest.mark.parametrize(
    "values, dtype",
    [
        ([1, 2, 3], DType.U32),
        ([-1, 2], DType.I64),
        ([2**32], DType.I64),
        ([1.5, 2.0], DType.F32),
        ([[1.0, 2.0], [3.0, 4.0]], DType.F32),
        (3, DType.U32),
        (np.zeros(2, dtype=np.float64), DType.F64),
    ],
)
def test_tensor_infers_dtype(values, dtype: DType) -> None:
    assert tb.tensor(values).dtype is dtype


@pytest.mark.parametrize(
    "values",
    ["abc", [[[[1.0]]]], [[1.0, 2.0], [3.0]], None, [2**63], [2**64 - 1], [2**70]],
)
def test_tensor_rejects_unsupported_values(values) -> None:
    with pytest.raises(TypeError, match="incorrect type"):
        tb.tensor(values)


def test_tensor_copies_numpy_input() -> None:
    source = np.ones(3, dtype=np.float32)
    handle = Tensor(source)
    source[0] = 5.0
    assert handle.values() == [1.0, 1.0, 1.0]
    with pytest.raises(ValueError):
        handle.storage[0] = 2.0


def test_introspection() -> None:
    handle = tb.zeros((2, 3))
    assert handle.shape == (2, 3)
    assert handle.stride == (3, 1)
    assert handle.rank == 2
    assert handle.dtype is DType.F32
    assert handle.device == "cpu"
    assert handle.nbytes == 24
    assert handle.elem_count() == 6
    assert "dtype=F32" in repr(handle)


def test_ones_with_dtype_string() -> None:
    handle = tb.ones([2], dtype="bf16")
    assert handle.dtype is DType.BF16
    assert handle.values() == [1.0, 1.0]
    assert handle.nbytes == 4


def test_invalid_device() -> None:
    with pytest.raises(TypeError, match="invalid device 'tpu'"):
        tb.zeros((1,), device="tpu")


def test_random_constructors() -> None:
    uniform = tb.rand((4, 4))
    assert uniform.dtype is DType.F32
    values = uniform.numpy()
    assert ((values >= 0.0) & (values < 1.0)).all()
    assert tb.randn((3,)).shape == (3,)


def test_unary_ops() -> None:
    handle = Tensor(np.array([1.0, 4.0], dtype=np.float32))
    assert handle.sqrt().values() == [1.0, 2.0]
    assert handle.sqr().values() == [1.0, 16.0]
    assert handle.recip().values() == [1.0, 0.25]
    assert handle.powf(0.5).values() == [1.0, 2.0]
    np.testing.assert_allclose(handle.log().exp().numpy(), [1.0, 4.0], rtol=1e-6)


def test_unary_float_op_on_integer_tensor_fails() -> None:
    with pytest.raises(BackendFailure):
        tb.tensor([1, 2]).exp()


def test_arithmetic_operators() -> None:
    lhs = Tensor(np.array([1.0, 2.0], dtype=np.float32))
    rhs = Tensor(np.array([3.0, 4.0], dtype=np.float32))
    assert (lhs + rhs).values() == [4.0, 6.0]
    assert (rhs - lhs).values() == [2.0, 2.0]
    assert (lhs * 2).values() == [2.0, 4.0]
    assert (2.0 * lhs).values() == [2.0, 4.0]
    assert (1 + lhs).values() == [2.0, 3.0]
    assert (rhs / 2).values() == [1.5, 2.0]


def test_binary_dtype_mismatch() -> None:
    lhs = Tensor(np.zeros(2, dtype=np.float32))
    rhs = Tensor(np.zeros(2, dtype=np.float64))
    with pytest.raises(BackendFailure, match="dtype mismatch in add"):
        lhs + rhs


def test_elementwise_shape_mismatch_needs_broadcast() -> None:
    lhs = _arange(2, 3)
    rhs = Tensor(np.ones(3, dtype=np.float32))
    with pytest.raises(BackendFailure, match="shape mismatch"):
        lhs + rhs
    assert lhs.broadcast_add(rhs).values() == [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]


def test_matmul() -> None:
    lhs = _arange(2, 3)
    rhs = _arange(3, 2)
    np.testing.assert_array_equal(
        lhs.matmul(rhs).numpy(), np.arange(6).reshape(2, 3) @ np.arange(6).reshape(3, 2)
    )
    with pytest.raises(BackendFailure):
        lhs.matmul(lhs)


def test_where_cond() -> None:
    cond = tb.tensor([1, 0, 2])
    on_true = Tensor(np.array([1.0, 2.0, 3.0], dtype=np.float32))
    on_false = tb.zeros((3,))
    assert cond.where_cond(on_true, on_false).values() == [1.0, 0.0, 3.0]


def test_shape_ops_resolve_negative_axes() -> None:
    handle = _arange(2, 3)
    assert handle.transpose(-1, -2).shape == (3, 2)
    assert handle.t().values() == [[0.0, 3.0], [1.0, 4.0], [2.0, 5.0]]
    assert handle.unsqueeze(-1).shape == (2, 3, 1)
    assert handle.unsqueeze(2).shape == (2, 3, 1)
    assert handle.unsqueeze(0).squeeze(0).shape == (2, 3)
    assert handle.squeeze(0).shape == (2, 3)
    assert handle.flatten_all().shape == (6,)
    assert _arange(2, 3, 4).flatten_from(1).shape == (2, 12)
    assert _arange(2, 3, 4).flatten_to(-2).shape == (6, 4)
    assert handle.reshape((3, 2)).shape == (3, 2)
    assert handle.broadcast_left((4,)).shape == (4, 2, 3)
    with pytest.raises(OutOfRange):
        handle.transpose(0, 2)
    with pytest.raises(BackendFailure):
        handle.reshape((4, 2))


def test_get_and_narrow() -> None:
    handle = _arange(2, 3)
    assert handle.get(-1).values() == [3.0, 4.0, 5.0]
    with pytest.raises(OutOfRange) as excinfo:
        handle.get(2)
    assert excinfo.value.kind == "dimension"
    assert handle.narrow(1, -2, 2).values() == [[1.0, 2.0], [4.0, 5.0]]
    with pytest.raises(BackendFailure, match="narrow invalid args"):
        handle.narrow(1, 1, 5)


def test_index_select() -> None:
    handle = _arange(2, 3)
    picked = handle.index_select(tb.tensor([2, 0]), -1)
    assert picked.values() == [[2.0, 0.0], [5.0, 3.0]]
    with pytest.raises(BackendFailure):
        handle.index_select(tb.tensor([3]), 1)


def test_reductions() -> None:
    handle = Tensor(np.array([[1.0, 5.0, 3.0], [4.0, 2.0, 6.0]], dtype=np.float32))
    argmax = handle.argmax_keepdim(-1)
    assert argmax.dtype is DType.U32
    assert argmax.values() == [[1], [2]]
    assert handle.argmin_keepdim(0).values() == [[0, 1, 0]]
    assert handle.max_keepdim(1).values() == [[5.0], [6.0]]
    assert handle.min_keepdim(-2).values() == [[1.0, 2.0, 3.0]]
    assert handle.sum_keepdim([0, 1]).values() == [[21.0]]
    assert handle.sum_all().values() == 21.0
    assert handle.mean_all().values() == 3.5


def test_conversions() -> None:
    handle = _arange(2, 2)
    as_int = handle.to_dtype("i64")
    assert as_int.dtype is DType.I64
    assert as_int.values() == [[0, 1], [2, 3]]
    assert handle.to_dtype(DType.F32) is handle
    transposed = handle.t()
    assert not transposed.is_contiguous()
    assert transposed.is_fortran_contiguous()
    assert transposed.contiguous().is_contiguous()
    assert handle.copy().values() == handle.values()
    assert handle.detach().values() == handle.values()
    assert handle.to_device("cpu") is handle


def test_cat_and_stack() -> None:
    first = _arange(2, 2)
    second = tb.ones((2, 2))
    assert tb.cat([first, second], -1).shape == (2, 4)
    assert tb.stack([first, second], -1).shape == (2, 2, 2)
    assert tb.stack([first, second], 0).shape == (2, 2, 2)
    with pytest.raises(ValueError, match="empty input to cat"):
        tb.cat([], 0)
    with pytest.raises(OutOfRange):
        tb.cat([first, second], 2)
    with pytest.raises(BackendFailure):
        tb.cat([first, first.to_dtype("f64")], 0)


def test_large_integers_are_not_wrapped() -> None:
    handle = tb.tensor([2**63 - 1, -(2**63)])
    assert handle.dtype is DType.I64
    assert handle.values() == [2**63 - 1, -(2**63)]


def test_numpy_integer_axes() -> None:
    handle = tb.ones((2, 3))
    assert handle.sum_keepdim(np.int64(1)).values() == [[3.0], [3.0]]
    assert handle.sum_keepdim([np.int64(0), -1]).values() == [[6.0]]


def test_non_native_byte_order_is_accepted() -> None:
    handle = Tensor(np.array([1.0, 2.5], dtype=">f4"))
    assert handle.dtype is DType.F32
    assert handle.storage.dtype == np.dtype(np.float32)
    assert handle.values() == [1.0, 2.5]
    assert (handle + handle).values() == [2.0, 5.0]
