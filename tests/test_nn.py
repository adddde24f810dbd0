import numpy as np
import pytest

import tensor_bridge as tb
from tensor_bridge import BackendFailure, OutOfRange, Tensor
from tensor_bridge import nn, utils


def test_softmax_rows_sum_to_one() -> None:
    logits = Tensor(np.array([[1.0, 2.0, 3.0], [1000.0, 1000.0, 1000.0]], dtype=np.float32))
    probs = nn.softmax(logits, -1).numpy()
    np.testing.assert_allclose(probs.sum(axis=-1), [1.0, 1.0], rtol=1e-6)
    np.testing.assert_allclose(probs[1], [1 / 3] * 3, rtol=1e-6)
    assert probs[0].argmax() == 2


def test_softmax_checks_axis_and_dtype() -> None:
    with pytest.raises(OutOfRange):
        nn.softmax(tb.ones((2, 2)), 2)
    with pytest.raises(BackendFailure):
        nn.softmax(tb.tensor([1, 2]), 0)


def test_silu() -> None:
    values = Tensor(np.array([0.0, 1.0, -1.0], dtype=np.float32))
    expected = np.array([0.0, 1.0, -1.0]) / (1.0 + np.exp(-np.array([0.0, 1.0, -1.0])))
    np.testing.assert_allclose(nn.silu(values).numpy(), expected, rtol=1e-6)


def test_capability_probes() -> None:
    assert utils.get_num_threads() >= 1
    assert isinstance(utils.has_mkl(), bool)
    assert isinstance(utils.has_accelerate(), bool)
    assert isinstance(tb.cuda_is_available(), bool)
