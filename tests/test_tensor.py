import numpy as np
import pytest

from stackgrad.errors import IllegalStateError, InvalidShapeError, ShapeMismatchError
from stackgrad.tensor import Tensor, manual_seed
from tests.utils import assert_close


def test_uninitialized_tensor():
    t = Tensor()
    assert t.shape == ()
    assert t.data.size == 0
    assert t.grad.size == 0
    assert repr(t) == "Tensor(not initialized)"


@pytest.mark.parametrize("shape, valid", [((2, 3), True), ((0, 3), False), ((), False), ((4, 1, 0), False)])
def test_validate_shape(shape, valid):
    t = Tensor()
    t.shape = shape
    assert t.validate_shape() is valid


@pytest.mark.parametrize("shape", [(0, 3), ()])
def test_size_and_resize_reject_invalid_shape(shape):
    t = Tensor()
    t.shape = shape
    with pytest.raises(InvalidShapeError):
        t.size()
    with pytest.raises(InvalidShapeError):
        t.resize()
    with pytest.raises(InvalidShapeError):
        t.resize_grad()


@pytest.mark.parametrize("shape", [(6,), (2, 3), (2, 3, 4), (1, 2, 1, 3, 2)])
def test_resize_allocates_product_of_shape(shape):
    t = Tensor()
    t.shape = shape
    t.resize()
    assert t.data.size == int(np.prod(shape))
    assert t.data.dtype == np.float32
    assert t.grad.size == 0, "resize must not size the gradient buffer"

    t.resize_grad()
    assert t.grad.size == int(np.prod(shape))


def test_resize_preserves_overlap():
    t = Tensor([1, 2, 3, 4, 5, 6])
    t.shape = (2, 2)
    t.resize()
    assert_close(t.data, np.array([1, 2, 3, 4], dtype=np.float32))

    t.shape = (2, 3)
    t.resize()
    assert t.data.size == 6
    assert_close(t.data[:4], np.array([1, 2, 3, 4], dtype=np.float32))


def test_resize_keeps_buffer_when_size_matches():
    t = Tensor([[1, 2, 3], [4, 5, 6]])
    buf = t.data
    t.shape = (3, 2)
    t.resize()
    assert t.data is buf


def test_zero_grad_clears_existing_grad(rng):
    t = Tensor()
    t.shape = (2, 3)
    t.resize()
    t.resize_grad()
    t.grad[:] = rng.normal(size=6)

    t.zero_grad()
    assert_close(t.grad, np.zeros(6, dtype=np.float32))


def test_zero_grad_on_unsized_grad_is_noop():
    t = Tensor([1.0, 2.0])
    t.zero_grad()
    assert t.grad.size == 0


def test_data_assignment_is_flattened_float32():
    t = Tensor()
    t.shape = (2, 2)
    t.data = [[0.5, 1], [2, 3]]
    assert t.data.dtype == np.float32
    assert t.data.shape == (4,)
    assert_close(t.view(), np.array([[0.5, 1], [2, 3]], dtype=np.float32))


def test_construction_infers_shape_and_copies(rng):
    x = rng.normal(size=(2, 3, 4)).astype(np.float32)
    t = Tensor(x)
    assert t.shape == (2, 3, 4)
    assert t.ndim == 3
    assert t.size() == 24

    x[0, 0, 0] = 100.0
    assert t.view()[0, 0, 0] != 100.0


def test_view_shares_memory():
    t = Tensor.zeros(2, 3)
    t.view()[1, 2] = 7.0
    assert t.data[5] == 7.0


def test_view_rejects_mismatched_buffer():
    t = Tensor([1.0, 2.0, 3.0], shape=(2, 2))
    with pytest.raises(ShapeMismatchError):
        t.view()


def test_grad_view_requires_populated_grad():
    t = Tensor.zeros(2, 2)
    with pytest.raises(IllegalStateError):
        t.grad_view()
    t.resize_grad()
    assert t.grad_view().shape == (2, 2)


def test_repr_is_bounded_preview():
    t = Tensor(np.arange(8, dtype=np.float32).reshape(2, 4))
    t.resize_grad()
    text = repr(t)
    assert text.startswith("Tensor(shape=[2, 4], data=[0, 1, 2, 3, 4, ...]")
    assert "grad=[0, 0, 0, 0, 0, ...]" in text

    empty = Tensor()
    empty.shape = (3,)
    assert repr(empty) == "Tensor(shape=[3], data=[no data])"


def test_uniform_respects_bounds_and_seed():
    manual_seed(123)
    a = Tensor.uniform(50, 4, low=-0.1, high=0.1)
    manual_seed(123)
    b = Tensor.uniform(50, 4, low=-0.1, high=0.1)

    assert a.shape == (50, 4)
    assert np.all(a.data >= -0.1) and np.all(a.data <= 0.1)
    assert_close(a.data, b.data, atol=0, rtol=0)
