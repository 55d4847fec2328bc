import numpy as np
import torch

from stackgrad.tensor import Tensor

ATOL = 1e-5
RTOL = 1e-4

def tdata(t: Tensor):
    return t.view()

def tgrad(t: Tensor):
    return t.grad_view()

def make_tensor(x_np: np.ndarray) -> Tensor:
    return Tensor(np.asarray(x_np, dtype=np.float32))

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def seed_grad(t: Tensor, g_np: np.ndarray) -> Tensor:
    """Size ``t.grad`` and fill it with ``g_np`` (the upstream gradient)."""
    t.resize_grad()
    t.grad_view()[...] = np.asarray(g_np, dtype=np.float32)
    return t

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = np.asarray(a)
    b = np.asarray(b)
    assert a.shape == b.shape, f"shape {a.shape} != {b.shape}"
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def assert_grad_close(t: Tensor, tt: torch.Tensor, atol=ATOL, rtol=RTOL):
    assert t.grad.size, "Your Tensor.grad is empty"
    assert tt.grad is not None, "Torch grad is None"
    assert_close(tgrad(t), tt.grad.detach().cpu().numpy(), atol=atol, rtol=rtol)
