#conv_kernels.py
"""
Numeric kernels of the forward pass.
Every kernel works on float32, C-contiguous torch tensors laid out batch first and channel last.
Kernels that produce a new tensor write into a buffer handed in by the caller, they never allocate their outputs.
Shapes are checked before any arithmetic happens, a mismatch raises ShapeError.
"""

import torch

from errors import ShapeError
from tensor_shape import Shape, conv_output_shape, pool_output_shape, dense_output_shape

def _check_layout(t: torch.Tensor, name: str, dtype: torch.dtype = torch.float32) -> None:
    if not isinstance(t, torch.Tensor):
        raise TypeError(f"Kernel error: '{name}' is of type {type(t)}, expected torch.Tensor.")
    if t.dtype != dtype:
        raise ShapeError(f"Kernel error: '{name}' has dtype {t.dtype}, expected {dtype}.")
    if not t.is_contiguous():
        raise ShapeError(f"Kernel error: '{name}' is not C-contiguous.")

def _check_tensor(t: torch.Tensor, name: str, dtype: torch.dtype = torch.float32) -> Shape:
    _check_layout(t, name, dtype)
    return Shape.of(t)

def _check_output(y: torch.Tensor, expected: Shape, name: str, dtype: torch.dtype = torch.float32) -> None:
    shape = _check_tensor(y, name, dtype)
    if shape != expected:
        raise ShapeError(f"Kernel error: '{name}' has shape {tuple(shape)}, expected {tuple(expected)}.")

@torch.no_grad
def conv_forward_valid(x: torch.Tensor, w: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    """
    Valid (no padding), stride 1, multi-channel convolution without bias.
        y[n,h,w,m] += sum_{p,q,c} x[n, h+p, w+q, c] * w[p,q,c,m]
    x: (N, H, W, Cin), w: (Fh, Fw, Cin, Cout), y: (N, H-Fh+1, W-Fw+1, Cout).
    y must be zero-initialised, the kernel only accumulates into it.
    One filter tap (p, q) at a time: the shifted input window times the (Cin, Cout) slice of the filter.
    """
    out_shape = conv_output_shape(_check_tensor(x, 'x'), _check_tensor(w, 'w'))
    _check_output(y, out_shape, 'y')

    filter_h, filter_w = w.shape[0], w.shape[1]
    _, out_h, out_w, _ = out_shape
    for p in range(filter_h):
        for q in range(filter_w):
            window = x[:, p:p + out_h, q:q + out_w, :]
            y.add_(torch.matmul(window, w[p, q]))
    return y

@torch.no_grad
def relu_(x: torch.Tensor) -> torch.Tensor:
    """
    Rectified linear unit, in place, for a tensor of any rank, scalars included.
    Only values strictly below zero are replaced, so -0.0 and NaN pass through unchanged.
    """
    _check_layout(x, 'x')
    return x.masked_fill_(x < 0, 0.)

@torch.no_grad
def average_pool(x: torch.Tensor, pool_size: int, y: torch.Tensor) -> torch.Tensor:
    """
    Non-overlapping average pooling over a pool_size x pool_size window.
        y[n,h,w,m] += sum_{p,q} x[n, k*h+p, k*w+q, m] / k^2
    x: (N, H, W, C), y: (N, H//k, W//k, C), zero-initialised.
    Each element is divided by k^2 before it is added, and windows are summed in (p, q) order.
    Trailing rows and columns that do not fill a window are ignored silently, shape derivation is where that is reported.
    """
    out_shape = pool_output_shape(_check_tensor(x, 'x'), pool_size, warn_truncation=False)
    _check_output(y, out_shape, 'y')

    _, out_h, out_w, _ = out_shape
    divisor = float(pool_size * pool_size)
    for p in range(pool_size):
        for q in range(pool_size):
            window = x[:, p:p + pool_size * out_h:pool_size, q:q + pool_size * out_w:pool_size, :]
            y.add_(window / divisor)
    return y

@torch.no_grad
def fully_forward(x: torch.Tensor, w: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    """
    Dense layer without bias: y = x @ w.
    x: (N, K), w: (K, M), y: (N, M). y is overwritten.
    """
    out_shape = dense_output_shape(_check_tensor(x, 'x'), _check_tensor(w, 'w'))
    _check_output(y, out_shape, 'y')
    return torch.matmul(x, w, out=y)

@torch.no_grad
def argmax(x: torch.Tensor, y: torch.Tensor = None) -> torch.Tensor:
    """
    Index of the largest score in every row of x (N, K), as an int32 vector of length N.
    Comparison is strictly greater, so on ties the first index wins. A NaN never replaces the running maximum.
    Writes into y when given, otherwise returns a new vector.
    """
    n, k = _check_tensor(x, 'x').expect_rank(2, 'scores')
    if y is None:
        y = torch.zeros(n, dtype=torch.int32, device=x.device)
    else:
        _check_output(y, Shape((n,)), 'y', dtype=torch.int32)
        y.zero_()

    max_value = x[:, 0].clone()
    for j in range(1, k):
        column = x[:, j]
        greater = column > max_value
        y.masked_fill_(greater, j)
        max_value = torch.where(greater, column, max_value)
    return y
