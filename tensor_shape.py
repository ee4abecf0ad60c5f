#tensor_shape.py
"""
Shapes of every tensor in the network.
Shape is a validated, immutable tuple of extents. The helper functions derive the output shape of each kernel,
and NetworkDims describes the fixed network and chains those helpers into the shape of every buffer in a forward pass.
All layouts are row-major, batch first, channel last: (N, H, W, C) for images and (N, F) for matrices.
"""

from dataclasses import dataclass
from typing import Dict, Iterable
from warnings import warn

import numpy as np
import pandas as pd

from errors import ShapeError

FLOAT_BYTES = np.dtype(np.float32).itemsize


class Shape(tuple):
    """
    The extents of a dense tensor, one per axis.
    Construction rejects anything that is not a positive int, so a Shape that exists is always allocatable.
    """
    def __new__(cls, extents: Iterable[int]) -> 'Shape':
        extents = tuple(extents)
        if len(extents) == 0:
            raise ShapeError("Shape error: a shape needs at least one axis.")
        for axis, extent in enumerate(extents):
            # bool is an int subclass, but never a meaningful extent
            if isinstance(extent, bool) or not isinstance(extent, (int, np.integer)):
                raise TypeError(f"Shape error: extent {extent!r} of axis {axis} is of type {type(extent)}, expected int.")
            if extent <= 0:
                raise ShapeError(f"Shape error: extent of axis {axis} is {extent}, expected a positive int. Full shape: {extents}.")
        return super().__new__(cls, (int(extent) for extent in extents))

    @classmethod
    def of(cls, tensor) -> 'Shape':
        """Shape of a torch tensor or numpy array."""
        return cls(tensor.shape)

    @property
    def rank(self) -> int:
        return len(self)

    @property
    def numel(self) -> int:
        return int(np.prod(self, dtype=np.int64))

    @property
    def nbytes(self) -> int:
        """Size of a float32 buffer of this shape."""
        return self.numel * FLOAT_BYTES

    def expect_rank(self, rank: int, name: str = 'tensor') -> 'Shape':
        if self.rank != rank:
            raise ShapeError(f"Shape error: {name} has rank {self.rank} {tuple(self)}, expected rank {rank}.")
        return self

    def __repr__(self) -> str:
        return f"Shape{tuple(self)}"


def conv_output_shape(x: Shape, w: Shape) -> Shape:
    """
    Output of a valid (no padding), stride 1 convolution.
    x is (N, H, W, Cin) and w is (Fh, Fw, Cin, Cout). Returns (N, H-Fh+1, W-Fw+1, Cout).
    """
    n, h, width, c = Shape(x).expect_rank(4, 'convolution input')
    fh, fw, in_channels, out_channels = Shape(w).expect_rank(4, 'convolution filter')
    if fh > h or fw > width:
        raise ShapeError(f"Shape error: filter {fh}x{fw} is larger than the {h}x{width} input.")
    if c != in_channels:
        raise ShapeError(f"Shape error: input has {c} channels, filter expects {in_channels}.")
    return Shape((n, h - fh + 1, width - fw + 1, out_channels))


def pool_output_shape(x: Shape, pool_size: int, warn_truncation: bool = True) -> Shape:
    """
    Output of non-overlapping average pooling with a square window.
    x is (N, H, W, C). Returns (N, H // k, W // k, C).
    Trailing rows and columns that do not fill a whole window are dropped, with a warning unless warn_truncation is False.
    """
    n, h, w, c = Shape(x).expect_rank(4, 'pooling input')
    if isinstance(pool_size, bool) or not isinstance(pool_size, (int, np.integer)):
        raise TypeError(f"Pooling error: 'pool_size' is of type {type(pool_size)}, expected int.")
    if pool_size <= 0:
        raise ShapeError(f"Shape error: pool size is {pool_size}, expected a positive int.")
    if pool_size > h or pool_size > w:
        raise ShapeError(f"Shape error: pool window {pool_size}x{pool_size} is larger than the {h}x{w} input.")
    if warn_truncation and (h % pool_size or w % pool_size):
        warn(f"Pool window {pool_size} does not divide the {h}x{w} input. Trailing rows and columns are dropped.")
    return Shape((n, h // pool_size, w // pool_size, c))


def flatten_shape(x: Shape) -> Shape:
    """(N, H, W, C) -> (N, H*W*C). Only relabels the axes, row-major order is kept."""
    n, h, w, c = Shape(x).expect_rank(4, 'flatten input')
    return Shape((n, h * w * c))


def dense_output_shape(x: Shape, w: Shape) -> Shape:
    """(N, K) @ (K, M) -> (N, M)"""
    n, k = Shape(x).expect_rank(2, 'dense input')
    in_features, out_features = Shape(w).expect_rank(2, 'dense weight')
    if k != in_features:
        raise ShapeError(f"Shape error: dense input has {k} features, weight expects {in_features}.")
    return Shape((n, out_features))


@dataclass(frozen=True)
class NetworkDims:
    """
    The fixed network: two conv + pool stages and two fully connected layers, for 28x28 grayscale digits.
    Filters are laid out (filter_h, filter_w, in_channels, out_channels), dense weights (in_features, out_features).
    """
    rows: int = 28
    cols: int = 28
    channels: int = 1
    digits: int = 10
    conv1: tuple = (5, 5, 1, 32)
    conv2: tuple = (5, 5, 32, 64)
    fc1: tuple = (1024, 128)
    fc2: tuple = (128, 10)
    pool_size: int = 2

    def input_shape(self, batch_size: int) -> Shape:
        return Shape((batch_size, self.rows, self.cols, self.channels))

    def reference_shape(self, batch_size: int) -> Shape:
        return Shape((batch_size, self.digits))

    def weight_shapes(self) -> Dict[str, Shape]:
        return {
            'conv1': Shape(self.conv1),
            'conv2': Shape(self.conv2),
            'fc1': Shape(self.fc1),
            'fc2': Shape(self.fc2),
        }

    def stage_shapes(self, batch_size: int) -> Dict[str, Shape]:
        """
        The shape of every buffer of a forward pass over `batch_size` samples, in pipeline order.
        Derives all of them up front, so a bad configuration fails before anything is allocated.
        """
        weights = self.weight_shapes()
        shapes = {'input': self.input_shape(batch_size)}
        shapes['conv1'] = conv_output_shape(shapes['input'], weights['conv1'])
        shapes['pool1'] = pool_output_shape(shapes['conv1'], self.pool_size)
        shapes['conv2'] = conv_output_shape(shapes['pool1'], weights['conv2'])
        shapes['pool2'] = pool_output_shape(shapes['conv2'], self.pool_size)
        shapes['flatten'] = flatten_shape(shapes['pool2'])
        shapes['fc1'] = dense_output_shape(shapes['flatten'], weights['fc1'])
        shapes['fc2'] = dense_output_shape(shapes['fc1'], weights['fc2'])
        if shapes['fc2'][1] != self.digits:
            raise ShapeError(f"Shape error: the last layer produces {shapes['fc2'][1]} scores, expected {self.digits} classes.")
        shapes['labels'] = Shape((batch_size,))
        return shapes

    def stage_table(self, batch_size: int) -> pd.DataFrame:
        """Footprint of each intermediate buffer, for reporting."""
        shapes = self.stage_shapes(batch_size)
        return pd.DataFrame({
            'Stage': list(shapes.keys()),
            'Shape': [tuple(shape) for shape in shapes.values()],
            'Elements': [shape.numel for shape in shapes.values()],
            'Bytes': [shape.nbytes for shape in shapes.values()],
        }).set_index('Stage')
