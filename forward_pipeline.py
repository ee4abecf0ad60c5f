#forward_pipeline.py
"""
Forward pass of the CNN over a batch of digits.
    conv1 -> relu -> pool -> conv2 -> relu -> pool -> reshape -> fc1 -> relu -> fc2 -> argmax

The pipeline owns every intermediate buffer. Each one is allocated zero-initialised right before the kernel that fills it,
and dropped as soon as the next kernel has read it. All shapes are derived before the first allocation,
so an inconsistent network or input fails with ShapeError without doing any work.

Samples are independent, so the batch can be cut into chunks (InferenceConfig.chunk_size) to bound the buffer memory.
The labels do not depend on the chunking.
"""

from dataclasses import replace
from typing import Optional

import torch
from tqdm import tqdm

from conv_kernels import argmax, average_pool, conv_forward_valid, fully_forward, relu_
from errors import BufferAllocationError, ShapeError
from inference_config import InferenceConfig
from model_weights import ModelWeights
from tensor_shape import NetworkDims, Shape

def _allocate(shape: Shape, name: str, device: torch.device, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """Zero-initialised buffer. Allocation failures abort the batch."""
    try:
        return torch.zeros(tuple(shape), dtype=dtype, device=device)
    except (RuntimeError, MemoryError) as e:
        raise BufferAllocationError(f"Allocation error: could not allocate the {name} buffer {tuple(shape)} ({shape.nbytes / 1e6:.1f} MB).") from e


class ForwardPipeline:
    """
    Runs inference with fixed weights.
    Usage:
        pipeline = ForwardPipeline(ModelWeights.load('model.npz'), InferenceConfig(batch_size=100))
        labels = pipeline(x)   # x: (100, 28, 28, 1) float32 -> labels: (100,) int32
    """
    def __init__(self, weights: ModelWeights, config: Optional[InferenceConfig] = None) -> None:
        if not isinstance(weights, ModelWeights):
            raise TypeError(f"Pipeline error: 'weights' is of type {type(weights)}, expected ModelWeights.")
        if config is None:
            config = InferenceConfig()
        if not isinstance(config, InferenceConfig):
            raise TypeError(f"Pipeline error: 'config' is of type {type(config)}, expected InferenceConfig.")
        self.weights = weights
        self.config = config
        self.dims: NetworkDims = replace(weights.dims, pool_size=config.pool_size)

        # fail on an inconsistent network now, rather than on the first batch
        self.shapes = self.dims.stage_shapes(config.batch_size)

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        return self.forward(x)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Classify a batch of images.
        x: (batch_size, 28, 28, 1) float32, C-contiguous. Read only.
        Returns the predicted digit of every image, an int32 vector of length batch_size.
        """
        self._validate_input(x)
        batch_size = self.config.batch_size
        chunk_size = self.config.effective_chunk_size

        labels = _allocate(self.shapes['labels'], 'labels', x.device, dtype=torch.int32)
        chunks = range(0, batch_size, chunk_size)
        for start in tqdm(chunks, desc='Forward pass', unit='chunk', disable=not self.config.progress):
            stop = min(start + chunk_size, batch_size)
            self.forward_chunk(x[start:stop], out=labels[start:stop])
        return labels

    def forward_chunk(self, x: torch.Tensor, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """
        One pass of the fixed kernel sequence over all samples of x.
        Writes the labels into `out` when given.
        """
        w = self.weights
        pool_size = self.dims.pool_size
        # stage shapes were derived once in __init__, only the batch axis differs per chunk
        n = x.shape[0]
        shapes = {name: Shape((n,) + tuple(shape[1:])) for name, shape in self.shapes.items()}
        device = x.device

        # conv layer
        a = _allocate(shapes['conv1'], 'conv1', device)
        conv_forward_valid(x, w.conv1, a)
        # relu layer
        relu_(a)

        # average pooling
        b = _allocate(shapes['pool1'], 'pool1', device)
        average_pool(a, pool_size, b)
        del a

        # conv layer
        c = _allocate(shapes['conv2'], 'conv2', device)
        conv_forward_valid(b, w.conv2, c)
        del b
        # relu
        relu_(c)

        # average pooling
        d = _allocate(shapes['pool2'], 'pool2', device)
        average_pool(c, pool_size, d)
        del c

        # reshape: a view of the same memory, channel is already the fastest axis
        d2 = d.view(tuple(shapes['flatten']))

        # matrix multiplication
        e = _allocate(shapes['fc1'], 'fc1', device)
        fully_forward(d2, w.fc1, e)
        del d, d2
        # relu
        relu_(e)

        # matrix multiplication
        f = _allocate(shapes['fc2'], 'fc2', device)
        fully_forward(e, w.fc2, f)
        del e

        labels = argmax(f, out)
        del f
        return labels

    def _validate_input(self, x: torch.Tensor) -> None:
        if not isinstance(x, torch.Tensor):
            raise TypeError(f"Input error: 'x' is of type {type(x)}, expected torch.Tensor.")
        if x.dtype != torch.float32:
            raise ShapeError(f"Input error: 'x' has dtype {x.dtype}, expected torch.float32.")
        if not x.is_contiguous():
            raise ShapeError("Input error: 'x' is not C-contiguous.")
        if Shape.of(x) != self.shapes['input']:
            raise ShapeError(f"Input error: 'x' has shape {tuple(x.shape)}, expected {tuple(self.shapes['input'])}.")


def forward_operation(x: torch.Tensor, weights: ModelWeights, config: Optional[InferenceConfig] = None) -> torch.Tensor:
    """
    Predicted labels for the batch x. The batch size is taken from x when no config is given.
    """
    if config is None:
        if not isinstance(x, torch.Tensor):
            raise TypeError(f"Input error: 'x' is of type {type(x)}, expected torch.Tensor.")
        config = InferenceConfig(batch_size=int(x.shape[0]), verbose=False)
    return ForwardPipeline(weights, config)(x)
