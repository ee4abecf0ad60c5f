#mnist_data.py
"""
Load the test inputs and reference scores.
    - load_testdata: 'x' (N, 28, 28, 1) and 'y' (N, 10) from an .npz or torch file
    - load_mnist: the torchvision MNIST test split, converted into the same layout with one-hot reference scores
Both return float32, C-contiguous cpu tensors holding exactly batch_size samples.
"""

from pathlib import Path
from typing import Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F
from torchvision import datasets

from errors import DataFormatError
from model_weights import read_arrays, as_float32
from tensor_shape import NetworkDims, Shape

# standard MNIST normalization
MNIST_MEAN, MNIST_STD = 0.1307, 0.3081

def _take_batch(x: torch.Tensor, y: torch.Tensor, batch_size: int, dims: NetworkDims, source) -> Tuple[torch.Tensor, torch.Tensor]:
    if x.shape[0] < batch_size or y.shape[0] < batch_size:
        raise DataFormatError(f"Format error: {source} holds {x.shape[0]} inputs and {y.shape[0]} references, {batch_size} requested.")
    x, y = x[:batch_size].contiguous(), y[:batch_size].contiguous()
    for name, tensor, expected in (('x', x, dims.input_shape(batch_size)), ('y', y, dims.reference_shape(batch_size))):
        if Shape.of(tensor) != expected:
            raise DataFormatError(f"Format error: '{name}' in {source} has shape {tuple(tensor.shape)}, expected {tuple(expected)}.")
    return x, y

def load_testdata(path: Union[str, Path], batch_size: int, dims: NetworkDims = None) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Read the inputs 'x' and reference scores 'y' and keep the first batch_size samples.
    Raises DataFormatError for missing arrays, wrong shapes, or too few samples.
    """
    dims = dims or NetworkDims()
    path = Path(path)
    arrays = read_arrays(path)
    missing = [key for key in ('x', 'y') if key not in arrays]
    if missing:
        raise DataFormatError(f"Format error: {path} is missing arrays {missing}, found {sorted(arrays)}.")
    x, y = as_float32(arrays['x'], 'x'), as_float32(arrays['y'], 'y')
    if x.dim() == 0 or y.dim() == 0:
        raise DataFormatError(f"Format error: 'x' and 'y' in {path} must have a batch axis.")
    return _take_batch(x, y, batch_size, dims, path)

def save_testdata(path: Union[str, Path], x: torch.Tensor, y: torch.Tensor) -> None:
    path = Path(path)
    if path.suffix == '.npz':
        np.savez(path, x=x.cpu().numpy(), y=y.cpu().numpy())
    elif path.suffix in ('.pt', '.pth'):
        torch.save({'x': x, 'y': y}, path)
    else:
        raise DataFormatError(f"Format error: unsupported file type '{path.suffix}' for {path}, expected .npz, .pt or .pth.")

def load_mnist(root: Union[str, Path], batch_size: int, download: bool = True, normalize: bool = False) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    The first batch_size digits of the MNIST test set.
    Pixels are scaled to [0, 1], and optionally standardised with the usual MNIST mean and std.
    The reference scores are the one-hot encoded targets.
    """
    dims = NetworkDims()
    dataset = datasets.MNIST(root=str(root), train=False, download=download)

    # (N, 28, 28) uint8 -> (N, 28, 28, 1) float32
    x = dataset.data.to(torch.float32).div_(255.).unsqueeze(-1)
    if normalize:
        x = (x - MNIST_MEAN) / MNIST_STD
    y = F.one_hot(dataset.targets.long(), num_classes=dims.digits).to(torch.float32)
    return _take_batch(x, y, batch_size, dims, f'MNIST test set in {root}')
