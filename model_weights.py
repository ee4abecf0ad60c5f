#model_weights.py
"""
The four weight tensors of the network, validated once and then treated as read-only.
Storage formats:
    - .npz: numpy archive with arrays 'conv1', 'conv2', 'fc1', 'fc2'
    - .pt / .pth: torch file holding a dict with the same keys
Filters are stored (filter_h, filter_w, in_channels, out_channels), dense weights (in_features, out_features).
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Union

import numpy as np
import torch
from torch import nn

from errors import DataFormatError, ShapeError
from tensor_shape import NetworkDims, Shape

WEIGHT_NAMES = ('conv1', 'conv2', 'fc1', 'fc2')

def as_float32(array, name: str = 'array') -> torch.Tensor:
    """Convert a numpy array or torch tensor into a contiguous float32 cpu tensor."""
    if isinstance(array, np.ndarray):
        return torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32))
    if isinstance(array, torch.Tensor):
        return array.detach().to(device='cpu', dtype=torch.float32).contiguous()
    raise TypeError(f"Conversion error: '{name}' is of type {type(array)}, expected numpy.ndarray or torch.Tensor.")

def read_arrays(path: Path) -> Dict[str, object]:
    """Read a dict of arrays from an .npz or a torch file."""
    if not path.exists():
        raise FileNotFoundError(f"No such file: {path}")
    if path.suffix == '.npz':
        with np.load(path) as archive:
            return {key: archive[key] for key in archive.files}
    if path.suffix in ('.pt', '.pth'):
        content = torch.load(path, map_location='cpu', weights_only=True)
        if not isinstance(content, dict):
            raise DataFormatError(f"Format error: {path} holds a {type(content)}, expected a dict of tensors.")
        return content
    raise DataFormatError(f"Format error: unsupported file type '{path.suffix}' for {path}, expected .npz, .pt or .pth.")

@dataclass(frozen=True, eq=False)
class ModelWeights:
    """
    conv1 (5,5,1,32), conv2 (5,5,32,64), fc1 (1024,128), fc2 (128,10), all float32 and C-contiguous.
    The expected shapes come from `dims`, construction fails with ShapeError if any tensor does not match.
    """
    conv1: torch.Tensor
    conv2: torch.Tensor
    fc1: torch.Tensor
    fc2: torch.Tensor
    dims: NetworkDims = field(default_factory=NetworkDims, compare=False)

    def __post_init__(self) -> None:
        expected = self.dims.weight_shapes()
        for name in WEIGHT_NAMES:
            tensor = getattr(self, name)
            if not isinstance(tensor, torch.Tensor):
                raise TypeError(f"Weight error: '{name}' is of type {type(tensor)}, expected torch.Tensor.")
            if tensor.dtype != torch.float32:
                raise ShapeError(f"Weight error: '{name}' has dtype {tensor.dtype}, expected torch.float32.")
            if not tensor.is_contiguous():
                raise ShapeError(f"Weight error: '{name}' is not C-contiguous.")
            if Shape.of(tensor) != expected[name]:
                raise ShapeError(f"Weight error: '{name}' has shape {tuple(tensor.shape)}, expected {tuple(expected[name])}.")

    @classmethod
    def from_arrays(cls, arrays: Dict[str, object], dims: NetworkDims = None) -> 'ModelWeights':
        missing = [name for name in WEIGHT_NAMES if name not in arrays]
        if missing:
            raise DataFormatError(f"Format error: missing weight arrays {missing}, found {sorted(arrays)}.")
        tensors = {name: as_float32(arrays[name], name) for name in WEIGHT_NAMES}
        return cls(**tensors, dims=dims or NetworkDims())

    @classmethod
    def load(cls, path: Union[str, Path], dims: NetworkDims = None) -> 'ModelWeights':
        """
        Load the weights from an .npz or torch file.
        Malformed files raise DataFormatError, with the underlying shape error chained.
        """
        path = Path(path)
        arrays = read_arrays(path)
        try:
            return cls.from_arrays(arrays, dims)
        except ShapeError as e:
            raise DataFormatError(f"Format error: bad weights in {path}. {e}") from e

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        if path.suffix == '.npz':
            np.savez(path, **{name: tensor.numpy() for name, tensor in self.as_dict().items()})
        elif path.suffix in ('.pt', '.pth'):
            torch.save(self.as_dict(), path)
        else:
            raise DataFormatError(f"Format error: unsupported file type '{path.suffix}' for {path}, expected .npz, .pt or .pth.")

    def as_dict(self) -> Dict[str, torch.Tensor]:
        return {name: getattr(self, name) for name in WEIGHT_NAMES}

    @classmethod
    def from_module(cls, model: nn.Module, dims: NetworkDims = None) -> 'ModelWeights':
        """
        Take the weights of a torch model with layers conv1, conv2, fc1, fc2 (see SimpleCNN).
        torch stores filters (out, in, kh, kw) and linear weights (out, in), both are transposed into our layouts.
        The model must flatten its feature map in (H, W, C) order for fc1 to line up.
        """
        if not isinstance(model, nn.Module):
            raise TypeError(f"Model error: 'model' is of type {type(model)}, expected nn.Module.")
        with torch.no_grad():
            return cls(
                conv1=as_float32(model.conv1.weight.permute(2, 3, 1, 0)),
                conv2=as_float32(model.conv2.weight.permute(2, 3, 1, 0)),
                fc1=as_float32(model.fc1.weight.t()),
                fc2=as_float32(model.fc2.weight.t()),
                dims=dims or NetworkDims(),
            )
