#inference_config.py
"""
Settings of an inference run as a dataclass that reads and writes JSON.
The command line fills one from its flags, optionally on top of a --config file.
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union
from warnings import warn

from dataclasses_json import dataclass_json
import json

@dataclass_json
@dataclass
class InferenceConfig:
    """
    All settings of an inference run. Passed to the pipeline explicitly, there is no global state.
    batch_size:  number of samples to classify
    pool_size:   side of the square average pooling window
    chunk_size:  samples per forward pass. None runs the whole batch at once
    progress:    show a progress bar over the chunks
    verbose:     print profiler banners
    testdata:    .npz / .pt file with the input 'x' and reference scores 'y'
    mnist_root:  directory of the torchvision MNIST test set, used when testdata is not given
    model:       .npz / .pt file with the weights 'conv1', 'conv2', 'fc1', 'fc2'
    num_threads: torch intra-op threads for the CLI. None keeps the torch default
    """
    batch_size: int = 10000
    pool_size: int = 2
    chunk_size: Optional[int] = None
    progress: bool = False
    verbose: bool = True
    testdata: Optional[str] = None
    mnist_root: Optional[str] = None
    model: Optional[str] = None
    num_threads: Optional[int] = None

    def __post_init__(self):
        for name in ('batch_size', 'pool_size', 'chunk_size', 'num_threads'):
            value = getattr(self, name)
            if value is None and name in ('chunk_size', 'num_threads'):
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"Config error: '{name}' is of type {type(value)}, expected int.")
            if value <= 0:
                raise ValueError(f"Config error: '{name}' is {value}, expected a positive int.")
        if self.chunk_size is not None and self.chunk_size > self.batch_size:
            warn(f"chunk_size {self.chunk_size} is larger than batch_size {self.batch_size}. Running the batch in one chunk.")

    @property
    def effective_chunk_size(self) -> int:
        if self.chunk_size is None:
            return self.batch_size
        return min(self.chunk_size, self.batch_size)

    @classmethod
    def from_file(cls, path: Union[str, Path], **overrides) -> 'InferenceConfig':
        """Read a JSON config file. Keyword arguments that are not None take precedence over the file."""
        with open(path) as file:
            settings = json.load(file)
        settings.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(settings)

    def __str__(self):
        return json.dumps(asdict(self), indent=4)
