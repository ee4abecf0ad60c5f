import psutil
import torch
from time import perf_counter
from contextlib import contextmanager
from dataclasses import dataclass, field

"""
Measure the wall-clock time and memory usage of a block of code.
"""

@dataclass
class Timing:
    description: str
    seconds: float = float('nan')
    memory_before: dict = field(default_factory=dict)
    memory_after: dict = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> float:
        return self.seconds * 1e3

def memory_usage() -> dict:
    """RAM, and GPU memory if there is a GPU, in GB."""
    ram = psutil.virtual_memory()
    usage = {
        'ram used ': ram.used / 1e9,
        'ram avail': ram.available / 1e9,
    }
    if torch.cuda.is_available():
        usage.update({
            'gpu alloc': torch.cuda.memory_allocated() / 1e9,
            'gpu reser': torch.cuda.memory_reserved() / 1e9
        })
    return usage

@contextmanager
def profiler(description: str, length: int = 80, pad_char: str = ':', verbose: bool = True):
    """
    Yields a Timing that is filled in when the block exits, also when it raises.
    With verbose=False nothing is printed, the Timing is still recorded.
    """
    timing = Timing(description)
    timing.memory_before = memory_usage()
    if verbose:
        print('\n' + description.center(length, pad_char))
        # print all the memory usage on the same line with consistent width
        print(' | '.join(f'{k}: {v:6.1f}' for k, v in timing.memory_before.items()))

    start = perf_counter()
    try:
        yield timing
    finally:
        timing.seconds = perf_counter() - start
        timing.memory_after = memory_usage()
        if verbose:
            # memory usage DIFFERENCES, with a '+' or '-' sign
            print(' | '.join(f'{k}: {v - timing.memory_before[k]:+6.1f}' for k, v in timing.memory_after.items()))
            print(f'{timing.elapsed_ms:.2f} ms for {description}'.center(length, pad_char))
