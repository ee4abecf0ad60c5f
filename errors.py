#errors.py
"""
Exceptions raised by the inference pipeline and its loaders.
Everything derives from InferenceError, so callers can catch the whole family at once.
"""

class InferenceError(Exception):
    """Base class for all errors raised by this package."""


class ShapeError(InferenceError, ValueError):
    """
    A shape precondition was violated: non-positive extent, filter larger than input,
    mismatched channels or features, or a buffer whose shape, dtype or layout is not what the kernel expects.
    """


class BufferAllocationError(InferenceError, MemoryError):
    """An intermediate buffer could not be allocated. The whole batch is aborted."""


class DataFormatError(InferenceError, ValueError):
    """A data or model file is missing arrays, or they have the wrong shape."""
