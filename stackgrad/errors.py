class StackgradError(Exception):
    """Base class for all errors raised by stackgrad."""


class InvalidShapeError(StackgradError, ValueError):
    """Raised when a tensor's shape is empty or has a zero-length dimension."""


class ShapeMismatchError(StackgradError, ValueError):
    """
    Raised when a tensor's rank or dimensions disagree with what a layer
    expects, or when two tensors that must align do not.
    """


class SizeMismatchError(StackgradError, ValueError):
    """Raised when two tensors reduced together hold different element counts."""


class IllegalStateError(StackgradError, RuntimeError):
    """
    Raised when an operation is called in a state where it is not valid,
    e.g. ``backward`` without a preceding ``forward``.
    """
