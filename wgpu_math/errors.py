"""Exception taxonomy for wgpu_math.

Every error derives from ``WgpuMathError`` and from the builtin exception
that best describes it, so callers may catch either the library-specific
class or the usual ``ValueError``/``TypeError``/... family.
"""


class WgpuMathError(Exception):
    """Base class for all wgpu_math errors."""


class ShapeMismatchError(WgpuMathError, ValueError):
    """Operand shapes are incompatible, or a buffer does not match its shape."""


class UnsupportedTypeError(WgpuMathError, TypeError):
    """A dtype (or operand type) is not supported by the array or backend."""


class UseAfterDisposeError(WgpuMathError, RuntimeError):
    """An array was read or disposed after its data was already released."""


class TapeOrderViolationError(WgpuMathError, RuntimeError):
    """Tape nodes were consumed out of reverse-creation order."""


class IndexOutOfRangeError(WgpuMathError, IndexError):
    """An index (one-hot index, element location) is outside the valid range."""


class MissingVariableError(WgpuMathError, LookupError):
    """A required checkpoint variable is absent from the variable mapping."""

    def __init__(self, name, available=None):
        self.name = name
        self.available = sorted(available) if available is not None else []
        message = f"Checkpoint variable '{name}' not found"
        if self.available:
            message += f" (have: {', '.join(self.available)})"
        super().__init__(message)


class UndecodableIndexError(WgpuMathError, ValueError):
    """A sampled event index falls outside every known event range."""

    def __init__(self, index, event_size):
        self.index = index
        self.event_size = event_size
        super().__init__(
            f"Could not decode index {index}: valid range is [0, {event_size})"
        )
