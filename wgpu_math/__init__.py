"""
wgpu_math: array math with reverse-mode autodiff on wgpu compute shaders.

Provides typed NDArrays whose data lives on the host (numpy) or on the GPU
(wgpu storage buffers), interchangeable CPU and WGSL backends, a tape of
differentiable kernel nodes and scopes that dispose intermediates.

Modules:
    ndarray       - Scalar / Array1D..Array4D handles with lazy upload/download
    backends      - MathBackend interface, numpy and wgpu implementations
    tape          - Kernel nodes and reverse-order gradient replay
    scope         - Deterministic disposal of intermediate arrays
    ndarray_math  - Differentiable ops (elementwise, matmul, softmax, pooling, conv, LSTM)
    checkpoint    - Named variable lookup
    performance_rnn - Real-time Performance RNN generation demo
"""

from wgpu_math.errors import (
    WgpuMathError,
    ShapeMismatchError,
    UnsupportedTypeError,
    UseAfterDisposeError,
    TapeOrderViolationError,
    IndexOutOfRangeError,
    MissingVariableError,
    UndecodableIndexError,
)

from wgpu_math.ndarray import (
    NDArray, Scalar, Array1D, Array2D, Array3D, Array4D,
    DeviceStorage,
)

from wgpu_math.tape import Tape, KernelNode, KernelInputConfig, NodeState
from wgpu_math.scope import Scope

from wgpu_math.ndarray_math import NDArrayMath, NDArrayMathCPU, NDArrayMathGPU
from wgpu_math.config import MathConfig, create_math
from wgpu_math.checkpoint import get_variable, load_npz_variables

__all__ = [
    # Errors
    "WgpuMathError", "ShapeMismatchError", "UnsupportedTypeError",
    "UseAfterDisposeError", "TapeOrderViolationError", "IndexOutOfRangeError",
    "MissingVariableError", "UndecodableIndexError",
    # Arrays
    "NDArray", "Scalar", "Array1D", "Array2D", "Array3D", "Array4D",
    "DeviceStorage",
    # Tape & scopes
    "Tape", "KernelNode", "KernelInputConfig", "NodeState", "Scope",
    # Math
    "NDArrayMath", "NDArrayMathCPU", "NDArrayMathGPU",
    "MathConfig", "create_math",
    "get_variable", "load_npz_variables",
]
