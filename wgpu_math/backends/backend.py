"""Interface every math backend implements.

A backend executes primitive kernels on NDArrays and returns new NDArrays.
It knows nothing about gradients, tapes or scopes; ``NDArrayMath`` layers
those on top so that any backend implementing this contract can be swapped
in without touching the composite ops.
"""

import abc

from wgpu_math.errors import ShapeMismatchError, UnsupportedTypeError

BINARY_OPS = ("add", "subtract", "multiply", "divide", "maximum")
UNARY_OPS = ("neg", "exp", "log", "sqrt", "abs", "floor", "relu", "step", "sigmoid", "tanh")


def broadcast_shapes(a_shape, b_shape):
    """Numpy broadcasting of two shapes; raises ``ShapeMismatchError``."""
    a_shape = tuple(a_shape)
    b_shape = tuple(b_shape)
    rank = max(len(a_shape), len(b_shape))
    a_padded = (1,) * (rank - len(a_shape)) + a_shape
    b_padded = (1,) * (rank - len(b_shape)) + b_shape
    out = []
    for a_dim, b_dim in zip(a_padded, b_padded):
        if a_dim == b_dim or b_dim == 1:
            out.append(a_dim)
        elif a_dim == 1:
            out.append(b_dim)
        else:
            raise ShapeMismatchError(
                f"Operands could not be broadcast together: {a_shape} and {b_shape}"
            )
    return tuple(out)


def binary_result_dtype(op, a, b):
    if op == "divide":
        return "float32"
    if a.dtype == "int32" and b.dtype == "int32":
        return "int32"
    return "float32"


def check_float(x, op):
    if x.dtype != "float32":
        raise UnsupportedTypeError(f"{op} requires float32 input, got {x.dtype}")


def normalize_axis(axis, rank):
    if not -rank <= axis < rank:
        raise ShapeMismatchError(f"Axis {axis} out of range for rank {rank}")
    return axis % rank


def axis_split(shape, axis):
    """View ``shape`` as ``[outer, shape[axis], inner]``."""
    outer = 1
    for s in shape[:axis]:
        outer *= s
    inner = 1
    for s in shape[axis + 1:]:
        inner *= s
    return outer, shape[axis], inner


def reduced_shape(shape, axis):
    if axis is None:
        return ()
    return tuple(s for i, s in enumerate(shape) if i != axis)


def matmul_shape(a_shape, b_shape, transpose_a, transpose_b):
    if len(a_shape) != 2 or len(b_shape) != 2:
        raise ShapeMismatchError(
            f"matmul expects two matrices, got shapes {a_shape} and {b_shape}"
        )
    m, k_a = (a_shape[1], a_shape[0]) if transpose_a else a_shape
    k_b, n = (b_shape[1], b_shape[0]) if transpose_b else b_shape
    if k_a != k_b:
        raise ShapeMismatchError(
            f"Inner dimensions of matmul must match: {a_shape} and {b_shape} "
            f"(transpose_a={transpose_a}, transpose_b={transpose_b})"
        )
    return m, k_a, n


def concat_shape(a_shape, b_shape, axis):
    if len(a_shape) != len(b_shape):
        raise ShapeMismatchError(
            f"concat requires equal ranks, got {a_shape} and {b_shape}"
        )
    for i, (a_dim, b_dim) in enumerate(zip(a_shape, b_shape)):
        if i != axis and a_dim != b_dim:
            raise ShapeMismatchError(
                f"concat along axis {axis} requires matching dims elsewhere, "
                f"got {a_shape} and {b_shape}"
            )
    out = list(a_shape)
    out[axis] = a_shape[axis] + b_shape[axis]
    return tuple(out)


def check_slice(shape, axis, begin, size):
    if begin < 0 or size < 0 or begin + size > shape[axis]:
        raise ShapeMismatchError(
            f"Slice [{begin}, {begin + size}) out of bounds for axis {axis} of {shape}"
        )


def check_pool_input(x, conv_info):
    if tuple(x.shape) != conv_info.in_shape:
        raise ShapeMismatchError(
            f"Input shape {x.shape} does not match window geometry {conv_info.in_shape}"
        )


def check_pool_grad(dy, conv_info):
    if tuple(dy.shape) != conv_info.out_shape:
        raise ShapeMismatchError(
            f"Gradient shape {dy.shape} does not match window output {conv_info.out_shape}"
        )


class MathBackend(abc.ABC):
    """Abstract executor of primitive tensor kernels."""

    name = "abstract"

    # ---- Memory ----

    @abc.abstractmethod
    def zeros(self, shape, dtype="float32"):
        """Allocate a zero-filled array resident where this backend computes."""

    @abc.abstractmethod
    def read(self, x):
        """Blocking read of ``x`` as a numpy array."""

    async def read_async(self, x):
        """Read ``x`` as a numpy array; suspends before any device transfer."""
        return await x.data()

    def dispose(self):
        """Release backend-wide resources."""

    # ---- Elementwise ----

    @abc.abstractmethod
    def binary(self, op, a, b):
        """Broadcasting elementwise ``op`` in ``BINARY_OPS``."""

    @abc.abstractmethod
    def unary(self, op, x):
        """Elementwise ``op`` in ``UNARY_OPS``."""

    @abc.abstractmethod
    def clip(self, x, min_value, max_value):
        """Clamp each element into ``[min_value, max_value]``."""

    @abc.abstractmethod
    def clip_backprop(self, dy, x, min_value, max_value):
        """Pass ``dy`` where ``min_value <= x <= max_value``, zero elsewhere."""

    def add(self, a, b):
        return self.binary("add", a, b)

    def subtract(self, a, b):
        return self.binary("subtract", a, b)

    def multiply(self, a, b):
        return self.binary("multiply", a, b)

    def divide(self, a, b):
        return self.binary("divide", a, b)

    # ---- Reductions ----

    @abc.abstractmethod
    def sum(self, x, axis=None):
        """Sum over ``axis`` (an int) or over every element when ``None``."""

    @abc.abstractmethod
    def max(self, x, axis=None):
        """Maximum over ``axis`` or over every element when ``None``."""

    @abc.abstractmethod
    def argmax(self, x):
        """Index of the first maximum along the last axis (int32)."""

    # ---- Shape ----

    @abc.abstractmethod
    def concat(self, a, b, axis):
        """Join two arrays of equal rank along ``axis``."""

    @abc.abstractmethod
    def slice_axis(self, x, axis, begin, size):
        """Take ``size`` entries starting at ``begin`` along ``axis``."""

    @abc.abstractmethod
    def pad_axis(self, dy, axis, begin, full_size):
        """Inverse of ``slice_axis``: embed ``dy`` in zeros of ``full_size``."""

    @abc.abstractmethod
    def transpose_2d(self, x):
        """Swap the two axes of a matrix."""

    @abc.abstractmethod
    def one_hot(self, indices, depth, on_value=1.0, off_value=0.0):
        """``[n]`` indices to ``[n, depth]`` rows of ``off_value`` with one ``on_value``."""

    # ---- Linear algebra ----

    @abc.abstractmethod
    def matmul(self, a, b, transpose_a=False, transpose_b=False):
        """Matrix product of two 2-D arrays, optionally transposing either."""

    # ---- NN ----

    @abc.abstractmethod
    def softmax(self, x):
        """Max-subtracted softmax over the last axis."""

    @abc.abstractmethod
    def multinomial(self, probabilities, num_samples, seed=None):
        """Draw ``num_samples`` indices per row of a ``[batch, k]`` array."""

    @abc.abstractmethod
    def max_pool(self, x, conv_info):
        """Max over each window of an NHWC array."""

    @abc.abstractmethod
    def avg_pool(self, x, conv_info):
        """Mean over the valid cells of each window."""

    @abc.abstractmethod
    def max_pool_backprop(self, dy, x, conv_info):
        """Route each window's gradient to the first argmax cell of ``x``."""

    @abc.abstractmethod
    def avg_pool_backprop(self, dy, x, conv_info):
        """Spread each window's gradient uniformly over its valid cells."""

    @abc.abstractmethod
    def max_pool_gather(self, g, x, conv_info):
        """Pick ``g`` at the argmax cell of ``x`` in each window."""

    @abc.abstractmethod
    def conv2d(self, x, filters, bias, conv_info):
        """2-D convolution (cross-correlation), NHWC input, HWIO filter."""

    @abc.abstractmethod
    def conv2d_der_input(self, dy, filters, conv_info):
        """Gradient of ``conv2d`` with respect to its input."""

    @abc.abstractmethod
    def conv2d_der_filter(self, x, dy, conv_info):
        """Gradient of ``conv2d`` with respect to its filter."""
