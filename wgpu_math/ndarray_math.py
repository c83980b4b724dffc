"""
Differentiable math context on top of a ``MathBackend``.

``NDArrayMath`` runs each op on its backend, tracks the output in the
innermost open scope and, while a tape is recording, appends a kernel node
whose gradient function returns lazy thunks.

Example:
    math = NDArrayMathCPU()
    with math.scope() as scope:
        y = math.tanh(math.matmul(x, w))
        scope.keep(y)
    value, (dw,) = math.value_and_gradients(lambda: math.sum(math.tanh(math.matmul(x, w))), [w])
"""

import contextlib
import logging
import numbers
from typing import Callable, List, Optional, Sequence, Union

import numpy as np

from wgpu_math import rnn
from wgpu_math.backends.backend import MathBackend, normalize_axis
from wgpu_math.backends.backend_cpu import CPUBackend
from wgpu_math.conv_util import Conv2DInfo, compute_conv2d_info, compute_pool2d_info
from wgpu_math.errors import IndexOutOfRangeError, ShapeMismatchError
from wgpu_math.kernel_nodes import (
    AVG_POOL,
    AVG_POOL_BACKPROP,
    MAX_POOL,
    MAX_POOL_BACKPROP,
    PoolBackpropNode,
    PoolNode,
)
from wgpu_math.ndarray import NDArray, Scalar
from wgpu_math.scope import Scope, ScopeStack
from wgpu_math.tape import KernelInputConfig, KernelNode, Tape

logger = logging.getLogger(__name__)

ArrayLike = Union[NDArray, float, int]


def _keep_all(scope: Scope, result):
    """Keep every NDArray in a (possibly nested) result structure."""
    if isinstance(result, NDArray):
        scope.keep(result)
    elif isinstance(result, (list, tuple)):
        for item in result:
            _keep_all(scope, item)
    elif isinstance(result, dict):
        for item in result.values():
            _keep_all(scope, item)


class NDArrayMath:
    """Math context: backend + scope stack + tape stack."""

    def __init__(self, backend: MathBackend):
        self.backend = backend
        self._scopes = ScopeStack()
        self._tapes: List[Tape] = []

    @property
    def name(self) -> str:
        return self.backend.name

    def dispose(self):
        self.backend.dispose()

    # ========================================================================
    # Scopes & tapes
    # ========================================================================

    @contextlib.contextmanager
    def _scope_context(self, name=None):
        scope = self._scopes.push(name)
        try:
            yield scope
        finally:
            # Recorded nodes reference the intermediates until backward runs.
            self._scopes.close(scope, retain=self._active_tape() is not None)

    def scope(self, fn: Optional[Callable] = None, name: Optional[str] = None):
        """
        Open a scope.

        Without ``fn`` this returns a context manager yielding the ``Scope``.
        With ``fn`` it calls ``fn(keep, track)`` inside a new scope, keeps
        every NDArray in the returned value and returns it.
        """
        if fn is None:
            return self._scope_context(name)
        with self._scope_context(name) as scope:
            result = fn(scope.keep, scope.track)
            _keep_all(scope, result)
        return result

    @property
    def scope_depth(self) -> int:
        return self._scopes.depth

    def track(self, x: NDArray) -> NDArray:
        """Register ``x`` with the innermost scope (no-op outside scopes)."""
        scope = self._scopes.current
        if scope is not None:
            scope.track(x)
        return x

    def keep(self, x: NDArray) -> NDArray:
        """Let ``x`` outlive the innermost scope."""
        scope = self._scopes.current
        if scope is not None:
            scope.keep(x)
        return x

    @contextlib.contextmanager
    def record_tape(self):
        """Record differentiable ops onto a new tape until the block exits.

        The tape is discarded when the scope active at entry closes.
        """
        tape = Tape(self)
        scope = self._scopes.current
        if scope is not None:
            scope.on_close(tape.discard)
        self._tapes.append(tape)
        try:
            yield tape
        finally:
            self._tapes.remove(tape)
            tape.close()

    def _active_tape(self) -> Optional[Tape]:
        for tape in reversed(self._tapes):
            if tape.is_recording:
                return tape
        return None

    def value_and_gradients(self, fn: Callable[[], NDArray], xs):
        """
        Evaluate ``fn()`` and its gradient with respect to ``xs``.

        Args:
            fn: Zero-argument callable returning an NDArray
            xs: An NDArray, a sequence of NDArrays or a name -> NDArray dict

        Returns:
            (value, grads) with grads shaped like ``xs``; both are kept to
            the caller's scope
        """
        if isinstance(xs, NDArray):
            names, xs_list = None, [xs]
        elif isinstance(xs, dict):
            names, xs_list = list(xs), list(xs.values())
        else:
            names, xs_list = None, list(xs)

        def compute(keep, track):
            with self.record_tape() as tape:
                y = fn()
            if not isinstance(y, NDArray):
                raise TypeError(f"Gradient function must return an NDArray, got {type(y).__name__}")
            grads = tape.gradients(y, xs_list)
            if isinstance(xs, NDArray):
                return y, grads[0]
            if names is not None:
                return y, dict(zip(names, grads))
            return y, grads

        return self.scope(compute, name="value_and_gradients")

    def gradients(self, fn: Callable[[], NDArray], xs):
        """Like ``value_and_gradients`` but returns only the gradients."""
        def compute(keep, track):
            _, grads = self.value_and_gradients(fn, xs)
            return grads

        return self.scope(compute, name="gradients")

    # ========================================================================
    # Helpers
    # ========================================================================

    def _to_array(self, value: ArrayLike) -> NDArray:
        if isinstance(value, NDArray):
            return value
        if isinstance(value, (numbers.Number, np.number)):
            return self.track(Scalar.new(value))
        raise TypeError(f"Expected an NDArray or a number, got {type(value).__name__}")

    def _op(self, kernel, inputs, output, gradient=None, args=None) -> NDArray:
        self.track(output)
        tape = self._active_tape()
        if tape is not None:
            tape.record(KernelNode(kernel, KernelInputConfig(inputs, args), output, gradient))
        return output

    def _sum_keep_axis(self, x, axis):
        shape = list(x.shape)
        shape[axis] = 1
        return self.reshape(self.sum(x, axis), shape)

    def _reduce_to_shape(self, grad, shape):
        """Sum a broadcast gradient back down to ``shape``."""
        shape = tuple(shape)
        if grad.shape == shape:
            return grad
        while grad.rank > len(shape):
            grad = self.sum(grad, axis=0)
        for axis, dim in enumerate(shape):
            if dim == 1 and grad.shape[axis] != 1:
                grad = self._sum_keep_axis(grad, axis)
        return grad

    # ========================================================================
    # Creation & data
    # ========================================================================

    def zeros(self, shape, dtype="float32") -> NDArray:
        return self.track(self.backend.zeros(tuple(shape), dtype))

    def zeros_like(self, x: NDArray) -> NDArray:
        return self.zeros(x.shape, x.dtype)

    def ones(self, shape, dtype="float32") -> NDArray:
        shape = tuple(shape)
        return self.track(NDArray.make(shape, values=np.ones(shape), dtype=dtype))

    def scalar(self, value, dtype=None) -> Scalar:
        return self.track(Scalar.new(value, dtype))

    def clone(self, x: NDArray) -> NDArray:
        """Independent copy of ``x`` (gradient flows through)."""
        def gradient(dy, y):
            return {"x": lambda: dy}
        return self._op("Clone", {"x": x}, NDArray.like(x), gradient)

    def read(self, x: NDArray) -> np.ndarray:
        """Blocking read of ``x`` as a numpy array."""
        return self.backend.read(x)

    async def read_async(self, x: NDArray) -> np.ndarray:
        return await self.backend.read_async(x)

    # ========================================================================
    # Elementwise binary
    # ========================================================================

    def add(self, a: ArrayLike, b: ArrayLike) -> NDArray:
        a, b = self._to_array(a), self._to_array(b)

        def gradient(dy, y):
            return {
                "a": lambda: self._reduce_to_shape(dy, a.shape),
                "b": lambda: self._reduce_to_shape(dy, b.shape),
            }

        return self._op("Add", {"a": a, "b": b}, self.backend.add(a, b), gradient)

    def sub(self, a: ArrayLike, b: ArrayLike) -> NDArray:
        a, b = self._to_array(a), self._to_array(b)

        def gradient(dy, y):
            return {
                "a": lambda: self._reduce_to_shape(dy, a.shape),
                "b": lambda: self._reduce_to_shape(self.neg(dy), b.shape),
            }

        return self._op("Sub", {"a": a, "b": b}, self.backend.subtract(a, b), gradient)

    subtract = sub

    def multiply(self, a: ArrayLike, b: ArrayLike) -> NDArray:
        a, b = self._to_array(a), self._to_array(b)

        def gradient(dy, y):
            return {
                "a": lambda: self._reduce_to_shape(self.multiply(dy, b), a.shape),
                "b": lambda: self._reduce_to_shape(self.multiply(dy, a), b.shape),
            }

        return self._op("Mul", {"a": a, "b": b}, self.backend.multiply(a, b), gradient)

    def divide(self, a: ArrayLike, b: ArrayLike) -> NDArray:
        a, b = self._to_array(a), self._to_array(b)

        def gradient(dy, y):
            def grad_b():
                # d(a/b)/db = -a / b^2
                ratio = self.divide(self.multiply(dy, a), self.multiply(b, b))
                return self._reduce_to_shape(self.neg(ratio), b.shape)

            return {
                "a": lambda: self._reduce_to_shape(self.divide(dy, b), a.shape),
                "b": grad_b,
            }

        return self._op("Div", {"a": a, "b": b}, self.backend.divide(a, b), gradient)

    def maximum(self, a: ArrayLike, b: ArrayLike) -> NDArray:
        a, b = self._to_array(a), self._to_array(b)

        def gradient(dy, y):
            mask = self.step(self.sub(a, b))
            return {
                "a": lambda: self._reduce_to_shape(self.multiply(dy, mask), a.shape),
                "b": lambda: self._reduce_to_shape(
                    self.multiply(dy, self.sub(1.0, mask)), b.shape
                ),
            }

        return self._op("Maximum", {"a": a, "b": b}, self.backend.binary("maximum", a, b), gradient)

    # ========================================================================
    # Elementwise unary
    # ========================================================================

    def _unary(self, op, kernel, x, dx=None):
        """Run a unary op; ``dx(dy, y)`` builds the input gradient."""
        x = self._to_array(x)
        gradient = None
        if dx is not None:
            def gradient(dy, y):
                return {"x": lambda: dx(dy, y)}
        return self._op(kernel, {"x": x}, self.backend.unary(op, x), gradient)

    def neg(self, x: ArrayLike) -> NDArray:
        return self._unary("neg", "Neg", x, lambda dy, y: self.neg(dy))

    def exp(self, x: ArrayLike) -> NDArray:
        return self._unary("exp", "Exp", x, lambda dy, y: self.multiply(dy, y))

    def log(self, x: ArrayLike) -> NDArray:
        x = self._to_array(x)
        return self._unary("log", "Log", x, lambda dy, y: self.divide(dy, x))

    def sqrt(self, x: ArrayLike) -> NDArray:
        return self._unary(
            "sqrt", "Sqrt", x, lambda dy, y: self.divide(dy, self.multiply(y, 2.0))
        )

    def abs(self, x: ArrayLike) -> NDArray:
        x = self._to_array(x)
        return self._unary(
            "abs", "Abs", x,
            lambda dy, y: self.multiply(dy, self.sub(self.step(x), self.step(self.neg(x)))),
        )

    def floor(self, x: ArrayLike) -> NDArray:
        x = self._to_array(x)
        return self._unary("floor", "Floor", x, lambda dy, y: self.zeros(x.shape))

    def step(self, x: ArrayLike) -> NDArray:
        x = self._to_array(x)
        return self._unary("step", "Step", x, lambda dy, y: self.zeros(x.shape))

    def relu(self, x: ArrayLike) -> NDArray:
        x = self._to_array(x)
        return self._unary("relu", "Relu", x, lambda dy, y: self.multiply(dy, self.step(x)))

    def sigmoid(self, x: ArrayLike) -> NDArray:
        return self._unary(
            "sigmoid", "Sigmoid", x,
            lambda dy, y: self.multiply(dy, self.multiply(y, self.sub(1.0, y))),
        )

    def tanh(self, x: ArrayLike) -> NDArray:
        return self._unary(
            "tanh", "Tanh", x,
            lambda dy, y: self.multiply(dy, self.sub(1.0, self.multiply(y, y))),
        )

    def clip(self, x: NDArray, min_value: float, max_value: float) -> NDArray:
        if min_value > max_value:
            raise ValueError(f"clip bounds are inverted: [{min_value}, {max_value}]")

        def gradient(dy, y):
            return {"x": lambda: self.track(
                self.backend.clip_backprop(dy, x, min_value, max_value)
            )}

        return self._op(
            "Clip", {"x": x}, self.backend.clip(x, min_value, max_value), gradient,
            args={"min": min_value, "max": max_value},
        )

    # ========================================================================
    # Reductions
    # ========================================================================

    def _expand_grad(self, dy, shape, axis):
        """Broadcast the gradient of a reduction back to the input shape."""
        if axis is not None:
            kept = list(shape)
            kept[axis] = 1
            dy = self.reshape(dy, kept)
        return self.multiply(dy, self.ones(shape))

    def sum(self, x: NDArray, axis: Optional[int] = None) -> NDArray:
        if axis is not None:
            axis = normalize_axis(axis, x.rank)

        def gradient(dy, y):
            return {"x": lambda: self._expand_grad(dy, x.shape, axis)}

        return self._op("Sum", {"x": x}, self.backend.sum(x, axis), gradient, args={"axis": axis})

    def max(self, x: NDArray, axis: Optional[int] = None) -> NDArray:
        if axis is not None:
            axis = normalize_axis(axis, x.rank)

        def gradient(dy, y):
            def dx():
                y_b = y if axis is None else self.reshape(
                    y, [1 if i == axis else s for i, s in enumerate(x.shape)]
                )
                mask = self.sub(1.0, self.step(self.abs(self.sub(x, y_b))))
                return self.multiply(mask, self._expand_grad(dy, x.shape, axis))
            return {"x": dx}

        return self._op("Max", {"x": x}, self.backend.max(x, axis), gradient, args={"axis": axis})

    def argmax(self, x: NDArray) -> NDArray:
        """Index of the first maximum along the last axis (int32, no gradient)."""
        return self._op("ArgMax", {"x": x}, self.backend.argmax(x))

    # ========================================================================
    # Shape
    # ========================================================================

    def reshape(self, x: NDArray, shape) -> NDArray:
        """View ``x`` with a new shape.

        The view shares ``x``'s data and is owned by whichever scope owns
        ``x``, so it is not tracked separately.
        """
        y = x.reshape(shape)
        if y is x:
            return x
        tape = self._active_tape()
        if tape is not None:
            def gradient(dy, y_):
                return {"x": lambda: self.reshape(dy, x.shape)}
            tape.record(KernelNode("Reshape", KernelInputConfig({"x": x}), y, gradient))
        return y

    def concat(self, a: NDArray, b: NDArray, axis: int = 0) -> NDArray:
        axis = normalize_axis(axis, a.rank)
        a_dim = a.shape[axis]

        def gradient(dy, y):
            return {
                "a": lambda: self.slice_axis(dy, axis, 0, a_dim),
                "b": lambda: self.slice_axis(dy, axis, a_dim, b.shape[axis]),
            }

        return self._op(
            "Concat", {"a": a, "b": b}, self.backend.concat(a, b, axis), gradient,
            args={"axis": axis},
        )

    def _concat_rank(self, rank, a, b, axis):
        if a.rank != rank or b.rank != rank:
            raise ShapeMismatchError(
                f"concat_{rank}d expects rank-{rank} arrays, got {a.shape} and {b.shape}"
            )
        return self.concat(a, b, axis)

    def concat_1d(self, a: NDArray, b: NDArray) -> NDArray:
        return self._concat_rank(1, a, b, 0)

    def concat_2d(self, a: NDArray, b: NDArray, axis: int) -> NDArray:
        return self._concat_rank(2, a, b, axis)

    def concat_3d(self, a: NDArray, b: NDArray, axis: int) -> NDArray:
        return self._concat_rank(3, a, b, axis)

    def concat_4d(self, a: NDArray, b: NDArray, axis: int) -> NDArray:
        return self._concat_rank(4, a, b, axis)

    def slice_axis(self, x: NDArray, axis: int, begin: int, size: int) -> NDArray:
        axis = normalize_axis(axis, x.rank)
        full = x.shape[axis]

        def gradient(dy, y):
            return {"x": lambda: self.track(self.backend.pad_axis(dy, axis, begin, full))}

        return self._op(
            "Slice", {"x": x}, self.backend.slice_axis(x, axis, begin, size), gradient,
            args={"axis": axis, "begin": begin, "size": size},
        )

    def slice_1d(self, x: NDArray, begin: int, size: int) -> NDArray:
        if x.rank != 1:
            raise ShapeMismatchError(f"slice_1d expects a 1-D array, got {x.shape}")
        return self.slice_axis(x, 0, begin, size)

    def slice_2d(self, x: NDArray, begin, size) -> NDArray:
        """Take the ``size=(rows, cols)`` block starting at ``begin=(row, col)``."""
        if x.rank != 2:
            raise ShapeMismatchError(f"slice_2d expects a 2-D array, got {x.shape}")
        rows = self.slice_axis(x, 0, begin[0], size[0])
        return self.slice_axis(rows, 1, begin[1], size[1])

    def split(self, x: NDArray, num_or_sizes: Union[int, Sequence[int]], axis: int = 0) -> List[NDArray]:
        """Split along ``axis`` into equal parts, or parts of the given sizes."""
        axis = normalize_axis(axis, x.rank)
        dim = x.shape[axis]
        if isinstance(num_or_sizes, int):
            if num_or_sizes <= 0 or dim % num_or_sizes != 0:
                raise ShapeMismatchError(
                    f"Cannot split axis {axis} of size {dim} into {num_or_sizes} parts"
                )
            sizes = [dim // num_or_sizes] * num_or_sizes
        else:
            sizes = list(num_or_sizes)
            if sum(sizes) != dim:
                raise ShapeMismatchError(f"Split sizes {sizes} do not add up to {dim}")
        parts = []
        begin = 0
        for size in sizes:
            parts.append(self.slice_axis(x, axis, begin, size))
            begin += size
        return parts

    def transpose(self, x: NDArray) -> NDArray:
        """Transpose a matrix."""
        def gradient(dy, y):
            return {"x": lambda: self.transpose(dy)}

        return self._op("Transpose", {"x": x}, self.backend.transpose_2d(x), gradient)

    def one_hot(self, indices: Union[NDArray, int], depth: int,
                on_value: float = 1.0, off_value: float = 0.0, check: bool = True) -> NDArray:
        """
        One-hot encode a scalar index (-> ``[depth]``) or 1-D indices (-> ``[n, depth]``).

        Checking the indices reads them back to the host, a blocking transfer
        on the GPU backend. Callers whose indices are in range by construction
        pass ``check=False``; an out-of-range index then gives an all-off row.

        Raises:
            IndexOutOfRangeError: if checking and an index is outside ``[0, depth)`` or not integral
        """
        if depth <= 0:
            raise ValueError(f"one_hot depth must be positive, got {depth}")
        indices = self._to_array(indices)
        if indices.rank > 1:
            raise ShapeMismatchError(f"one_hot expects a scalar or 1-D indices, got {indices.shape}")
        if check:
            values = indices.data_sync().reshape(-1)
            bad = (values < 0) | (values >= depth) | (values != np.floor(values))
            if np.any(bad):
                raise IndexOutOfRangeError(
                    f"one_hot index {values[bad][0]} out of range [0, {depth})"
                )
        flat = indices if indices.rank == 1 else indices.reshape(1)
        y = self.backend.one_hot(flat, depth, on_value, off_value)
        if indices.rank == 0:
            y = y.reshape(depth)
        return self._op(
            "OneHot", {"indices": indices}, y,
            args={"depth": depth, "on_value": on_value, "off_value": off_value},
        )

    # ========================================================================
    # Linear algebra
    # ========================================================================

    def matmul(self, a: NDArray, b: NDArray,
               transpose_a: bool = False, transpose_b: bool = False) -> NDArray:
        def grad_a(dy):
            if transpose_a:
                return self.matmul(b, dy, transpose_b, True)
            return self.matmul(dy, b, False, not transpose_b)

        def grad_b(dy):
            if transpose_b:
                return self.matmul(dy, a, True, transpose_a)
            return self.matmul(a, dy, not transpose_a, False)

        def gradient(dy, y):
            return {"a": lambda: grad_a(dy), "b": lambda: grad_b(dy)}

        return self._op(
            "MatMul", {"a": a, "b": b},
            self.backend.matmul(a, b, transpose_a, transpose_b),
            gradient,
            args={"transpose_a": transpose_a, "transpose_b": transpose_b},
        )

    # ========================================================================
    # NN
    # ========================================================================

    def softmax(self, logits: NDArray) -> NDArray:
        """Max-subtracted softmax over the last axis."""
        def gradient(dy, y):
            def dx():
                s = self._sum_keep_axis(self.multiply(dy, y), y.rank - 1)
                return self.multiply(y, self.sub(dy, s))
            return {"logits": dx}

        return self._op("Softmax", {"logits": logits}, self.backend.softmax(logits), gradient)

    def multinomial(self, probabilities: NDArray, num_samples: int, seed: Optional[int] = None) -> NDArray:
        """
        Draw ``num_samples`` indices per row by inverse CDF.

        Rows are renormalised by their total, so they need not sum to 1.
        Returns int32 ``[num_samples]`` for 1-D input, ``[batch, num_samples]`` for 2-D.
        """
        if probabilities.rank not in (1, 2) or probabilities.shape[-1] == 0:
            raise ShapeMismatchError(
                f"multinomial expects a non-empty 1-D or 2-D array, got {probabilities.shape}"
            )
        if num_samples < 1:
            raise ValueError(f"num_samples must be positive, got {num_samples}")
        return self._op(
            "Multinomial", {"probabilities": probabilities},
            self.backend.multinomial(probabilities, num_samples, seed),
            args={"num_samples": num_samples, "seed": seed},
        )

    # ---- Pooling ----

    def _batched(self, x):
        if x.rank == 3:
            return self.reshape(x, (1,) + tuple(x.shape)), True
        if x.rank != 4:
            raise ShapeMismatchError(f"Expected a rank-3 or rank-4 NHWC array, got {x.shape}")
        return x, False

    def _unbatched(self, y, squeeze):
        return self.reshape(y, y.shape[1:]) if squeeze else y

    def _pool(self, kernel, x, conv_info: Conv2DInfo) -> NDArray:
        if kernel == MAX_POOL:
            y = self.backend.max_pool(x, conv_info)
        else:
            y = self.backend.avg_pool(x, conv_info)
        self.track(y)
        tape = self._active_tape()
        if tape is not None:
            backprop = MAX_POOL_BACKPROP if kernel == MAX_POOL else AVG_POOL_BACKPROP

            def gradient(dy, y_):
                return {"x": lambda: self._pool_backprop(backprop, dy, x, conv_info)}

            tape.record(PoolNode(kernel, x, conv_info, y, gradient))
        return y

    def _pool_backprop(self, kernel, dy, x, conv_info: Conv2DInfo) -> NDArray:
        if kernel == MAX_POOL_BACKPROP:
            dx = self.backend.max_pool_backprop(dy, x, conv_info)
        else:
            dx = self.backend.avg_pool_backprop(dy, x, conv_info)
        self.track(dx)
        tape = self._active_tape()
        if tape is not None:
            def gradient(ddx, dx_):
                if kernel == MAX_POOL_BACKPROP:
                    ddy = lambda: self._max_pool_gather(ddx, x, conv_info)  # noqa: E731
                else:
                    ddy = lambda: self._pool(AVG_POOL, ddx, conv_info)  # noqa: E731
                return {"dy": ddy, "x": lambda: self.zeros(x.shape)}

            tape.record(PoolBackpropNode(kernel, dy, x, conv_info, dx, gradient))
        return dx

    def _max_pool_gather(self, g, x, conv_info: Conv2DInfo) -> NDArray:
        def gradient(dy, y):
            return {
                "g": lambda: self._pool_backprop(MAX_POOL_BACKPROP, dy, x, conv_info),
                "x": lambda: self.zeros(x.shape),
            }

        return self._op(
            "MaxPoolGather", {"g": g, "x": x},
            self.backend.max_pool_gather(g, x, conv_info), gradient, args=conv_info,
        )

    def max_pool(self, x: NDArray, filter_size, strides, pad="valid") -> NDArray:
        """Max pooling over an NHWC array (rank 3 or 4)."""
        x4, squeeze = self._batched(x)
        conv_info = compute_pool2d_info(x4.shape, filter_size, strides, pad)
        return self._unbatched(self._pool(MAX_POOL, x4, conv_info), squeeze)

    def avg_pool(self, x: NDArray, filter_size, strides, pad="valid") -> NDArray:
        """Average pooling over the valid (non-padding) cells of each window."""
        x4, squeeze = self._batched(x)
        conv_info = compute_pool2d_info(x4.shape, filter_size, strides, pad)
        return self._unbatched(self._pool(AVG_POOL, x4, conv_info), squeeze)

    def max_pool_backprop(self, dy: NDArray, x: NDArray, filter_size, strides, pad="valid") -> NDArray:
        x4, squeeze = self._batched(x)
        dy4, _ = self._batched(dy)
        conv_info = compute_pool2d_info(x4.shape, filter_size, strides, pad)
        return self._unbatched(self._pool_backprop(MAX_POOL_BACKPROP, dy4, x4, conv_info), squeeze)

    def avg_pool_backprop(self, dy: NDArray, x: NDArray, filter_size, strides, pad="valid") -> NDArray:
        x4, squeeze = self._batched(x)
        dy4, _ = self._batched(dy)
        conv_info = compute_pool2d_info(x4.shape, filter_size, strides, pad)
        return self._unbatched(self._pool_backprop(AVG_POOL_BACKPROP, dy4, x4, conv_info), squeeze)

    # ---- Convolution ----

    def conv2d(self, x: NDArray, filters: NDArray, bias: Optional[NDArray] = None,
               strides=1, pad="valid") -> NDArray:
        """2-D convolution of an NHWC array with an HWIO filter."""
        x4, squeeze = self._batched(x)
        conv_info = compute_conv2d_info(x4.shape, filters.shape, strides, pad)
        inputs = {"x": x4, "filters": filters}
        if bias is not None:
            inputs["bias"] = bias

        def gradient(dy, y):
            grads = {
                "x": lambda: self.conv2d_der_input(dy, filters, conv_info),
                "filters": lambda: self.conv2d_der_filter(x4, dy, conv_info),
            }
            if bias is not None:
                grads["bias"] = lambda: self.sum(
                    self.reshape(dy, (-1, conv_info.out_channels)), axis=0
                )
            return grads

        y = self._op(
            "Conv2D", inputs, self.backend.conv2d(x4, filters, bias, conv_info), gradient,
            args=conv_info,
        )
        return self._unbatched(y, squeeze)

    def conv2d_der_input(self, dy: NDArray, filters: NDArray, conv_info: Conv2DInfo) -> NDArray:
        return self._op(
            "Conv2DDerInput", {"dy": dy, "filters": filters},
            self.backend.conv2d_der_input(dy, filters, conv_info), args=conv_info,
        )

    def conv2d_der_filter(self, x: NDArray, dy: NDArray, conv_info: Conv2DInfo) -> NDArray:
        return self._op(
            "Conv2DDerFilter", {"x": x, "dy": dy},
            self.backend.conv2d_der_filter(x, dy, conv_info), args=conv_info,
        )

    # ---- Recurrent ----

    def basic_lstm_cell(self, forget_bias, lstm_kernel, lstm_bias, data, c, h):
        """One LSTM step; returns ``(new_c, new_h)``. See ``wgpu_math.rnn``."""
        return rnn.basic_lstm_cell(self, forget_bias, lstm_kernel, lstm_bias, data, c, h)

    def multi_rnn_cell(self, lstm_cells, data, c, h):
        """Chain LSTM cells; returns ``(new_c_list, new_h_list)``."""
        return rnn.multi_rnn_cell(self, lstm_cells, data, c, h)


class NDArrayMathCPU(NDArrayMath):
    """Math context on the numpy backend."""

    def __init__(self, seed: Optional[int] = None):
        super().__init__(CPUBackend(seed=seed))


class NDArrayMathGPU(NDArrayMath):
    """Math context on the wgpu backend."""

    def __init__(self, device=None, power_preference: str = "high-performance",
                 seed: Optional[int] = None):
        from wgpu_math.backends.backend_wgpu import WgpuBackend

        super().__init__(
            WgpuBackend(device=device, power_preference=power_preference, seed=seed)
        )
