"""Reference backend computing every kernel with numpy on the host."""

import logging

import numpy as np

from wgpu_math.backends.backend import (
    BINARY_OPS,
    UNARY_OPS,
    MathBackend,
    binary_result_dtype,
    broadcast_shapes,
    check_float,
    check_pool_grad,
    check_pool_input,
    check_slice,
    concat_shape,
    matmul_shape,
    normalize_axis,
)
from wgpu_math.errors import ShapeMismatchError
from wgpu_math.ndarray import NDArray

logger = logging.getLogger(__name__)

_DTYPE_PRESERVING_UNARY = ("neg", "abs", "floor", "relu", "step")


def _result(values, dtype="float32"):
    values = np.asarray(values)
    return NDArray.make(values.shape, values=values, dtype=dtype)


def _pad_windows(x, info, fill):
    """Pad an NHWC array so every output window lies inside it."""
    pad = info.pad_info
    need_height = (info.out_height - 1) * info.stride_height + info.filter_height
    need_width = (info.out_width - 1) * info.stride_width + info.filter_width
    bottom = max(0, need_height - info.in_height - pad.top)
    right = max(0, need_width - info.in_width - pad.left)
    return np.pad(
        x,
        ((0, 0), (pad.top, bottom), (pad.left, right), (0, 0)),
        mode="constant",
        constant_values=fill,
    )


def _window_slices(info):
    """Yield (k, row_slice, col_slice) for each filter offset."""
    k = 0
    for wr in range(info.filter_height):
        rows = slice(wr, wr + info.stride_height * (info.out_height - 1) + 1, info.stride_height)
        for wc in range(info.filter_width):
            cols = slice(wc, wc + info.stride_width * (info.out_width - 1) + 1, info.stride_width)
            yield k, rows, cols
            k += 1


def _crop(padded, info):
    pad = info.pad_info
    return padded[
        :,
        pad.top:pad.top + info.in_height,
        pad.left:pad.left + info.in_width,
        :,
    ]


class CPUBackend(MathBackend):
    """numpy implementation of ``MathBackend``."""

    name = "cpu"

    def __init__(self, seed=None):
        self._rng = np.random.default_rng(seed)

    # ---- Memory ----

    def zeros(self, shape, dtype="float32"):
        return NDArray.zeros(shape, dtype)

    def read(self, x):
        return x.data_sync()

    # ---- Elementwise ----

    def binary(self, op, a, b):
        if op not in BINARY_OPS:
            raise ValueError(f"Unknown binary op '{op}'")
        out_shape = broadcast_shapes(a.shape, b.shape)
        dtype = binary_result_dtype(op, a, b)
        x = self.read(a).astype(np.float32)
        y = self.read(b).astype(np.float32)
        with np.errstate(divide="ignore", invalid="ignore"):
            if op == "add":
                out = x + y
            elif op == "subtract":
                out = x - y
            elif op == "multiply":
                out = x * y
            elif op == "divide":
                out = x / y
            else:
                out = np.maximum(x, y)
        return _result(np.broadcast_to(out, out_shape), dtype)

    def unary(self, op, x):
        if op not in UNARY_OPS:
            raise ValueError(f"Unknown unary op '{op}'")
        v = self.read(x).astype(np.float32)
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            if op == "neg":
                out = -v
            elif op == "exp":
                out = np.exp(v)
            elif op == "log":
                out = np.log(v)
            elif op == "sqrt":
                out = np.sqrt(v)
            elif op == "abs":
                out = np.abs(v)
            elif op == "floor":
                out = np.floor(v)
            elif op == "relu":
                out = np.maximum(v, 0.0)
            elif op == "step":
                out = (v > 0.0).astype(np.float32)
            elif op == "sigmoid":
                out = 1.0 / (1.0 + np.exp(-v))
            else:
                out = np.tanh(v)
        dtype = x.dtype if op in _DTYPE_PRESERVING_UNARY else "float32"
        return _result(out, dtype)

    def clip(self, x, min_value, max_value):
        v = self.read(x).astype(np.float32)
        return _result(np.clip(v, min_value, max_value), x.dtype)

    def clip_backprop(self, dy, x, min_value, max_value):
        if dy.shape != x.shape:
            raise ShapeMismatchError(f"clip gradient {dy.shape} does not match input {x.shape}")
        v = self.read(x)
        mask = (v >= min_value) & (v <= max_value)
        return _result(np.where(mask, self.read(dy), 0.0).astype(np.float32))

    # ---- Reductions ----

    def sum(self, x, axis=None):
        v = self.read(x)
        if axis is not None:
            axis = normalize_axis(axis, x.rank)
        return _result(np.sum(v, axis=axis, dtype=v.dtype), x.dtype)

    def max(self, x, axis=None):
        if x.size == 0:
            raise ShapeMismatchError("max of an empty array")
        v = self.read(x)
        if axis is not None:
            axis = normalize_axis(axis, x.rank)
        return _result(np.max(v, axis=axis), x.dtype)

    def argmax(self, x):
        if x.rank == 0 or x.shape[-1] == 0:
            raise ShapeMismatchError(f"argmax needs a non-empty last axis, got {x.shape}")
        return _result(np.argmax(self.read(x), axis=-1).astype(np.int32), "int32")

    # ---- Shape ----

    def concat(self, a, b, axis):
        axis = normalize_axis(axis, a.rank)
        concat_shape(a.shape, b.shape, axis)
        dtype = a.dtype if a.dtype == b.dtype else "float32"
        return _result(np.concatenate([self.read(a), self.read(b)], axis=axis), dtype)

    def slice_axis(self, x, axis, begin, size):
        axis = normalize_axis(axis, x.rank)
        check_slice(x.shape, axis, begin, size)
        index = (slice(None),) * axis + (slice(begin, begin + size),)
        return _result(self.read(x)[index], x.dtype)

    def pad_axis(self, dy, axis, begin, full_size):
        axis = normalize_axis(axis, dy.rank)
        shape = list(dy.shape)
        shape[axis] = full_size
        check_slice(tuple(shape), axis, begin, dy.shape[axis])
        out = np.zeros(shape, dtype=np.float32)
        index = (slice(None),) * axis + (slice(begin, begin + dy.shape[axis]),)
        out[index] = self.read(dy)
        return _result(out, dy.dtype)

    def transpose_2d(self, x):
        if x.rank != 2:
            raise ShapeMismatchError(f"transpose_2d requires a matrix, got {x.shape}")
        return _result(np.ascontiguousarray(self.read(x).T), x.dtype)

    def one_hot(self, indices, depth, on_value=1.0, off_value=0.0):
        if indices.rank != 1:
            raise ShapeMismatchError(f"one_hot expects 1-D indices, got {indices.shape}")
        idx = np.rint(self.read(indices)).astype(np.int64)
        out = np.full((indices.size, depth), off_value, dtype=np.float32)
        valid = (idx >= 0) & (idx < depth)
        rows = np.arange(indices.size)[valid]
        out[rows, idx[valid]] = on_value
        return _result(out)

    # ---- Linear algebra ----

    def matmul(self, a, b, transpose_a=False, transpose_b=False):
        matmul_shape(a.shape, b.shape, transpose_a, transpose_b)
        x = self.read(a).astype(np.float32)
        y = self.read(b).astype(np.float32)
        if transpose_a:
            x = x.T
        if transpose_b:
            y = y.T
        return _result(x @ y)

    # ---- NN ----

    def softmax(self, x):
        check_float(x, "softmax")
        v = self.read(x)
        shifted = v - np.max(v, axis=-1, keepdims=True)
        e = np.exp(shifted)
        return _result(e / np.sum(e, axis=-1, keepdims=True))

    def multinomial(self, probabilities, num_samples, seed=None):
        if probabilities.rank not in (1, 2):
            raise ShapeMismatchError(
                f"multinomial expects 1-D or 2-D probabilities, got {probabilities.shape}"
            )
        p = self.read(probabilities).astype(np.float32)
        p2 = p.reshape(1, -1) if probabilities.rank == 1 else p
        batch, k = p2.shape
        rng = np.random.default_rng(seed) if seed is not None else self._rng
        u = rng.random((batch, num_samples), dtype=np.float32)

        cdf = np.cumsum(np.maximum(p2, 0.0), axis=1, dtype=np.float32)
        total = cdf[:, -1:]
        r = u * total
        # First index whose cumulative mass exceeds r.
        samples = np.sum(cdf[:, None, :] <= r[:, :, None], axis=-1)
        samples = np.minimum(samples, k - 1).astype(np.int32)
        if probabilities.rank == 1:
            samples = samples.reshape(num_samples)
        return _result(samples, "int32")

    # ---- Pooling ----

    def _window_stack(self, x, info, fill):
        padded = _pad_windows(self.read(x).astype(np.float32), info, fill)
        return np.stack([padded[:, rows, cols, :] for _, rows, cols in _window_slices(info)])

    def _valid_counts(self, info):
        ones = np.ones((1, info.in_height, info.in_width, 1), dtype=np.float32)
        padded = _pad_windows(ones, info, 0.0)
        counts = sum(padded[:, rows, cols, :] for _, rows, cols in _window_slices(info))
        return np.maximum(counts, 1.0)

    def max_pool(self, x, conv_info):
        check_pool_input(x, conv_info)
        return _result(np.max(self._window_stack(x, conv_info, -np.inf), axis=0))

    def avg_pool(self, x, conv_info):
        check_pool_input(x, conv_info)
        total = np.sum(self._window_stack(x, conv_info, 0.0), axis=0)
        return _result(total / self._valid_counts(conv_info))

    def _argmax_windows(self, x, info):
        return np.argmax(self._window_stack(x, info, -np.inf), axis=0)

    def max_pool_backprop(self, dy, x, conv_info):
        check_pool_input(x, conv_info)
        check_pool_grad(dy, conv_info)
        positions = self._argmax_windows(x, conv_info)
        grad = self.read(dy).astype(np.float32)
        dx = _pad_windows(np.zeros(conv_info.in_shape, dtype=np.float32), conv_info, 0.0)
        for k, rows, cols in _window_slices(conv_info):
            dx[:, rows, cols, :] += np.where(positions == k, grad, 0.0)
        return _result(np.ascontiguousarray(_crop(dx, conv_info)))

    def avg_pool_backprop(self, dy, x, conv_info):
        check_pool_input(x, conv_info)
        check_pool_grad(dy, conv_info)
        grad = self.read(dy).astype(np.float32) / self._valid_counts(conv_info)
        dx = _pad_windows(np.zeros(conv_info.in_shape, dtype=np.float32), conv_info, 0.0)
        for _, rows, cols in _window_slices(conv_info):
            dx[:, rows, cols, :] += grad
        return _result(np.ascontiguousarray(_crop(dx, conv_info)))

    def max_pool_gather(self, g, x, conv_info):
        check_pool_input(x, conv_info)
        check_pool_input(g, conv_info)
        positions = self._argmax_windows(x, conv_info)
        padded = _pad_windows(self.read(g).astype(np.float32), conv_info, 0.0)
        out = np.zeros(conv_info.out_shape, dtype=np.float32)
        for k, rows, cols in _window_slices(conv_info):
            out += np.where(positions == k, padded[:, rows, cols, :], 0.0)
        return _result(out)

    # ---- Convolution ----

    def conv2d(self, x, filters, bias, conv_info):
        check_pool_input(x, conv_info)
        if tuple(filters.shape) != conv_info.filter_shape:
            raise ShapeMismatchError(
                f"Filter shape {filters.shape} does not match {conv_info.filter_shape}"
            )
        padded = _pad_windows(self.read(x).astype(np.float32), conv_info, 0.0)
        w = self.read(filters).astype(np.float32)
        out = np.zeros(conv_info.out_shape, dtype=np.float32)
        for k, rows, cols in _window_slices(conv_info):
            wr, wc = divmod(k, conv_info.filter_width)
            out += np.einsum("bhwi,io->bhwo", padded[:, rows, cols, :], w[wr, wc])
        if bias is not None:
            if bias.shape != (conv_info.out_channels,):
                raise ShapeMismatchError(
                    f"Bias shape {bias.shape} does not match {conv_info.out_channels} channels"
                )
            out += self.read(bias).astype(np.float32)
        return _result(out)

    def conv2d_der_input(self, dy, filters, conv_info):
        check_pool_grad(dy, conv_info)
        grad = self.read(dy).astype(np.float32)
        w = self.read(filters).astype(np.float32)
        dx = _pad_windows(np.zeros(conv_info.in_shape, dtype=np.float32), conv_info, 0.0)
        for k, rows, cols in _window_slices(conv_info):
            wr, wc = divmod(k, conv_info.filter_width)
            dx[:, rows, cols, :] += np.einsum("bhwo,io->bhwi", grad, w[wr, wc])
        return _result(np.ascontiguousarray(_crop(dx, conv_info)))

    def conv2d_der_filter(self, x, dy, conv_info):
        check_pool_input(x, conv_info)
        check_pool_grad(dy, conv_info)
        padded = _pad_windows(self.read(x).astype(np.float32), conv_info, 0.0)
        grad = self.read(dy).astype(np.float32)
        dw = np.zeros(conv_info.filter_shape, dtype=np.float32)
        for k, rows, cols in _window_slices(conv_info):
            wr, wc = divmod(k, conv_info.filter_width)
            dw[wr, wc] = np.einsum("bhwi,bhwo->io", padded[:, rows, cols, :], grad)
        return _result(dw)
