"""GPU backend running every kernel as a WGSL compute shader through wgpu-native.

Arrays stay on the device between kernels; ``NDArray`` downloads them
lazily when the host reads. Dispatches are queued without waiting, so a
kernel returns as soon as its work is submitted.
"""

import logging
import math
import struct

import numpy as np
import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from wgpu_math.backends import wgsl_kernels as kernels
from wgpu_math.backends.backend import (
    BINARY_OPS,
    UNARY_OPS,
    MathBackend,
    axis_split,
    binary_result_dtype,
    broadcast_shapes,
    check_float,
    check_pool_grad,
    check_pool_input,
    check_slice,
    concat_shape,
    matmul_shape,
    normalize_axis,
    reduced_shape,
)
from wgpu_math.errors import ShapeMismatchError
from wgpu_math.ndarray import DeviceStorage, NDArray, NDArrayData

logger = logging.getLogger(__name__)

_STORAGE_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC
)
_UNIFORM_USAGE = wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST

_THREADS = 256
_MAX_GROUPS = 65535
_DTYPE_PRESERVING_UNARY = ("neg", "abs", "floor", "relu", "step")

# ============================================================================
# Device Singleton & Pipeline Cache
# ============================================================================

_devices = {}
_pipeline_cache = {}


def _get_device(power_preference="high-performance"):
    """Get or create the wgpu device for a power preference."""
    device = _devices.get(power_preference)
    if device is None:
        adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
        if adapter is None:
            raise RuntimeError("No wgpu adapter available")
        logger.info("Using wgpu adapter: %s", adapter.info.get("device", "unknown"))
        device = adapter.request_device_sync()
        _devices[power_preference] = device
    return device


def _dispatch_shader(device, wgsl_code, buffers, workgroups):
    """Queue a compute shader on the GPU.

    Args:
        device: wgpu device
        wgsl_code: WGSL source code string
        buffers: list of (wgpu.GPUBuffer, access_mode) tuples
            access_mode: "read", "read_write" or "uniform"
        workgroups: tuple (x, y=1, z=1) for dispatch
    """
    cache_key = (id(device), wgsl_code)
    if cache_key in _pipeline_cache:
        pipeline, bind_group_layout = _pipeline_cache[cache_key]
    else:
        shader_module = device.create_shader_module(code=wgsl_code)

        entries = []
        for i, (_, access) in enumerate(buffers):
            if access == "read":
                buffer_type = "read-only-storage"
            elif access == "uniform":
                buffer_type = "uniform"
            else:  # "read_write"
                buffer_type = "storage"
            entries.append({
                "binding": i,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {"type": buffer_type, "has_dynamic_offset": False},
            })

        bind_group_layout = device.create_bind_group_layout(entries=entries)
        pipeline_layout = device.create_pipeline_layout(
            bind_group_layouts=[bind_group_layout]
        )
        pipeline = device.create_compute_pipeline(
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": "main"},
        )
        _pipeline_cache[cache_key] = (pipeline, bind_group_layout)

    resources = []
    for i, (buf, _) in enumerate(buffers):
        resources.append({
            "binding": i,
            "resource": {"buffer": buf, "offset": 0, "size": buf.size},
        })
    bind_group = device.create_bind_group(layout=bind_group_layout, entries=resources)

    command_encoder = device.create_command_encoder()
    compute_pass = command_encoder.begin_compute_pass()
    compute_pass.set_pipeline(pipeline)
    compute_pass.set_bind_group(0, bind_group)
    compute_pass.dispatch_workgroups(*workgroups)
    compute_pass.end()
    device.queue.submit([command_encoder.finish()])


def _flat_workgroups(n):
    """2-D workgroup grid covering ``n`` threads of a flat kernel."""
    groups = max(1, math.ceil(n / _THREADS))
    x = min(groups, _MAX_GROUPS)
    return (x, math.ceil(groups / x), 1)


def _pad4(shape):
    if len(shape) > 4:
        raise ShapeMismatchError(f"The wgpu backend supports rank <= 4, got shape {shape}")
    return (1,) * (4 - len(shape)) + tuple(shape)


def _broadcast_strides(shape):
    """Rank-4 element strides of ``shape`` with 0 on broadcast (size-1) axes."""
    padded = _pad4(shape)
    strides = []
    stride = 1
    for dim in reversed(padded):
        strides.append(0 if dim == 1 else stride)
        stride *= dim
    return tuple(reversed(strides))


def _window_params(info):
    pad = info.pad_info
    return (
        info.batch_size, info.in_height, info.in_width, info.in_channels,
        info.out_height, info.out_width, info.stride_height, info.stride_width,
        info.filter_height, info.filter_width, pad.top, pad.left,
    )


class WgpuBackend(MathBackend, DeviceStorage):
    """wgpu implementation of ``MathBackend`` that also owns device buffers."""

    name = "wgpu"

    def __init__(self, device=None, power_preference="high-performance", seed=None):
        self.device = device if device is not None else _get_device(power_preference)
        self._rng = np.random.default_rng(seed)
        self._live_buffers = 0

    @staticmethod
    def is_supported(power_preference="high-performance"):
        """True when a wgpu adapter can be obtained on this machine."""
        try:
            _get_device(power_preference)
        except Exception as e:
            logger.debug("wgpu unavailable: %s", e)
            return False
        return True

    @property
    def num_live_buffers(self):
        """Storage buffers created by this backend and not yet released."""
        return self._live_buffers

    # ---- DeviceStorage ----

    def upload(self, values):
        data = np.ascontiguousarray(values, dtype=np.float32)
        if data.size == 0:
            data = np.zeros(1, dtype=np.float32)
        buffer = self.device.create_buffer_with_data(data=data.tobytes(), usage=_STORAGE_USAGE)
        self._live_buffers += 1
        return buffer

    def download(self, buffer, size, dtype):
        raw = self.device.queue.read_buffer(buffer)
        values = np.frombuffer(raw, dtype=np.float32)[:size]
        if dtype == "int32":
            return np.rint(values).astype(np.int32)
        return values.copy()

    def release(self, buffer):
        buffer.destroy()
        self._live_buffers -= 1

    # ---- Dispatch helpers ----

    def _alloc(self, shape, dtype="float32"):
        size = 1
        for s in shape:
            size *= s
        buffer = self.device.create_buffer(size=max(4, size * 4), usage=_STORAGE_USAGE)
        self._live_buffers += 1
        data = NDArrayData(buffer=buffer, storage=self)
        return NDArray.make(shape, dtype=dtype, data=data)

    def _uniform(self, fmt, *values):
        return self.device.create_buffer_with_data(
            data=struct.pack(fmt, *values), usage=_UNIFORM_USAGE
        )

    def _run(self, code, bindings, workgroups):
        """Dispatch ``code`` with (NDArray or GPUBuffer, access) bindings."""
        buffers = []
        for item, access in bindings:
            if isinstance(item, NDArray):
                item = item.get_buffer(self)
            buffers.append((item, access))
        _dispatch_shader(self.device, code, buffers, workgroups)
        # Uniforms are per dispatch; the submitted pass holds its own reference.
        for buffer, access in buffers:
            if access == "uniform":
                buffer.destroy()

    def _run_flat(self, code, bindings, n):
        self._run(code, bindings, _flat_workgroups(n))

    # ---- Memory ----

    def zeros(self, shape, dtype="float32"):
        # wgpu zero-initialises new buffers.
        return self._alloc(tuple(shape), dtype)

    def read(self, x):
        return x.data_sync()

    def dispose(self):
        if self._live_buffers:
            logger.warning("Disposing wgpu backend with %d live buffers", self._live_buffers)

    # ---- Elementwise ----

    def binary(self, op, a, b):
        if op not in BINARY_OPS:
            raise ValueError(f"Unknown binary op '{op}'")
        out_shape = broadcast_shapes(a.shape, b.shape)
        out = self._alloc(out_shape, binary_result_dtype(op, a, b))
        if out.size == 0:
            return out
        params = self._uniform(
            "16I",
            *_pad4(out_shape),
            *_broadcast_strides(a.shape),
            *_broadcast_strides(b.shape),
            out.size, 0, 0, 0,
        )
        self._run_flat(
            kernels.WGSL_BINARY[op],
            [(a, "read"), (b, "read"), (out, "read_write"), (params, "uniform")],
            out.size,
        )
        return out

    def unary(self, op, x):
        if op not in UNARY_OPS:
            raise ValueError(f"Unknown unary op '{op}'")
        dtype = x.dtype if op in _DTYPE_PRESERVING_UNARY else "float32"
        out = self._alloc(x.shape, dtype)
        if out.size:
            self._run_flat(kernels.WGSL_UNARY[op], [(x, "read"), (out, "read_write")], out.size)
        return out

    def clip(self, x, min_value, max_value):
        out = self._alloc(x.shape, x.dtype)
        if out.size:
            bounds = self._uniform("4f", min_value, max_value, 0.0, 0.0)
            self._run_flat(
                kernels.WGSL_CLIP,
                [(x, "read"), (out, "read_write"), (bounds, "uniform")],
                out.size,
            )
        return out

    def clip_backprop(self, dy, x, min_value, max_value):
        if dy.shape != x.shape:
            raise ShapeMismatchError(f"clip gradient {dy.shape} does not match input {x.shape}")
        out = self._alloc(x.shape)
        if out.size:
            bounds = self._uniform("4f", min_value, max_value, 0.0, 0.0)
            self._run_flat(
                kernels.WGSL_CLIP_BACKPROP,
                [(dy, "read"), (x, "read"), (out, "read_write"), (bounds, "uniform")],
                out.size,
            )
        return out

    # ---- Reductions ----

    def _reduce(self, code, x, axis):
        if axis is None:
            outer, reduce, inner = 1, x.size, 1
        else:
            axis = normalize_axis(axis, x.rank)
            outer, reduce, inner = axis_split(x.shape, axis)
        out = self._alloc(reduced_shape(x.shape, axis), x.dtype)
        if out.size:
            params = self._uniform("4I", outer, reduce, inner, 0)
            self._run_flat(code, [(x, "read"), (out, "read_write"), (params, "uniform")], out.size)
        return out

    def sum(self, x, axis=None):
        return self._reduce(kernels.WGSL_SUM, x, axis)

    def max(self, x, axis=None):
        if x.size == 0:
            raise ShapeMismatchError("max of an empty array")
        return self._reduce(kernels.WGSL_MAX, x, axis)

    def argmax(self, x):
        if x.rank == 0 or x.shape[-1] == 0:
            raise ShapeMismatchError(f"argmax needs a non-empty last axis, got {x.shape}")
        width = x.shape[-1]
        out = self._alloc(x.shape[:-1], "int32")
        if out.size:
            params = self._uniform("4I", out.size, width, 0, 0)
            self._run_flat(
                kernels.WGSL_ARGMAX,
                [(x, "read"), (out, "read_write"), (params, "uniform")],
                out.size,
            )
        return out

    # ---- Shape ----

    def concat(self, a, b, axis):
        axis = normalize_axis(axis, a.rank)
        out_shape = concat_shape(a.shape, b.shape, axis)
        dtype = a.dtype if a.dtype == b.dtype else "float32"
        out = self._alloc(out_shape, dtype)
        if out.size:
            outer, a_dim, inner = axis_split(a.shape, axis)
            b_dim = b.shape[axis]
            params = self._uniform("4I", outer, a_dim, b_dim, inner)
            self._run_flat(
                kernels.WGSL_CONCAT,
                [(a, "read"), (b, "read"), (out, "read_write"), (params, "uniform")],
                out.size,
            )
        return out

    def slice_axis(self, x, axis, begin, size):
        axis = normalize_axis(axis, x.rank)
        check_slice(x.shape, axis, begin, size)
        out_shape = list(x.shape)
        out_shape[axis] = size
        out = self._alloc(tuple(out_shape), x.dtype)
        if out.size:
            outer, in_dim, inner = axis_split(x.shape, axis)
            params = self._uniform("8I", outer, in_dim, size, inner, begin, 0, 0, 0)
            self._run_flat(
                kernels.WGSL_SLICE,
                [(x, "read"), (out, "read_write"), (params, "uniform")],
                out.size,
            )
        return out

    def pad_axis(self, dy, axis, begin, full_size):
        axis = normalize_axis(axis, dy.rank)
        out_shape = list(dy.shape)
        out_shape[axis] = full_size
        out_shape = tuple(out_shape)
        check_slice(out_shape, axis, begin, dy.shape[axis])
        out = self._alloc(out_shape, dy.dtype)
        if out.size:
            outer, _, inner = axis_split(out_shape, axis)
            params = self._uniform(
                "8I", outer, full_size, dy.shape[axis], inner, begin, 0, 0, 0
            )
            self._run_flat(
                kernels.WGSL_PAD,
                [(dy, "read"), (out, "read_write"), (params, "uniform")],
                out.size,
            )
        return out

    def transpose_2d(self, x):
        if x.rank != 2:
            raise ShapeMismatchError(f"transpose_2d requires a matrix, got {x.shape}")
        rows, cols = x.shape
        out = self._alloc((cols, rows), x.dtype)
        if out.size:
            params = self._uniform("4I", rows, cols, 0, 0)
            self._run(
                kernels.WGSL_TRANSPOSE_2D,
                [(x, "read"), (out, "read_write"), (params, "uniform")],
                (math.ceil(cols / 16), math.ceil(rows / 16), 1),
            )
        return out

    def one_hot(self, indices, depth, on_value=1.0, off_value=0.0):
        if indices.rank != 1:
            raise ShapeMismatchError(f"one_hot expects 1-D indices, got {indices.shape}")
        out = self._alloc((indices.size, depth))
        if out.size:
            params = self._uniform("4I", indices.size, depth, 0, 0)
            values = self._uniform("4f", on_value, off_value, 0.0, 0.0)
            self._run_flat(
                kernels.WGSL_ONE_HOT,
                [
                    (indices, "read"),
                    (out, "read_write"),
                    (params, "uniform"),
                    (values, "uniform"),
                ],
                out.size,
            )
        return out

    # ---- Linear algebra ----

    def matmul(self, a, b, transpose_a=False, transpose_b=False):
        m, k, n = matmul_shape(a.shape, b.shape, transpose_a, transpose_b)
        out = self._alloc((m, n))
        if out.size == 0 or k == 0:
            return out
        lhs = self.transpose_2d(a) if transpose_a else a
        rhs = self.transpose_2d(b) if transpose_b else b
        params = self._uniform("4I", m, n, k, 0)
        self._run(
            kernels.WGSL_MATMUL,
            [(lhs, "read"), (rhs, "read"), (out, "read_write"), (params, "uniform")],
            (math.ceil(n / 16), math.ceil(m / 16), 1),
        )
        # Destruction is deferred by wgpu until the queued work completes.
        if transpose_a:
            lhs.dispose()
        if transpose_b:
            rhs.dispose()
        return out

    # ---- NN ----

    def softmax(self, x):
        check_float(x, "softmax")
        if x.rank == 0:
            raise ShapeMismatchError("softmax requires at least one axis")
        out = self._alloc(x.shape)
        if out.size:
            width = x.shape[-1]
            rows = x.size // width
            if rows > _MAX_GROUPS:
                raise ShapeMismatchError(
                    f"softmax supports at most {_MAX_GROUPS} rows, got {rows}"
                )
            params = self._uniform("4I", width, rows, 0, 0)
            self._run(
                kernels.WGSL_SOFTMAX,
                [(x, "read"), (out, "read_write"), (params, "uniform")],
                (rows, 1, 1),
            )
        return out

    def multinomial(self, probabilities, num_samples, seed=None):
        if probabilities.rank not in (1, 2):
            raise ShapeMismatchError(
                f"multinomial expects 1-D or 2-D probabilities, got {probabilities.shape}"
            )
        if probabilities.rank == 1:
            batch, k = 1, probabilities.size
            out_shape = (num_samples,)
        else:
            batch, k = probabilities.shape
            out_shape = (batch, num_samples)
        rng = np.random.default_rng(seed) if seed is not None else self._rng
        # Same draw order as the CPU backend so seeded results agree.
        randoms = rng.random((batch, num_samples), dtype=np.float32)
        out = self._alloc(out_shape, "int32")
        if out.size:
            uniforms = self.upload(randoms.reshape(-1))
            params = self._uniform("4I", batch, k, num_samples, 0)
            self._run_flat(
                kernels.WGSL_MULTINOMIAL,
                [
                    (probabilities, "read"),
                    (uniforms, "read"),
                    (out, "read_write"),
                    (params, "uniform"),
                ],
                out.size,
            )
            self.release(uniforms)
        return out

    # ---- Pooling ----

    def _window_kernel(self, code, first, second, out_shape, conv_info):
        out = self._alloc(out_shape)
        if out.size:
            params = self._uniform("12I", *_window_params(conv_info))
            self._run_flat(
                code,
                [(first, "read"), (second, "read"), (out, "read_write"), (params, "uniform")],
                out.size,
            )
        return out

    def max_pool(self, x, conv_info):
        check_pool_input(x, conv_info)
        return self._window_kernel(kernels.WGSL_MAX_POOL, x, x, conv_info.out_shape, conv_info)

    def avg_pool(self, x, conv_info):
        check_pool_input(x, conv_info)
        return self._window_kernel(kernels.WGSL_AVG_POOL, x, x, conv_info.out_shape, conv_info)

    def max_pool_backprop(self, dy, x, conv_info):
        check_pool_input(x, conv_info)
        check_pool_grad(dy, conv_info)
        return self._window_kernel(
            kernels.WGSL_MAX_POOL_BACKPROP, dy, x, conv_info.in_shape, conv_info
        )

    def avg_pool_backprop(self, dy, x, conv_info):
        check_pool_input(x, conv_info)
        check_pool_grad(dy, conv_info)
        return self._window_kernel(
            kernels.WGSL_AVG_POOL_BACKPROP, dy, x, conv_info.in_shape, conv_info
        )

    def max_pool_gather(self, g, x, conv_info):
        check_pool_input(x, conv_info)
        check_pool_input(g, conv_info)
        return self._window_kernel(
            kernels.WGSL_MAX_POOL_GATHER, g, x, conv_info.out_shape, conv_info
        )

    # ---- Convolution ----

    def _conv_kernel(self, code, first, second, third, out_shape, conv_info, has_bias=False):
        out = self._alloc(out_shape)
        if out.size:
            params = self._uniform(
                "16I",
                *_window_params(conv_info),
                conv_info.out_channels, int(has_bias), 0, 0,
            )
            self._run_flat(
                code,
                [
                    (first, "read"),
                    (second, "read"),
                    (third, "read"),
                    (out, "read_write"),
                    (params, "uniform"),
                ],
                out.size,
            )
        return out

    def conv2d(self, x, filters, bias, conv_info):
        check_pool_input(x, conv_info)
        if tuple(filters.shape) != conv_info.filter_shape:
            raise ShapeMismatchError(
                f"Filter shape {filters.shape} does not match {conv_info.filter_shape}"
            )
        if bias is not None and bias.shape != (conv_info.out_channels,):
            raise ShapeMismatchError(
                f"Bias shape {bias.shape} does not match {conv_info.out_channels} channels"
            )
        return self._conv_kernel(
            kernels.WGSL_CONV2D,
            x,
            filters,
            bias if bias is not None else filters,
            conv_info.out_shape,
            conv_info,
            has_bias=bias is not None,
        )

    def conv2d_der_input(self, dy, filters, conv_info):
        check_pool_grad(dy, conv_info)
        return self._conv_kernel(
            kernels.WGSL_CONV2D_DER_INPUT, dy, filters, dy, conv_info.in_shape, conv_info
        )

    def conv2d_der_filter(self, x, dy, conv_info):
        check_pool_input(x, conv_info)
        check_pool_grad(dy, conv_info)
        return self._conv_kernel(
            kernels.WGSL_CONV2D_DER_FILTER, x, dy, x, conv_info.filter_shape, conv_info
        )
