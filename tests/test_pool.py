"""Pooling and convolution against straightforward numpy loops."""

import numpy as np
import numpy.testing as npt
import pytest

from wgpu_math.conv_util import compute_conv2d_info, compute_pool2d_info
from wgpu_math.errors import ShapeMismatchError
from wgpu_math.kernel_nodes import AVG_POOL, MAX_POOL, MAX_POOL_BACKPROP, PoolBackpropNode, PoolNode

from tests.conftest import arr, randn


# ---------------------------------------------------------------------------
# Reference implementations
# ---------------------------------------------------------------------------

def _windows(info):
    """Yield (b, r, c, [(in_r, in_c), ...]) with only in-bounds cells."""
    pad = info.pad_info
    for b in range(info.batch_size):
        for r in range(info.out_height):
            for c in range(info.out_width):
                cells = []
                for wr in range(info.filter_height):
                    for wc in range(info.filter_width):
                        ir = r * info.stride_height + wr - pad.top
                        ic = c * info.stride_width + wc - pad.left
                        if 0 <= ir < info.in_height and 0 <= ic < info.in_width:
                            cells.append((ir, ic))
                yield b, r, c, cells


def ref_max_pool(x, info):
    out = np.zeros(info.out_shape, dtype=np.float32)
    for b, r, c, cells in _windows(info):
        out[b, r, c] = np.max([x[b, ir, ic] for ir, ic in cells], axis=0)
    return out


def ref_avg_pool(x, info):
    out = np.zeros(info.out_shape, dtype=np.float32)
    for b, r, c, cells in _windows(info):
        out[b, r, c] = np.mean([x[b, ir, ic] for ir, ic in cells], axis=0)
    return out


def ref_max_pool_backprop(dy, x, info):
    dx = np.zeros(info.in_shape, dtype=np.float32)
    for b, r, c, cells in _windows(info):
        for ch in range(info.in_channels):
            values = [x[b, ir, ic, ch] for ir, ic in cells]
            ir, ic = cells[int(np.argmax(values))]
            dx[b, ir, ic, ch] += dy[b, r, c, ch]
    return dx


def ref_avg_pool_backprop(dy, info):
    dx = np.zeros(info.in_shape, dtype=np.float32)
    for b, r, c, cells in _windows(info):
        for ir, ic in cells:
            dx[b, ir, ic] += dy[b, r, c] / len(cells)
    return dx


def ref_conv2d(x, w, bias, info):
    out = np.zeros(info.out_shape, dtype=np.float32)
    pad = info.pad_info
    for b in range(info.batch_size):
        for r in range(info.out_height):
            for c in range(info.out_width):
                for wr in range(info.filter_height):
                    for wc in range(info.filter_width):
                        ir = r * info.stride_height + wr - pad.top
                        ic = c * info.stride_width + wc - pad.left
                        if 0 <= ir < info.in_height and 0 <= ic < info.in_width:
                            out[b, r, c] += x[b, ir, ic] @ w[wr, wc]
    if bias is not None:
        out += bias
    return out


POOL_CASES = [
    # shape, filter, strides, pad
    ((1, 4, 4, 1), 2, 2, "valid"),
    ((2, 5, 5, 3), 3, 2, "same"),
    ((1, 6, 5, 2), (3, 2), (1, 2), 1),
    ((1, 3, 3, 1), 3, 1, "same"),
]


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

class TestConvInfo:

    def test_same_padding(self):
        info = compute_pool2d_info((1, 5, 5, 1), 3, 2, "same")
        assert info.out_shape == (1, 3, 3, 1)
        assert (info.pad_info.top, info.pad_info.bottom) == (1, 1)

    def test_valid_padding(self):
        info = compute_conv2d_info((2, 7, 6, 3), (3, 2, 3, 8), (2, 1), "valid")
        assert info.out_shape == (2, 3, 5, 8)
        assert info.filter_shape == (3, 2, 3, 8)

    def test_errors(self):
        with pytest.raises(ShapeMismatchError):
            compute_pool2d_info((1, 2, 2, 1), 3, 1, "valid")
        with pytest.raises(ShapeMismatchError):
            compute_conv2d_info((1, 4, 4, 3), (2, 2, 2, 1), 1)
        with pytest.raises(ValueError):
            compute_pool2d_info((1, 4, 4, 1), 2, 1, "full")

    def test_conv_info_is_immutable(self):
        info = compute_pool2d_info((1, 4, 4, 1), 2, 2)
        with pytest.raises(AttributeError):
            info.out_height = 3


# ---------------------------------------------------------------------------
# Pooling
# ---------------------------------------------------------------------------

class TestPooling:

    @pytest.mark.parametrize("shape, filter_size, strides, pad", POOL_CASES)
    def test_forward(self, math, shape, filter_size, strides, pad):
        x = randn(shape, seed=1)
        info = compute_pool2d_info(shape, filter_size, strides, pad)
        with math.scope():
            npt.assert_allclose(
                math.read(math.max_pool(x, filter_size, strides, pad)),
                ref_max_pool(x.data_sync(), info), rtol=1e-6,
            )
            npt.assert_allclose(
                math.read(math.avg_pool(x, filter_size, strides, pad)),
                ref_avg_pool(x.data_sync(), info), rtol=1e-5, atol=1e-6,
            )

    @pytest.mark.parametrize("shape, filter_size, strides, pad", POOL_CASES)
    def test_backprop(self, math, shape, filter_size, strides, pad):
        x = randn(shape, seed=2)
        info = compute_pool2d_info(shape, filter_size, strides, pad)
        dy = randn(info.out_shape, seed=3)
        with math.scope():
            npt.assert_allclose(
                math.read(math.max_pool_backprop(dy, x, filter_size, strides, pad)),
                ref_max_pool_backprop(dy.data_sync(), x.data_sync(), info),
                rtol=1e-5, atol=1e-6,
            )
            npt.assert_allclose(
                math.read(math.avg_pool_backprop(dy, x, filter_size, strides, pad)),
                ref_avg_pool_backprop(dy.data_sync(), info),
                rtol=1e-5, atol=1e-6,
            )

    def test_max_pool_routes_to_first_maximum(self, math):
        x = arr(np.array([[1.0, 5.0], [5.0, 2.0]], dtype=np.float32).reshape(1, 2, 2, 1))
        dy = arr(np.array([3.0], dtype=np.float32).reshape(1, 1, 1, 1))
        with math.scope():
            dx = math.read(math.max_pool_backprop(dy, x, 2, 2))
        npt.assert_array_equal(dx.reshape(2, 2), [[0.0, 3.0], [0.0, 0.0]])

    def test_rank3_input(self, math):
        x = randn((4, 4, 2), seed=4)
        with math.scope():
            y = math.max_pool(x, 2, 2)
            assert y.shape == (2, 2, 2)

    def test_rejects_rank2(self, math):
        with pytest.raises(ShapeMismatchError):
            math.avg_pool(randn((4, 4)), 2, 2)

    def test_pool_gradient_through_tape(self, math):
        x = randn((1, 4, 4, 2), seed=5)
        info = compute_pool2d_info(x.shape, 2, 2, "valid")
        grad = math.gradients(lambda: math.sum(math.max_pool(x, 2, 2)), x)
        expected = ref_max_pool_backprop(np.ones(info.out_shape, np.float32), x.data_sync(), info)
        npt.assert_allclose(math.read(grad), expected)

    def test_records_pool_nodes(self, math):
        x = randn((1, 4, 4, 1), seed=6)
        with math.scope():
            with math.record_tape() as tape:
                math.avg_pool(x, 2, 2)
                math.max_pool(x, 2, 2)
            kinds = [(type(n), n.kernel) for n in tape.nodes]
            assert kinds == [(PoolNode, AVG_POOL), (PoolNode, MAX_POOL)]
            assert tape.nodes[0].conv_info.out_shape == (1, 2, 2, 1)

    def test_second_order_through_backprop_node(self, math):
        # d/d(dy) of sum(max_pool_backprop(dy, x) * w) is max_pool_gather(w, x).
        x = randn((1, 4, 4, 1), seed=7)
        info = compute_pool2d_info(x.shape, 2, 2, "valid")
        dy = randn(info.out_shape, seed=8)
        w = randn(x.shape, seed=9)

        with math.scope():
            with math.record_tape() as tape:
                dx = math.max_pool_backprop(dy, x, 2, 2)
                y = math.sum(math.multiply(dx, w))
            assert any(isinstance(n, PoolBackpropNode) and n.kernel == MAX_POOL_BACKPROP
                       for n in tape.nodes)
            ddy, ddx = tape.gradients(y, [dy, x])

            xv, wv = x.data_sync(), w.data_sync()
            expected = np.zeros(info.out_shape, np.float32)
            for b, r, c, cells in _windows(info):
                values = [xv[b, ir, ic, 0] for ir, ic in cells]
                ir, ic = cells[int(np.argmax(values))]
                expected[b, r, c, 0] = wv[b, ir, ic, 0]
            npt.assert_allclose(math.read(ddy), expected, rtol=1e-6)
            npt.assert_array_equal(math.read(ddx), np.zeros(x.shape))

    def test_avg_backprop_gradient_is_avg_pool(self, math):
        x = randn((1, 4, 4, 1), seed=10)
        info = compute_pool2d_info(x.shape, 2, 2, "valid")
        dy = randn(info.out_shape, seed=11)
        w = randn(x.shape, seed=12)
        grad = math.gradients(
            lambda: math.sum(math.multiply(math.avg_pool_backprop(dy, x, 2, 2), w)), dy
        )
        npt.assert_allclose(math.read(grad), ref_avg_pool(w.data_sync(), info), rtol=1e-5)


# ---------------------------------------------------------------------------
# Convolution
# ---------------------------------------------------------------------------

CONV_CASES = [
    ((1, 5, 5, 2), (3, 3, 2, 4), 1, "valid"),
    ((2, 6, 5, 3), (3, 2, 3, 2), (2, 1), "same"),
    ((1, 4, 4, 1), (2, 2, 1, 3), 2, 1),
]


class TestConv2D:

    @pytest.mark.parametrize("x_shape, w_shape, strides, pad", CONV_CASES)
    def test_forward(self, math, x_shape, w_shape, strides, pad):
        x = randn(x_shape, seed=20)
        w = randn(w_shape, seed=21)
        bias = randn((w_shape[3],), seed=22)
        info = compute_conv2d_info(x_shape, w_shape, strides, pad)
        with math.scope():
            out = math.conv2d(x, w, bias, strides, pad)
            npt.assert_allclose(
                math.read(out), ref_conv2d(x.data_sync(), w.data_sync(), bias.data_sync(), info),
                rtol=1e-4, atol=1e-4,
            )
            no_bias = math.conv2d(x, w, None, strides, pad)
            npt.assert_allclose(
                math.read(no_bias), ref_conv2d(x.data_sync(), w.data_sync(), None, info),
                rtol=1e-4, atol=1e-4,
            )

    @pytest.mark.parametrize("x_shape, w_shape, strides, pad", CONV_CASES)
    def test_gradients_match_reference(self, math, x_shape, w_shape, strides, pad):
        x = randn(x_shape, seed=23)
        w = randn(w_shape, seed=24)
        info = compute_conv2d_info(x_shape, w_shape, strides, pad)
        probe = np.random.default_rng(25).standard_normal(info.out_shape).astype(np.float32)
        probe_arr = arr(probe)

        dx, dw = math.gradients(
            lambda: math.sum(math.multiply(math.conv2d(x, w, None, strides, pad), probe_arr)),
            [x, w],
        )

        # The loss is linear in each argument, so the gradient is exact.
        xv, wv = x.data_sync(), w.data_sync()
        expected_dw = np.zeros(w_shape, np.float32)
        for i in np.ndindex(*w_shape):
            basis = np.zeros(w_shape, np.float32)
            basis[i] = 1.0
            expected_dw[i] = np.sum(ref_conv2d(xv, basis, None, info) * probe)
        expected_dx = np.zeros(x_shape, np.float32)
        for i in np.ndindex(*x_shape):
            basis = np.zeros(x_shape, np.float32)
            basis[i] = 1.0
            expected_dx[i] = np.sum(ref_conv2d(basis, wv, None, info) * probe)

        npt.assert_allclose(math.read(dx), expected_dx, rtol=1e-4, atol=1e-4)
        npt.assert_allclose(math.read(dw), expected_dw, rtol=1e-4, atol=1e-4)

    def test_bias_gradient(self, math):
        x = randn((1, 3, 3, 1), seed=26)
        w = randn((2, 2, 1, 2), seed=27)
        bias = arr(np.zeros(2, np.float32))
        grad = math.gradients(lambda: math.sum(math.conv2d(x, w, bias)), bias)
        npt.assert_allclose(math.read(grad), [4.0, 4.0])

    def test_depth_mismatch(self, math):
        with pytest.raises(ShapeMismatchError):
            math.conv2d(randn((1, 4, 4, 2)), randn((2, 2, 3, 1)))
