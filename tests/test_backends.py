"""CPU and wgpu backends agree on the same inputs."""

import numpy as np
import numpy.testing as npt
import pytest

from wgpu_math.backends.backend import broadcast_shapes, matmul_shape
from wgpu_math.errors import ShapeMismatchError
from wgpu_math.ndarray import Array1D, NDArray

from tests.conftest import arr, randn, requires_wgpu


class TestShapeHelpers:

    @pytest.mark.parametrize("a, b, expected", [
        ((2, 3), (2, 3), (2, 3)),
        ((2, 3), (3,), (2, 3)),
        ((2, 1), (1, 4), (2, 4)),
        ((), (5,), (5,)),
    ])
    def test_broadcast_shapes(self, a, b, expected):
        assert tuple(broadcast_shapes(a, b)) == expected

    def test_broadcast_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            broadcast_shapes((2, 3), (4,))

    def test_matmul_shape(self):
        assert tuple(matmul_shape((2, 3), (3, 4), False, False)) == (2, 3, 4)
        assert tuple(matmul_shape((3, 2), (3, 4), True, False)) == (2, 3, 4)
        assert tuple(matmul_shape((2, 3), (4, 3), False, True)) == (2, 3, 4)
        with pytest.raises(ShapeMismatchError):
            matmul_shape((2, 3), (2, 4), False, False)


@requires_wgpu
class TestParity:

    def _both(self, cpu_math, gpu_math, fn):
        with cpu_math.scope():
            expected = cpu_math.read(fn(cpu_math))
        with gpu_math.scope():
            got = gpu_math.read(fn(gpu_math))
        return expected, got

    @pytest.mark.parametrize("op", ["exp", "tanh", "sigmoid", "relu", "abs", "floor", "neg"])
    def test_unary(self, cpu_math, gpu_math, op):
        x = randn((4, 5), seed=1)
        expected, got = self._both(cpu_math, gpu_math, lambda m: getattr(m, op)(x))
        npt.assert_allclose(got, expected, rtol=1e-5, atol=1e-6)

    @pytest.mark.parametrize("op", ["add", "sub", "multiply", "maximum"])
    def test_broadcast_binary(self, cpu_math, gpu_math, op):
        a, b = randn((3, 4), seed=2), randn((4,), seed=3)
        expected, got = self._both(cpu_math, gpu_math, lambda m: getattr(m, op)(a, b))
        npt.assert_allclose(got, expected, rtol=1e-5, atol=1e-6)

    def test_matmul_and_softmax(self, cpu_math, gpu_math):
        a, b = randn((3, 7), seed=4), randn((7, 5), seed=5)
        expected, got = self._both(
            cpu_math, gpu_math, lambda m: m.softmax(m.matmul(a, b))
        )
        npt.assert_allclose(got, expected, rtol=1e-4, atol=1e-6)

    def test_reductions(self, cpu_math, gpu_math):
        x = randn((6, 9), seed=6)
        for axis in (None, 0, 1):
            expected, got = self._both(cpu_math, gpu_math, lambda m: m.sum(x, axis))
            npt.assert_allclose(got, expected, rtol=1e-4, atol=1e-5)
            expected, got = self._both(cpu_math, gpu_math, lambda m: m.max(x, axis))
            npt.assert_array_equal(got, expected)

    def test_argmax_and_one_hot(self, cpu_math, gpu_math):
        x = randn((11,), seed=7)
        expected, got = self._both(cpu_math, gpu_math, lambda m: m.argmax(x))
        assert int(got) == int(expected)
        expected, got = self._both(
            cpu_math, gpu_math, lambda m: m.one_hot(arr([0, 3, 2], "int32"), 4)
        )
        npt.assert_array_equal(got, expected)

    def test_int32_survives_device_round_trip(self, gpu_math):
        x = arr([1, -2, 300000], "int32")
        x.upload(gpu_math.backend)
        assert x.is_on_device
        out = x.data_sync()
        assert out.dtype == np.int32
        npt.assert_array_equal(out, [1, -2, 300000])

    def test_multinomial_same_seed_agrees(self, cpu_math, gpu_math):
        p = arr([0.1, 0.2, 0.3, 0.4])
        expected, got = self._both(
            cpu_math, gpu_math, lambda m: m.multinomial(p, 1000, seed=42)
        )
        # Both draw the same uniforms; only cumulative-sum rounding may differ.
        assert np.mean(got == expected) > 0.99

    def test_lstm_step_agrees(self, cpu_math, gpu_math):
        kernel, bias = randn((9, 16), seed=8), randn((16,), seed=9)
        data, c, h = randn((1, 5), 10), randn((1, 4), 11), randn((1, 4), 12)
        expected, got = self._both(
            cpu_math, gpu_math,
            lambda m: m.basic_lstm_cell(1.0, kernel, bias, data, c, h)[1],
        )
        npt.assert_allclose(got, expected, rtol=1e-4, atol=1e-5)


@requires_wgpu
class TestDeviceBuffers:

    def test_scope_releases_device_buffers(self, gpu_math):
        backend = gpu_math.backend
        x = randn((32,), seed=13)
        before = backend.num_live_buffers
        with gpu_math.scope():
            y = gpu_math.tanh(gpu_math.exp(x))
            gpu_math.sum(y)
        # Only the uploaded input remains.
        assert backend.num_live_buffers == before + 1
        x.dispose()
        assert backend.num_live_buffers == before

    def test_read_releases_device_buffer(self, gpu_math):
        backend = gpu_math.backend
        with gpu_math.scope() as scope:
            y = scope.keep(gpu_math.exp(randn((8,), seed=14)))
        live = backend.num_live_buffers
        assert y.is_on_device
        y.data_sync()
        assert not y.is_on_device
        assert backend.num_live_buffers == live - 1
        y.dispose()

    def test_uniform_buffers_destroyed_after_dispatch(self, gpu_math, monkeypatch):
        backend = gpu_math.backend
        created, destroyed = [], []
        make_uniform = backend._uniform

        def recording_uniform(fmt, *values):
            buffer = make_uniform(fmt, *values)
            created.append(buffer)
            return buffer

        buffer_type = type(make_uniform("4I", 0, 0, 0, 0))
        destroy = buffer_type.destroy

        def recording_destroy(buffer):
            destroyed.append(buffer)
            destroy(buffer)

        monkeypatch.setattr(backend, "_uniform", recording_uniform)
        monkeypatch.setattr(buffer_type, "destroy", recording_destroy)
        x = randn((4, 4), seed=15)
        with gpu_math.scope():
            gpu_math.softmax(gpu_math.add(gpu_math.matmul(x, x), 1.0))
            gpu_math.one_hot(Array1D.new([0, 2], "int32"), 3)
        x.dispose()
        assert len(created) >= 4
        assert all(any(b is d for d in destroyed) for b in created)

    def test_zeros_are_zero(self, gpu_math):
        z = gpu_math.zeros((3, 3))
        npt.assert_array_equal(gpu_math.read(z), np.zeros((3, 3), np.float32))
        z.dispose()

    def test_host_array_uploads_on_first_use(self, gpu_math):
        x = NDArray.make((2,), values=[1.0, 2.0])
        assert not x.is_on_device
        with gpu_math.scope():
            gpu_math.exp(x)
            assert x.is_on_device
        x.dispose()
