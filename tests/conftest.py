"""Shared fixtures: math contexts for each backend and small array helpers."""

import numpy as np
import pytest

from wgpu_math.ndarray import NDArray
from wgpu_math.ndarray_math import NDArrayMath, NDArrayMathCPU


def _wgpu_available():
    try:
        from wgpu_math.backends.backend_wgpu import WgpuBackend
    except ImportError:
        return False
    return WgpuBackend.is_supported()


WGPU_AVAILABLE = _wgpu_available()

requires_wgpu = pytest.mark.skipif(not WGPU_AVAILABLE, reason="no wgpu adapter available")


@pytest.fixture
def cpu_math():
    """Numpy-backed math context."""
    math = NDArrayMathCPU(seed=0)
    yield math
    math.dispose()


@pytest.fixture
def gpu_math():
    """wgpu-backed math context; skipped without an adapter."""
    if not WGPU_AVAILABLE:
        pytest.skip("no wgpu adapter available")
    from wgpu_math.ndarray_math import NDArrayMathGPU

    math = NDArrayMathGPU(seed=0)
    yield math
    math.dispose()


@pytest.fixture(params=["cpu", "wgpu"])
def math(request) -> NDArrayMath:
    """Every available backend in turn."""
    if request.param == "cpu":
        return request.getfixturevalue("cpu_math")
    return request.getfixturevalue("gpu_math")


def arr(values, dtype=None):
    """Host NDArray from nested lists or a numpy array."""
    values = np.asarray(values)
    if dtype is None:
        dtype = "int32" if values.dtype.kind in ("i", "u") else "float32"
    return NDArray.make(values.shape, values=values, dtype=dtype)


def randn(shape, seed=0):
    rng = np.random.default_rng(seed)
    return arr(rng.standard_normal(shape).astype(np.float32))
