"""Checkpoint variable lookup."""

import numpy as np
import numpy.testing as npt
import pytest

from wgpu_math.checkpoint import get_variable, load_npz_variables
from wgpu_math.errors import MissingVariableError, ShapeMismatchError
from wgpu_math.ndarray import NDArray


@pytest.fixture
def variables():
    return {
        "dense/kernel": NDArray.zeros((3, 4)),
        "dense/bias": NDArray.zeros((4,)),
    }


def test_get_variable(variables):
    assert get_variable(variables, "dense/kernel") is variables["dense/kernel"]
    assert get_variable(variables, "dense/kernel", rank=2, shape=(3, None)).shape == (3, 4)


def test_missing_variable_lists_available(variables):
    with pytest.raises(MissingVariableError) as info:
        get_variable(variables, "dense/weights")
    assert info.value.name == "dense/weights"
    assert info.value.available == ["dense/bias", "dense/kernel"]
    assert "dense/bias" in str(info.value)
    assert isinstance(info.value, LookupError)


@pytest.mark.parametrize("kwargs", [{"rank": 1}, {"shape": (3, 5)}, {"shape": (3,)}])
def test_shape_checks(variables, kwargs):
    with pytest.raises(ShapeMismatchError):
        get_variable(variables, "dense/kernel", **kwargs)


def test_load_npz(tmp_path):
    path = tmp_path / "model.npz"
    np.savez(path, **{
        "fully_connected/weights": np.arange(6, dtype=np.float64).reshape(2, 3),
        "global_step": np.array([7], dtype=np.int64),
    })
    variables = load_npz_variables(path)
    weights = variables["fully_connected/weights"]
    assert weights.shape == (2, 3)
    assert weights.dtype == "float32"
    npt.assert_array_equal(weights.data_sync(), np.arange(6).reshape(2, 3))
    assert variables["global_step"].dtype == "int32"
