"""Typed tape nodes for spatial window (pooling) operations.

Both nodes carry the ``Conv2DInfo`` that describes the window geometry so
the op can be replayed during backpropagation. Pooling and its backprop are
each other's gradient: the gradient of ``max/avg_pool_backprop`` with
respect to ``dy`` is the forward pooling applied to the incoming gradient.
"""

from wgpu_math.conv_util import Conv2DInfo
from wgpu_math.errors import ShapeMismatchError
from wgpu_math.tape import KernelInputConfig, KernelNode

MAX_POOL = "MaxPool"
AVG_POOL = "AvgPool"
MAX_POOL_BACKPROP = "MaxPoolBackprop"
AVG_POOL_BACKPROP = "AvgPoolBackprop"

POOL_KERNELS = (MAX_POOL, AVG_POOL)
POOL_BACKPROP_KERNELS = (MAX_POOL_BACKPROP, AVG_POOL_BACKPROP)


def _check_shape(name, array, expected):
    if tuple(array.shape) != tuple(expected):
        raise ShapeMismatchError(f"{name} has shape {array.shape}, expected {expected}")


class PoolNode(KernelNode):
    """Forward pooling: inputs ``{x}``, args ``conv_info``."""

    def __init__(self, kernel, x, conv_info: Conv2DInfo, output, gradient=None):
        if kernel not in POOL_KERNELS:
            raise ValueError(f"Unknown pooling kernel '{kernel}'")
        _check_shape("Pool input x", x, conv_info.in_shape)
        _check_shape("Pool output", output, conv_info.out_shape)
        super().__init__(kernel, KernelInputConfig({"x": x}, conv_info), output, gradient)

    @property
    def conv_info(self) -> Conv2DInfo:
        return self.args


class PoolBackpropNode(KernelNode):
    """Pooling backprop: inputs ``{dy, x}``, args ``conv_info``, output ``dx``."""

    def __init__(self, kernel, dy, x, conv_info: Conv2DInfo, output, gradient=None):
        if kernel not in POOL_BACKPROP_KERNELS:
            raise ValueError(f"Unknown pooling backprop kernel '{kernel}'")
        _check_shape("Pool backprop dy", dy, conv_info.out_shape)
        _check_shape("Pool backprop x", x, conv_info.in_shape)
        _check_shape("Pool backprop output", output, conv_info.in_shape)
        super().__init__(
            kernel, KernelInputConfig({"dy": dy, "x": x}, conv_info), output, gradient
        )

    @property
    def conv_info(self) -> Conv2DInfo:
        return self.args
