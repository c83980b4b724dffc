"""Window geometry for 2-D convolution and pooling (NHWC layout)."""

import math
from dataclasses import dataclass
from typing import Tuple, Union

from wgpu_math.errors import ShapeMismatchError

PadSpec = Union[str, int]


@dataclass(frozen=True)
class PadInfo:
    top: int
    left: int
    bottom: int
    right: int


@dataclass(frozen=True)
class Conv2DInfo:
    """Immutable description of one spatial window operation.

    Input is ``[batch, in_height, in_width, in_channels]``; output is
    ``[batch, out_height, out_width, out_channels]``. For pooling,
    ``out_channels == in_channels``.
    """

    batch_size: int
    in_height: int
    in_width: int
    in_channels: int
    out_height: int
    out_width: int
    out_channels: int
    stride_height: int
    stride_width: int
    filter_height: int
    filter_width: int
    pad_info: PadInfo

    @property
    def in_shape(self) -> Tuple[int, int, int, int]:
        return (self.batch_size, self.in_height, self.in_width, self.in_channels)

    @property
    def out_shape(self) -> Tuple[int, int, int, int]:
        return (self.batch_size, self.out_height, self.out_width, self.out_channels)

    @property
    def filter_shape(self) -> Tuple[int, int, int, int]:
        return (self.filter_height, self.filter_width, self.in_channels, self.out_channels)


def _pair(value, name):
    if isinstance(value, int):
        return value, value
    value = tuple(value)
    if len(value) != 2:
        raise ValueError(f"{name} must be an int or a pair, got {value}")
    return int(value[0]), int(value[1])


def _pad_and_out_shape(pad, in_height, in_width, stride_height, stride_width,
                       filter_height, filter_width):
    if isinstance(pad, int):
        out_height = (in_height - filter_height + 2 * pad) // stride_height + 1
        out_width = (in_width - filter_width + 2 * pad) // stride_width + 1
        pad_info = PadInfo(top=pad, left=pad, bottom=pad, right=pad)
    elif pad == "same":
        out_height = math.ceil(in_height / stride_height)
        out_width = math.ceil(in_width / stride_width)
        pad_along_height = max(
            (out_height - 1) * stride_height + filter_height - in_height, 0
        )
        pad_along_width = max(
            (out_width - 1) * stride_width + filter_width - in_width, 0
        )
        top = pad_along_height // 2
        left = pad_along_width // 2
        pad_info = PadInfo(
            top=top,
            left=left,
            bottom=pad_along_height - top,
            right=pad_along_width - left,
        )
    elif pad == "valid":
        out_height = math.ceil((in_height - filter_height + 1) / stride_height)
        out_width = math.ceil((in_width - filter_width + 1) / stride_width)
        pad_info = PadInfo(top=0, left=0, bottom=0, right=0)
    else:
        raise ValueError(f"Unknown padding '{pad}', expected 'same', 'valid' or an int")

    if out_height <= 0 or out_width <= 0:
        raise ShapeMismatchError(
            f"Window {filter_height}x{filter_width} with padding {pad!r} does not fit "
            f"input {in_height}x{in_width}"
        )
    return pad_info, out_height, out_width


def compute_pool2d_info(in_shape, filter_size, strides, pad: PadSpec = "valid") -> Conv2DInfo:
    """Window geometry for max/avg pooling over an NHWC input."""
    in_shape = tuple(in_shape)
    if len(in_shape) != 4:
        raise ShapeMismatchError(f"Pooling expects a rank-4 input, got shape {in_shape}")
    batch_size, in_height, in_width, channels = in_shape
    filter_height, filter_width = _pair(filter_size, "filter_size")
    stride_height, stride_width = _pair(strides, "strides")
    pad_info, out_height, out_width = _pad_and_out_shape(
        pad, in_height, in_width, stride_height, stride_width,
        filter_height, filter_width,
    )
    return Conv2DInfo(
        batch_size=batch_size,
        in_height=in_height,
        in_width=in_width,
        in_channels=channels,
        out_height=out_height,
        out_width=out_width,
        out_channels=channels,
        stride_height=stride_height,
        stride_width=stride_width,
        filter_height=filter_height,
        filter_width=filter_width,
        pad_info=pad_info,
    )


def compute_conv2d_info(in_shape, filter_shape, strides, pad: PadSpec = "valid") -> Conv2DInfo:
    """Window geometry for a convolution with a ``[fh, fw, in, out]`` filter."""
    in_shape = tuple(in_shape)
    filter_shape = tuple(filter_shape)
    if len(in_shape) != 4 or len(filter_shape) != 4:
        raise ShapeMismatchError(
            f"conv2d expects rank-4 input and filter, got {in_shape} and {filter_shape}"
        )
    batch_size, in_height, in_width, in_channels = in_shape
    filter_height, filter_width, filter_in, out_channels = filter_shape
    if filter_in != in_channels:
        raise ShapeMismatchError(
            f"Input depth {in_channels} does not match filter depth {filter_in}"
        )
    stride_height, stride_width = _pair(strides, "strides")
    pad_info, out_height, out_width = _pad_and_out_shape(
        pad, in_height, in_width, stride_height, stride_width,
        filter_height, filter_width,
    )
    return Conv2DInfo(
        batch_size=batch_size,
        in_height=in_height,
        in_width=in_width,
        in_channels=in_channels,
        out_height=out_height,
        out_width=out_width,
        out_channels=out_channels,
        stride_height=stride_height,
        stride_width=stride_width,
        filter_height=filter_height,
        filter_width=filter_width,
        pad_info=pad_info,
    )
