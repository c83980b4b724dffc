"""
LSTM cells built from differentiable math primitives.

Gate layout follows TensorFlow's ``BasicLSTMCell``: the fused matmul result
of ``concat([data, h]) @ kernel + bias`` is split along columns into four
``[batch, units]`` blocks in the order (i, j, f, o):

  i: input gate      sigmoid
  j: cell candidate  tanh
  f: forget gate     sigmoid, offset by ``forget_bias``
  o: output gate     sigmoid

  new_c = c * sigmoid(f + forget_bias) + sigmoid(i) * tanh(j)
  new_h = tanh(new_c) * sigmoid(o)
"""

from typing import Callable, List, Sequence, Tuple

from wgpu_math.errors import ShapeMismatchError

CellFn = Callable[..., Tuple]


def _check_lstm_shapes(lstm_kernel, lstm_bias, data, c, h):
    if lstm_kernel.rank != 2 or lstm_kernel.shape[1] % 4 != 0:
        raise ShapeMismatchError(
            f"LSTM kernel must be [input + units, 4 * units], got {lstm_kernel.shape}"
        )
    units = lstm_kernel.shape[1] // 4
    if tuple(lstm_bias.shape) != (4 * units,):
        raise ShapeMismatchError(
            f"LSTM bias must be [{4 * units}], got {lstm_bias.shape}"
        )
    if data.rank != 2 or c.rank != 2 or h.rank != 2:
        raise ShapeMismatchError(
            f"LSTM data, c and h must be 2-D, got {data.shape}, {c.shape}, {h.shape}"
        )
    batch = data.shape[0]
    if tuple(c.shape) != (batch, units) or tuple(h.shape) != (batch, units):
        raise ShapeMismatchError(
            f"LSTM state must be [{batch}, {units}], got c={c.shape} h={h.shape}"
        )
    if data.shape[1] + units != lstm_kernel.shape[0]:
        raise ShapeMismatchError(
            f"LSTM kernel expects {lstm_kernel.shape[0] - units} input features, "
            f"got {data.shape[1]}"
        )


def basic_lstm_cell(math, forget_bias, lstm_kernel, lstm_bias, data, c, h):
    """
    Run one LSTM step.

    Args:
        math: NDArrayMath context
        forget_bias: Scalar (or number) added to the forget gate
        lstm_kernel: [input + units, 4 * units] weights
        lstm_bias: [4 * units] bias
        data: [batch, input] input
        c: [batch, units] previous cell state
        h: [batch, units] previous hidden state

    Returns:
        (new_c, new_h)
    """
    _check_lstm_shapes(lstm_kernel, lstm_bias, data, c, h)

    def step(keep, track):
        data_and_h = math.concat_2d(data, h, 1)
        res = math.add(math.matmul(data_and_h, lstm_kernel), lstm_bias)
        i, j, f, o = math.split(res, 4, axis=1)

        new_c = math.add(
            math.multiply(c, math.sigmoid(math.add(f, forget_bias))),
            math.multiply(math.sigmoid(i), math.tanh(j)),
        )
        new_h = math.multiply(math.tanh(new_c), math.sigmoid(o))
        return new_c, new_h

    return math.scope(step, name="basic_lstm_cell")


class LSTMCell:
    """A ``basic_lstm_cell`` bound to its weights: ``cell(data, c, h)``."""

    def __init__(self, math, forget_bias, lstm_kernel, lstm_bias):
        self.math = math
        self.forget_bias = forget_bias
        self.lstm_kernel = lstm_kernel
        self.lstm_bias = lstm_bias

    @property
    def units(self) -> int:
        return self.lstm_bias.shape[0] // 4

    def __call__(self, data, c, h):
        return basic_lstm_cell(
            self.math, self.forget_bias, self.lstm_kernel, self.lstm_bias, data, c, h
        )

    def __repr__(self):
        return f"LSTMCell(kernel={self.lstm_kernel.shape}, units={self.units})"


def multi_rnn_cell(math, lstm_cells: Sequence[CellFn], data, c: List, h: List):
    """
    Chain LSTM cells; each layer's new hidden state is the next layer's input.

    Returns:
        (new_c_list, new_h_list), one entry per layer
    """
    if not lstm_cells:
        raise ValueError("multi_rnn_cell needs at least one cell")
    if len(c) != len(lstm_cells) or len(h) != len(lstm_cells):
        raise ShapeMismatchError(
            f"multi_rnn_cell got {len(lstm_cells)} cells but {len(c)} c and {len(h)} h states"
        )

    def run(keep, track):
        layer_input = data
        new_c = []
        new_h = []
        for cell, c_i, h_i in zip(lstm_cells, c, h):
            c_out, h_out = cell(layer_input, c_i, h_i)
            new_c.append(c_out)
            new_h.append(h_out)
            layer_input = h_out
        return new_c, new_h

    return math.scope(run, name="multi_rnn_cell")
