"""
Reverse-mode automatic differentiation by tape replay.

Every differentiable op run while a tape is recording appends a
``KernelNode``: the named input arrays, an op-specific argument struct,
the output array and a gradient function. The gradient function maps
``(dy, y)`` to ``{input_name: thunk}``; a thunk is only called when its
input lies on a path between the requested ``xs`` and ``y``, so gradients
nobody asked for are never computed.

Node lifecycle:
  RECORDING  -> node appended to an open tape
  PLAYABLE   -> tape closed, ready for backward replay
  CONSUMED   -> gradient extracted during backward replay
  DISCARDED  -> scope that opened the tape has exited (or ``discard()``)

Backward replay consumes nodes in strictly decreasing ``node_id``.
"""

import enum
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

from wgpu_math.errors import TapeOrderViolationError
from wgpu_math.ndarray import NDArray

logger = logging.getLogger(__name__)

GradientThunk = Callable[[], NDArray]
GradientFn = Callable[[NDArray, NDArray], Dict[str, GradientThunk]]

_node_ids = itertools.count()


class NodeState(enum.Enum):
    RECORDING = "recording"
    PLAYABLE = "playable"
    CONSUMED = "consumed"
    DISCARDED = "discarded"


class KernelInputConfig:
    """Named input arrays plus the op-specific argument struct."""

    def __init__(self, inputs: Dict[str, NDArray], args: Any = None):
        self.inputs = dict(inputs)
        self.args = args

    def __repr__(self):
        names = ", ".join(f"{k}={v.shape}" for k, v in self.inputs.items())
        return f"KernelInputConfig({names}, args={self.args!r})"


class KernelNode:
    """
    One recorded operation.

    The node references its arrays but does not own them; the scope that
    created them disposes them.
    """

    def __init__(
        self,
        kernel: str,
        input_and_args: KernelInputConfig,
        output: NDArray,
        gradient: Optional[GradientFn] = None,
    ):
        """
        Args:
            kernel: Name of the operation, e.g. "MatMul"
            input_and_args: Inputs and arguments the op was called with
            output: Array the op produced
            gradient: Callable (dy, y) -> {input name: thunk}; None marks
                the op as non-differentiable
        """
        self.kernel = kernel
        self.input_and_args = input_and_args
        self.output = output
        self.gradient = gradient
        self.node_id = next(_node_ids)
        self.state = NodeState.RECORDING

    @property
    def inputs(self) -> Dict[str, NDArray]:
        return self.input_and_args.inputs

    @property
    def args(self):
        return self.input_and_args.args

    def __repr__(self):
        return f"{type(self).__name__}({self.kernel}, id={self.node_id}, {self.state.value})"


def _filter_nodes(nodes: List[KernelNode], xs: List[NDArray], y: NDArray):
    """Nodes on some path from ``xs`` to ``y``, in recording order.

    Returns the kept nodes and the ids of arrays that depend on ``xs``.
    """
    from_x = {id(x) for x in xs}
    forward = []
    for node in nodes:
        if any(id(t) in from_x for t in node.inputs.values()):
            from_x.add(id(node.output))
            forward.append(node)

    to_y = {id(y)}
    kept = []
    for node in reversed(forward):
        if id(node.output) not in to_y:
            continue
        kept.append(node)
        for t in node.inputs.values():
            if id(t) in from_x:
                to_y.add(id(t))
    kept.reverse()
    return kept, from_x


class Tape:
    """Ordered record of kernel nodes for one gradient computation."""

    def __init__(self, math=None):
        self._math = math
        self._nodes: List[KernelNode] = []
        self._closed = False
        self._last_consumed: Optional[int] = None

    @property
    def nodes(self) -> List[KernelNode]:
        return list(self._nodes)

    @property
    def is_recording(self) -> bool:
        return not self._closed

    def record(self, node: KernelNode) -> KernelNode:
        if self._closed:
            raise RuntimeError("Cannot record onto a closed tape")
        self._nodes.append(node)
        logger.debug("Recorded %r", node)
        return node

    def close(self):
        """Stop recording; every recorded node becomes playable."""
        if self._closed:
            return
        self._closed = True
        for node in self._nodes:
            if node.state is NodeState.RECORDING:
                node.state = NodeState.PLAYABLE

    def discard(self):
        """Drop every node; the tape can no longer be replayed."""
        self._closed = True
        for node in self._nodes:
            node.state = NodeState.DISCARDED
        self._nodes = []

    def consume(self, node: KernelNode, dy: NDArray) -> Dict[str, GradientThunk]:
        """
        Extract the gradient thunks of one node.

        Raises:
            TapeOrderViolationError: if the node is not playable, or its id
                is not lower than the previously consumed node's
        """
        if node.state is not NodeState.PLAYABLE:
            raise TapeOrderViolationError(
                f"Cannot consume {node!r}: node is {node.state.value}, not playable"
            )
        if self._last_consumed is not None and node.node_id >= self._last_consumed:
            raise TapeOrderViolationError(
                f"Node {node.node_id} consumed after node {self._last_consumed}; "
                "backward replay must visit nodes in reverse creation order"
            )
        node.state = NodeState.CONSUMED
        self._last_consumed = node.node_id
        if node.gradient is None:
            return {}
        return node.gradient(dy, node.output)

    def gradients(self, y: NDArray, xs: List[NDArray], dy: Optional[NDArray] = None) -> List[NDArray]:
        """
        Backpropagate from ``y`` to each of ``xs``.

        Args:
            y: Array whose gradient is propagated
            xs: Arrays to differentiate with respect to
            dy: Gradient of ``y``; ones when omitted

        Returns:
            One gradient per ``x`` (zeros when ``y`` does not depend on it)
        """
        math = self._math
        if math is None:
            raise RuntimeError("Tape was created without a math context")
        self.close()

        nodes, from_x = _filter_nodes(self._nodes, xs, y)
        grads = {id(y): dy if dy is not None else math.ones(y.shape)}

        for node in reversed(nodes):
            grad_y = grads.get(id(node.output))
            if grad_y is None:
                continue
            thunks = self.consume(node, grad_y)
            for name, x in node.inputs.items():
                if id(x) not in from_x or name not in thunks:
                    continue
                grad_x = thunks[name]()
                if tuple(grad_x.shape) != tuple(x.shape):
                    raise RuntimeError(
                        f"Gradient of {node.kernel} input '{name}' has shape "
                        f"{grad_x.shape}, expected {x.shape}"
                    )
                previous = grads.get(id(x))
                grads[id(x)] = grad_x if previous is None else math.add(previous, grad_x)

        return [grads[id(x)] if id(x) in grads else math.zeros(x.shape) for x in xs]
