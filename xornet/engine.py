"""
Tensor expression graph with a reusable tape machine.

A graph is only a set of instructions: nodes say how a value is computed,
but hold no computed values themselves. Placeholders, parameters and
constants carry a bound value; every other node is an op whose value is
produced by a TapeMachine when the graph is run. The machine keeps all the
per-run state (values and gradients), so several graphs and machines can
live side by side.
"""

import math
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import numpy as np
from graphviz import Digraph


class GraphError(Exception):
    """The graph was built or used in a way that can never work."""


class ShapeError(GraphError, ValueError):
    """The operands of an op have incompatible shapes."""


class ExecutionError(RuntimeError):
    """A run of the tape machine failed."""


class ValueNotAvailable(RuntimeError):
    """A read handle was read before the machine produced its value."""


Initializer = Callable[[tuple[int, ...], np.random.Generator], np.ndarray]


def glorot_normal(gain: float = 1.0) -> Initializer:
    """
    Normal initialisation scaled by the fan in and fan out of the matrix,
    std = gain * sqrt(2 / (fan_in + fan_out)).

    Random weights are needed so that the hidden units don't all learn the
    same thing.
    """

    def init(shape, rng):
        if len(shape) != 2:
            raise ShapeError(f"Glorot initialisation needs a matrix, got shape {shape}")
        fan_in, fan_out = shape
        std = gain * math.sqrt(2.0 / (fan_in + fan_out))
        return rng.normal(0.0, std, size=shape)

    return init


def ones() -> Initializer:
    return lambda shape, rng: np.ones(shape)


def zeros() -> Initializer:
    return lambda shape, rng: np.zeros(shape)


class Node:
    PLACEHOLDER = "placeholder"
    PARAMETER = "parameter"
    CONSTANT = "constant"
    OP = "op"

    def __init__(
        self,
        graph: "Graph",
        shape: Sequence[int],
        kind: str,
        name: str = "",
        op: str = "",
        children: list["Node"] | None = None,
    ):
        self.graph = graph
        self.shape = tuple(int(dim) for dim in shape)
        self.kind = kind
        self.name = name
        self.op = op
        self.children = children or []
        # Only leaf nodes (placeholders, parameters, constants) hold a value.
        self.value: np.ndarray | None = None
        self._forward = lambda *inputs: None
        # Returns the gradient for each child, given the output value and grad.
        self._backward = lambda out, out_grad, *inputs: ()
        self.id = str(uuid.uuid4())

    def __repr__(self):
        return "Node(name={}, kind={}, op={}, shape={})".format(
            self.name, self.kind, self.op, self.shape
        )

    @property
    def is_leaf(self) -> bool:
        return self.kind != Node.OP

    def __sub__(self, other):
        return sub(self, other)

    def __matmul__(self, other):
        return matmul(self, other)


class ReadHandle:
    """
    Gives access to the value of a node after a run. The machine only fills
    it in once the run has completed; until then (and after each reset) the
    value is not available.
    """

    def __init__(self, node: Node):
        self.node = node
        self.value: np.ndarray | None = None

    def __repr__(self):
        return f"ReadHandle(node={self.node.name}, available={self.available})"

    @property
    def available(self) -> bool:
        return self.value is not None

    def get(self) -> np.ndarray:
        if self.value is None:
            raise ValueNotAvailable(
                f"Value of {self.node.name or self.node.op} is not available, run the machine first"
            )
        return self.value


class Graph:
    def __init__(self):
        self.nodes: list[Node] = []
        self.read_handles: list[ReadHandle] = []
        self.loss: Node | None = None
        self.wrt: list[Node] = []

    def __repr__(self):
        return f"Graph(nodes={len(self.nodes)})"

    def _add(self, node: Node) -> Node:
        self.nodes.append(node)
        return node

    def placeholder(self, shape: Sequence[int], name: str = "") -> Node:
        return self._add(Node(self, shape, Node.PLACEHOLDER, name=name))

    def parameter(
        self,
        shape: Sequence[int],
        init: Initializer,
        name: str = "",
        rng: np.random.Generator | None = None,
    ) -> Node:
        node = Node(self, shape, Node.PARAMETER, name=name)
        rng = rng if rng is not None else np.random.default_rng()
        value = np.asarray(init(node.shape, rng), dtype=np.float64)
        if value.shape != node.shape:
            raise ShapeError(
                f"Initialiser produced shape {value.shape}, expected {node.shape}"
            )
        node.value = value
        return self._add(node)

    def constant(self, value, name: str = "") -> Node:
        value = np.array(value, dtype=np.float64)
        node = Node(self, value.shape, Node.CONSTANT, name=name)
        node.value = value
        return self._add(node)

    def topological_sort(self, root: Node | None = None) -> list[Node]:
        """
        Sort the nodes so that every node comes after its children, using
        depth first search. If a root is given, only the nodes it depends on
        are returned, ending with the root itself.
        """
        visited = set()
        topological_sort = []

        def visit_recursive(node):
            if node.id not in visited:
                visited.add(node.id)
                for child in node.children:
                    visit_recursive(child)
                topological_sort.append(node)

        for node in [root] if root is not None else self.nodes:
            visit_recursive(node)
        return topological_sort


def _op_node(op: str, shape: Sequence[int], children: list[Node]) -> Node:
    graph = children[0].graph
    for child in children[1:]:
        if child.graph is not graph:
            raise GraphError(f"Cannot apply {op} to nodes from different graphs")
    return graph._add(Node(graph, shape, Node.OP, op=op, children=children))


def concat(axis: int, *nodes: Node) -> Node:
    if not nodes:
        raise GraphError("concat needs at least one node")
    rank = len(nodes[0].shape)
    if not 0 <= axis < rank:
        raise ShapeError(f"Axis {axis} out of range for rank {rank}")
    for node in nodes[1:]:
        if len(node.shape) != rank or any(
            a != b for i, (a, b) in enumerate(zip(node.shape, nodes[0].shape)) if i != axis
        ):
            raise ShapeError(
                f"Cannot concatenate shapes {nodes[0].shape} and {node.shape} along axis {axis}"
            )
    shape = list(nodes[0].shape)
    shape[axis] = sum(node.shape[axis] for node in nodes)
    out = _op_node("concat", shape, list(nodes))
    split_points = np.cumsum([node.shape[axis] for node in nodes])[:-1]

    out._forward = lambda *inputs: np.concatenate(inputs, axis=axis)
    out._backward = lambda value, grad, *inputs: np.split(grad, split_points, axis=axis)
    return out


def matmul(a: Node, b: Node) -> Node:
    if len(a.shape) != 2 or len(b.shape) != 2 or a.shape[1] != b.shape[0]:
        raise ShapeError(f"Cannot multiply shapes {a.shape} and {b.shape}")
    out = _op_node("matmul", (a.shape[0], b.shape[1]), [a, b])

    def _backward(value, grad, x, w):
        return grad @ w.T, x.T @ grad

    out._forward = lambda x, w: x @ w
    out._backward = _backward
    return out


def sigmoid(a: Node) -> Node:
    out = _op_node("sigmoid", a.shape, [a])
    # exp(-logaddexp(0, -x)) == 1 / (1 + exp(-x)), without overflowing.
    out._forward = lambda x: np.exp(-np.logaddexp(0.0, -x))
    out._backward = lambda value, grad, x: (value * (1.0 - value) * grad,)
    return out


def sub(a: Node, b: Node) -> Node:
    if a.shape != b.shape:
        raise ShapeError(f"Cannot subtract shapes {a.shape} and {b.shape}")
    out = _op_node("-", a.shape, [a, b])
    out._forward = lambda x, y: x - y
    out._backward = lambda value, grad, x, y: (grad, -grad)
    return out


def square(a: Node) -> Node:
    out = _op_node("square", a.shape, [a])
    out._forward = lambda x: x * x
    out._backward = lambda value, grad, x: (2.0 * x * grad,)
    return out


def mean(a: Node) -> Node:
    out = _op_node("mean", (), [a])
    size = math.prod(a.shape)
    out._forward = lambda x: np.asarray(x.mean())
    out._backward = lambda value, grad, x: (np.full(x.shape, grad / size),)
    return out


def let(node: Node, value) -> None:
    """Bind a value to a placeholder or a parameter. The value is copied."""
    if not node.is_leaf or node.kind == Node.CONSTANT:
        raise GraphError(f"Cannot bind a value to {node}")
    node.value = np.array(value, dtype=np.float64)


def read(node: Node) -> ReadHandle:
    handle = ReadHandle(node)
    node.graph.read_handles.append(handle)
    return handle


def grad(loss: Node, *wrt: Node) -> None:
    """Ask the machine to backpropagate the loss into the given nodes only."""
    if loss.shape != ():
        raise ShapeError(f"Can only differentiate a scalar, got shape {loss.shape}")
    if not wrt:
        raise GraphError("Need at least one node to differentiate with respect to")
    for node in wrt:
        if node.graph is not loss.graph:
            raise GraphError(f"{node} does not belong to the graph of the loss")
    loss.graph.loss = loss
    loss.graph.wrt = list(wrt)


class TapeMachine:
    """
    Compiles a graph into a tape of nodes, sorted so that each node comes
    after its inputs, and runs it. It is much cheaper to create the machine
    once and reset it between runs than to create one per run.

    Nodes passed as `bind_dual_values` keep their gradient buffer across
    resets; it is zeroed, not dropped.
    """

    def __init__(self, graph: Graph, bind_dual_values: Iterable[Node] = ()):
        self.graph = graph
        self.tape = graph.topological_sort()
        # The tape is compiled once, so keep the loss and gradient request it
        # was compiled for.
        self.loss = graph.loss
        self.wrt = list(graph.wrt)
        self.backward_tape = (
            list(reversed(graph.topological_sort(self.loss)))
            if self.loss is not None
            else []
        )
        self.values: dict[str, np.ndarray] = {}
        self.grads: dict[str, np.ndarray] = {}
        self.dual_values: dict[str, Node] = {}
        for node in bind_dual_values:
            if node.graph is not graph:
                raise GraphError(f"{node} does not belong to the graph of the machine")
            self.dual_values[node.id] = node
            self.grads[node.id] = np.zeros(node.shape)

    def __repr__(self):
        return f"TapeMachine(tape={len(self.tape)}, dual_values={len(self.dual_values)})"

    def reset(self) -> None:
        self.values.clear()
        for node_id in list(self.grads):
            if node_id in self.dual_values:
                self.grads[node_id].fill(0.0)
            else:
                del self.grads[node_id]
        for handle in self.graph.read_handles:
            handle.value = None

    def run_all(self) -> None:
        if (
            self.graph.loss is not self.loss
            or self.graph.wrt != self.wrt
            or len(self.graph.nodes) != len(self.tape)
        ):
            raise GraphError("The graph changed after the machine was created, create a new machine")
        self._forward()
        if self.loss is not None:
            self._backward()
        for handle in self.graph.read_handles:
            handle.value = self.values[handle.node.id].copy()

    def _forward(self):
        for node in self.tape:
            if node.is_leaf:
                if node.value is None:
                    raise ExecutionError(f"No value bound to {node}")
                if node.value.shape != node.shape:
                    raise ExecutionError(
                        f"Value bound to {node.name or node.kind} has shape {node.value.shape}, expected {node.shape}"
                    )
                self.values[node.id] = node.value
                continue

            value = node._forward(*(self.values[child.id] for child in node.children))
            if not np.all(np.isfinite(value)):
                raise ExecutionError(f"Non-finite value computed by {node.op}")
            self.values[node.id] = value

    def _backward(self):
        loss = self.loss
        # Gradient of a variable with respect to itself is 1.
        local_grads = {loss.id: np.ones(())}
        for node in self.backward_tape:
            if node.is_leaf or node.id not in local_grads:
                continue
            child_grads = node._backward(
                self.values[node.id],
                local_grads[node.id],
                *(self.values[child.id] for child in node.children),
            )
            for child, child_grad in zip(node.children, child_grads):
                if child.id in local_grads:
                    local_grads[child.id] = local_grads[child.id] + child_grad
                else:
                    local_grads[child.id] = child_grad

        for node in self.wrt:
            node_grad = local_grads.get(node.id, np.zeros(node.shape))
            if node.id in self.dual_values:
                self.grads[node.id] += node_grad
            else:
                self.grads[node.id] = np.array(node_grad)

    def grad_of(self, node: Node) -> np.ndarray:
        if node.id not in self.grads:
            raise ExecutionError(f"No gradient computed for {node}")
        return self.grads[node.id]


@dataclass
class ValueGrad:
    node: Node
    value: np.ndarray
    grad: np.ndarray


def nodes_to_value_grads(nodes: Iterable[Node], machine: TapeMachine) -> list[ValueGrad]:
    """Pair each parameter's value with its gradient, ready for a solver step."""
    value_grads = []
    for node in nodes:
        if node.value is None:
            raise ExecutionError(f"No value bound to {node}")
        value_grads.append(ValueGrad(node, node.value, machine.grad_of(node)))
    return value_grads


@dataclass(frozen=True, eq=True)
class NodeId:
    from_id: str
    to_id: str

    @classmethod
    def from_node(cls, node: Node) -> "NodeId":
        """
        Op nodes are drawn as two graphviz nodes, one with the operation and
        one with the result. Edges always go child.from_id -> parent.to_id.
        """
        from_id = node.id
        if node.op:
            to_id = from_id + "-op"
        else:
            to_id = from_id
        return cls(from_id, to_id)


def build_digraph(root: Node) -> Digraph:
    dot = Digraph(comment="Expression Graph", strict=True)
    dot.attr(rankdir="LR")

    drawn_nodes = set()
    drawn_edges = set()

    nodes_to_draw = deque([root])
    while nodes_to_draw:
        node = nodes_to_draw.popleft()
        node_ids = NodeId.from_node(node)
        if node_ids not in drawn_nodes:
            drawn_nodes.add(node_ids)
            dot.node(
                name=node_ids.from_id,
                label=f"{node.name or node.kind} | shape: {node.shape}",
                shape="box",
            )
            if node.op:
                dot.node(name=node_ids.to_id, label=node.op)
                dot.edge(node_ids.to_id, node_ids.from_id)

        for child in node.children:
            edge = (NodeId.from_node(child).from_id, node_ids.to_id)
            if edge not in drawn_edges:
                dot.edge(*edge)
                drawn_edges.add(edge)
                nodes_to_draw.append(child)

    return dot


def draw_graph(root: Node, filename: str = "rendered_graph", view: bool = False) -> str:
    """Render the graph feeding into `root` to a png, returning its path."""
    return build_digraph(root).render(filename, format="png", cleanup=True, view=view)
