"""
Register all standard operations with the operation registry
"""
import numpy as np

from optgraph.core.utils.op_registry import registry


def _unbroadcast(value: np.ndarray, shape) -> np.ndarray:
    """Sum ``value`` over the axes that broadcasting added to ``shape``"""
    shape = tuple(shape)
    # 1. Handle new dims added by broadcasting (e.g., (3,) -> (4, 3))
    ndim_delta = value.ndim - len(shape)
    if ndim_delta > 0:
        value = value.sum(axis=tuple(range(ndim_delta)))

    # 2. Handle dims that were 1 (e.g., (1, 3) -> (4, 3))
    axes_to_sum = tuple(i for i, dim in enumerate(shape) if dim == 1 and value.shape[i] > 1)
    if axes_to_sum:
        value = value.sum(axis=axes_to_sum, keepdims=True)

    return value.reshape(shape)


def _reduce_like(graph, grad, target):
    if tuple(grad.shape) == tuple(target.shape):
        return grad
    return graph.reduce_to_shape(grad, target.shape)


# Shape inference

def infer_elementwise_shape(node, input_shapes):
    """Elementwise ops broadcast their inputs numpy style"""
    return tuple(np.broadcast_shapes(*input_shapes))


def infer_same_as_first(node, input_shapes):
    return tuple(input_shapes[0])


def infer_scalar_shape(node, input_shapes):
    return ()


def infer_attribute_shape(node, input_shapes):
    return tuple(node.attributes["shape"])


for _op in ("Add", "Sub", "Mul", "Div"):
    registry.register_shape_inference(_op, infer_elementwise_shape)

for _op in ("Neg", "Square", "Sqrt", "Identity", "Cast", "Assign", "AssignAdd", "AssignSub"):
    registry.register_shape_inference(_op, infer_same_as_first)

registry.register_shape_inference("ReduceSum", infer_scalar_shape)
registry.register_shape_inference("ReduceMean", infer_scalar_shape)
registry.register_shape_inference("ReduceToShape", infer_attribute_shape)


@registry.register_shape_inference("BroadcastTo")
def infer_broadcast_to_shape(node, input_shapes):
    """The input must broadcast to the requested shape"""
    target = tuple(node.attributes["shape"])
    if tuple(np.broadcast_shapes(input_shapes[0], target)) != target:
        raise ValueError(f"Cannot broadcast {input_shapes[0]} to {target}")
    return target


@registry.register_shape_inference("MatMul")
def infer_matmul_shape(node, input_shapes):
    """Shape inference for MatMul: (M, K) x (K, N) -> (M, N)"""
    a, b = input_shapes
    if len(a) != 2 or len(b) != 2:
        raise ValueError(f"MatMul expects 2D inputs, got {a} and {b}")
    if a[1] != b[0]:
        raise ValueError(f"MatMul inner dimensions differ: {a} and {b}")
    return (a[0], b[1])


@registry.register_shape_inference("Transpose")
def infer_transpose_shape(node, input_shapes):
    return tuple(reversed(input_shapes[0]))


# Kernels

registry.register_kernel("Add", lambda node, x, y: x + y)
registry.register_kernel("Sub", lambda node, x, y: x - y)
registry.register_kernel("Mul", lambda node, x, y: x * y)
registry.register_kernel("Div", lambda node, x, y: x / y)
registry.register_kernel("Neg", lambda node, x: -x)
registry.register_kernel("Square", lambda node, x: np.square(x))
registry.register_kernel("Sqrt", lambda node, x: np.sqrt(x))
registry.register_kernel("Identity", lambda node, x: np.array(x, copy=True))
registry.register_kernel("MatMul", lambda node, x, y: x @ y)
registry.register_kernel("Transpose", lambda node, x: np.transpose(x))
registry.register_kernel("ReduceSum", lambda node, x: np.sum(x))
registry.register_kernel("ReduceMean", lambda node, x: np.mean(x))


@registry.register_kernel("Cast")
def cast_kernel(node, x):
    return np.asarray(x).astype(node.attributes["to"].to_numpy())


@registry.register_kernel("BroadcastTo")
def broadcast_to_kernel(node, x):
    return np.array(np.broadcast_to(x, node.attributes["shape"]))


@registry.register_kernel("ReduceToShape")
def reduce_to_shape_kernel(node, x):
    return _unbroadcast(np.asarray(x), node.attributes["shape"])


# Gradients

@registry.register_gradient("Add")
def add_grad(graph, node, grad):
    x, y = node.inputs
    return [_reduce_like(graph, grad, x), _reduce_like(graph, grad, y)]


@registry.register_gradient("Sub")
def sub_grad(graph, node, grad):
    x, y = node.inputs
    return [_reduce_like(graph, grad, x), _reduce_like(graph, graph.neg(grad), y)]


@registry.register_gradient("Mul")
def mul_grad(graph, node, grad):
    x, y = node.inputs
    return [
        _reduce_like(graph, graph.mul(grad, y), x),
        _reduce_like(graph, graph.mul(grad, x), y),
    ]


@registry.register_gradient("Div")
def div_grad(graph, node, grad):
    # d(x/y)/dy = -x / y^2
    x, y = node.inputs
    grad_y = graph.neg(graph.div(graph.mul(grad, x), graph.square(y)))
    return [
        _reduce_like(graph, graph.div(grad, y), x),
        _reduce_like(graph, grad_y, y),
    ]


@registry.register_gradient("Neg")
def neg_grad(graph, node, grad):
    return [graph.neg(grad)]


@registry.register_gradient("Square")
def square_grad(graph, node, grad):
    (x,) = node.inputs
    return [graph.mul(grad, graph.mul(x, 2.0))]


@registry.register_gradient("Sqrt")
def sqrt_grad(graph, node, grad):
    # d sqrt(x) = 0.5 / sqrt(x)
    return [graph.div(graph.mul(grad, 0.5), node)]


@registry.register_gradient("Identity")
def identity_grad(graph, node, grad):
    return [grad]


@registry.register_gradient("Cast")
def cast_grad(graph, node, grad):
    (x,) = node.inputs
    if not x.dtype.is_floating:
        return [None]
    return [graph.cast(grad, x.dtype)]


@registry.register_gradient("ReduceSum")
def reduce_sum_grad(graph, node, grad):
    (x,) = node.inputs
    return [graph.broadcast_to(grad, x.shape)]


@registry.register_gradient("ReduceMean")
def reduce_mean_grad(graph, node, grad):
    (x,) = node.inputs
    size = int(np.prod(x.shape)) if x.shape else 1
    return [graph.div(graph.broadcast_to(grad, x.shape), float(size))]


@registry.register_gradient("BroadcastTo")
def broadcast_to_grad(graph, node, grad):
    (x,) = node.inputs
    return [_reduce_like(graph, grad, x)]


@registry.register_gradient("ReduceToShape")
def reduce_to_shape_grad(graph, node, grad):
    (x,) = node.inputs
    return [graph.broadcast_to(grad, x.shape)]


@registry.register_gradient("MatMul")
def matmul_grad(graph, node, grad):
    x, y = node.inputs
    return [
        graph.matmul(grad, graph.transpose(y)),
        graph.matmul(graph.transpose(x), grad),
    ]


@registry.register_gradient("Transpose")
def transpose_grad(graph, node, grad):
    return [graph.transpose(grad)]
