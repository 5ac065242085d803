"""
Symbolic reverse mode differentiation over an IRGraph

Gradients are built as new nodes in the same graph, under a ``gradients``
name scope. Nothing is evaluated here.
"""
from typing import Dict, List, Optional, Sequence, Set, Union

from optgraph.core.exceptions import GradientError
from optgraph.core.ir import IRGraph, IRNode, ASSIGN_OPS
from optgraph.core.utils.op_registry import registry

# Import registries to ensure operations are registered
import optgraph.core.utils.ops_registry  # noqa: F401


def _reachable_from(sources: Sequence[IRNode]) -> Set[str]:
    """Ids of every node that depends on any of ``sources``"""
    seen: Set[str] = set()
    stack = list(sources)
    while stack:
        node = stack.pop()
        if node.id in seen:
            continue
        seen.add(node.id)
        stack.extend(node.outputs)
    return seen


def _accumulate(graph: IRGraph, grads: List[IRNode]) -> IRNode:
    total = grads[0]
    for g in grads[1:]:
        total = graph.add(total, g)
    return total


def gradients(
    graph: IRGraph,
    ys: Union[IRNode, Sequence[IRNode]],
    xs: Sequence[IRNode],
    grad_ys: Optional[Sequence[IRNode]] = None,
) -> List[Optional[IRNode]]:
    """
    Build d(sum(ys))/dx for every x in xs

    Args:
        graph: the graph owning ``ys`` and ``xs``
        ys: output node(s) to differentiate
        xs: nodes to differentiate with respect to, usually variables
        grad_ys: optional seed gradients, one per y (defaults to ones)

    Returns:
        One gradient node per x, in order. ``None`` when x does not
        influence ``ys``.
    """
    if isinstance(ys, IRNode):
        ys = [ys]
    ys = list(ys)
    xs = list(xs)
    if grad_ys is not None and len(grad_ys) != len(ys):
        raise GradientError(f"Got {len(grad_ys)} seed gradients for {len(ys)} outputs")

    with graph.name_scope("gradients"):
        # Only nodes on a path between some x and some y need a gradient
        forward = _reachable_from(xs)
        topo_order = graph.topological_sort(ys)
        relevant = {node.id for node in topo_order if node.id in forward}

        pending: Dict[str, List[IRNode]] = {}
        for i, y in enumerate(ys):
            if y.id not in relevant:
                continue
            if grad_ys is not None:
                seed = grad_ys[i]
            else:
                seed = graph.fill(y.shape, 1, dtype=y.dtype, name="grad_ys")
            pending.setdefault(y.id, []).append(seed)

        x_ids = {x.id for x in xs}
        for node in reversed(topo_order):
            if node.id not in pending or not node.inputs:
                continue
            if node.id in x_ids and node.op_type == "Variable":
                continue
            if node.op_type in ASSIGN_OPS:
                raise GradientError(
                    f"Cannot differentiate through {node.op_type} '{node.name}'",
                    nodes=[node],
                    operation=node.op_type,
                )

            grad_fn = registry.get_gradient(node.op_type)
            if grad_fn is None:
                raise GradientError(
                    f"No gradient defined for op type {node.op_type}",
                    nodes=[node],
                    operation=node.op_type,
                )

            grad = _accumulate(graph, pending[node.id])
            input_grads = grad_fn(graph, node, grad)
            if len(input_grads) != len(node.inputs):
                raise GradientError(
                    f"Gradient of {node.op_type} returned {len(input_grads)} "
                    f"gradients for {len(node.inputs)} inputs",
                    nodes=[node],
                    operation=node.op_type,
                )

            for input_node, input_grad in zip(node.inputs, input_grads):
                if input_grad is None or input_node.id not in relevant:
                    continue
                if not input_node.dtype.is_floating:
                    continue
                pending.setdefault(input_node.id, []).append(input_grad)

        results: List[Optional[IRNode]] = []
        for x in xs:
            grads = pending.get(x.id)
            results.append(_accumulate(graph, grads) if grads else None)
        return results
