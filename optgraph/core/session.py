"""
NumPy backed execution of IRGraph nodes
"""
import numpy as np
from typing import Dict, List, Optional, Sequence, Union, Any

from optgraph.core.exceptions import ExecutionError, UninitializedVariableError
from optgraph.core.ir import IRGraph, IRNode, VariableNode, ASSIGN_OPS
from optgraph.core.utils.op_registry import registry

# Import registries to ensure operations are registered
import optgraph.core.utils.ops_registry  # noqa: F401


class Session:
    """
    Executes nodes of one graph and owns the values of its variables

    Semantics of a single ``run``:
    - fetches are executed in the order given
    - every expression node is evaluated at most once per run
    - a variable read returns its value as of the most recent assignment
      executed so far in the run
    """

    def __init__(self, graph: IRGraph, verbose: bool = False):
        self.graph = graph
        self.verbose = verbose
        self._values: Dict[str, np.ndarray] = {}
        self._ran_initializers = set()

    def initialize(self) -> int:
        """
        Run every registered initializer that has not run yet

        Safe to call repeatedly: variables created after the first call (such
        as optimizer slots) get initialized, existing values are kept.

        Returns:
            Number of initializers executed
        """
        todo = [op for op in self.graph.initializers if op.id not in self._ran_initializers]
        if todo:
            self.run(todo)
            self._ran_initializers.update(op.id for op in todo)
        if self.verbose:
            print(f"Session: ran {len(todo)} initializer(s)")
        return len(todo)

    def is_initialized(self, variable: VariableNode) -> bool:
        return variable.id in self._values

    def value(self, variable: VariableNode) -> np.ndarray:
        """Current value of a variable (a copy)"""
        if variable.id not in self._values:
            raise UninitializedVariableError(
                f"Variable '{variable.name}' has not been initialized", node=variable
            )
        return self._values[variable.id].copy()

    def load(self, variable: VariableNode, value) -> None:
        """Overwrite a variable's value from outside the graph"""
        self._values[variable.id] = self._coerce(variable, value)

    def run(
        self,
        fetches: Union[IRNode, Sequence[IRNode]],
        feed_dict: Optional[Dict[Any, Any]] = None,
    ) -> Union[np.ndarray, List[np.ndarray]]:
        """
        Evaluate ``fetches`` in order

        Args:
            fetches: a node or a list of nodes
            feed_dict: values for placeholders, keyed by node or node name

        Returns:
            The value of each fetch (a single value for a single node)
        """
        single = isinstance(fetches, IRNode)
        fetch_list = [fetches] if single else list(fetches)

        feeds: Dict[str, np.ndarray] = {}
        for key, value in (feed_dict or {}).items():
            node = key if isinstance(key, IRNode) else self.graph.get_node_by_name(key)
            feeds[node.id] = self._coerce(node, value)

        cache: Dict[str, np.ndarray] = {}
        results = [self._evaluate(node, cache, feeds) for node in fetch_list]
        return results[0] if single else results

    def _coerce(self, node: IRNode, value) -> np.ndarray:
        arr = np.asarray(value, dtype=node.dtype.to_numpy())
        if node.shape is not None and arr.shape != tuple(node.shape):
            raise ExecutionError(
                f"Value of shape {arr.shape} does not match {node.name} of shape {node.shape}",
                node=node,
            )
        return arr

    def _evaluate(self, node: IRNode, cache: Dict[str, np.ndarray], feeds: Dict[str, np.ndarray]) -> np.ndarray:
        if node.graph is not self.graph:
            raise ExecutionError(f"Node '{node.name}' belongs to a different graph", node=node)

        # Inputs first, in topological order
        for dep in self._execution_order(node, cache):
            cache[dep.id] = self._execute(dep, cache, feeds)
        return cache[node.id]

    def _execution_order(self, root: IRNode, cache: Dict[str, np.ndarray]) -> List[IRNode]:
        """Uncached ancestors of ``root``; assign targets are written, not read"""
        visited = set()
        order: List[IRNode] = []

        def visit(node: IRNode):
            if node.id in visited or node.id in cache:
                return
            visited.add(node.id)
            inputs = node.inputs[1:] if node.op_type in ASSIGN_OPS else node.inputs
            for input_node in inputs:
                visit(input_node)
            order.append(node)

        visit(root)
        return order

    def _execute(self, node: IRNode, cache: Dict[str, np.ndarray], feeds: Dict[str, np.ndarray]) -> np.ndarray:
        if node.op_type == "Constant":
            return node.attributes["value"]

        if node.op_type == "Placeholder":
            if node.id not in feeds:
                raise ExecutionError(f"No value fed for placeholder '{node.name}'", node=node)
            return feeds[node.id]

        if node.op_type == "Variable":
            if node.id not in self._values:
                raise UninitializedVariableError(
                    f"Variable '{node.name}' read before initialization", node=node
                )
            return self._values[node.id].copy()

        if node.op_type in ASSIGN_OPS:
            return self._execute_assign(node, cache)

        kernel = registry.get_kernel(node.op_type)
        if kernel is None:
            raise ExecutionError(f"No kernel registered for op type {node.op_type}", node=node)
        args = [cache[inp.id] for inp in node.inputs]
        return np.asarray(kernel(node, *args), dtype=node.dtype.to_numpy())

    def _execute_assign(self, node: IRNode, cache: Dict[str, np.ndarray]) -> np.ndarray:
        variable, value_node = node.inputs
        value = cache[value_node.id]
        if node.op_type == "Assign":
            new_value = np.array(value, dtype=variable.dtype.to_numpy(), copy=True)
        else:
            if variable.id not in self._values:
                raise UninitializedVariableError(
                    f"{node.op_type} on uninitialized variable '{variable.name}'", node=node
                )
            current = self._values[variable.id]
            if node.op_type == "AssignAdd":
                new_value = current + value
            else:
                new_value = current - value
            new_value = np.asarray(new_value, dtype=variable.dtype.to_numpy())

        self._values[variable.id] = new_value
        # Later reads in this run observe the assignment
        cache[variable.id] = new_value.copy()
        return new_value.copy()
