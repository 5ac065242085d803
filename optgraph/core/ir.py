import numpy as np
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union, Any, Set, Sequence

from optgraph.core.exceptions import GraphError, ShapeError, DTypeError


class DataType(Enum):
    # Floating types
    FLOAT16 = "float16"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    # Integer types
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"

    BOOL = "bool"

    @staticmethod
    def from_numpy(dtype) -> "DataType":
        """Map a numpy dtype (or its string name) to a DataType"""
        if isinstance(dtype, DataType):
            return dtype
        if isinstance(dtype, str):
            try:
                return DataType(dtype)
            except ValueError:
                pass
        try:
            return DataType(np.dtype(dtype).name)
        except (TypeError, ValueError):
            raise DTypeError(f"Unsupported dtype {dtype!r}")

    def to_numpy(self):
        """Convert to numpy dtype"""
        return np.dtype(self.value)

    @property
    def is_floating(self) -> bool:
        return self in (DataType.FLOAT16, DataType.FLOAT32, DataType.FLOAT64)


Operand = Union["IRNode", int, float, np.ndarray]


class IRNode:
    """
    Node in the computation graph
    """

    def __init__(
        self,
        op_type: str,
        inputs: List["IRNode"] = None,
        attributes: Dict[str, Any] = None,
        name: str = None,
    ):
        self.id = str(uuid.uuid4())
        self.op_type = op_type
        self.inputs = inputs or []
        self.attributes = attributes or {}
        self.outputs = []  # Nodes that use this node as input
        self.name = name or f"{op_type}_{self.id[:8]}"
        self.shape: Optional[Tuple[int, ...]] = None
        self.dtype: Optional[DataType] = None
        self.device: Optional[str] = None
        self.graph: Optional["IRGraph"] = None

        # Connect this node to its inputs
        for input_node in self.inputs:
            input_node.outputs.append(self)

    def __repr__(self):
        dtype = self.dtype.value if self.dtype else None
        return f"IRNode(type={self.op_type}, name={self.name}, shape={self.shape}, dtype={dtype})"

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        return self is other

    # Expression sugar, delegated to the owning graph

    def _require_graph(self) -> "IRGraph":
        if self.graph is None:
            raise GraphError(f"Node {self.name} is not part of a graph", nodes=[self])
        return self.graph

    def __add__(self, other: Operand) -> "IRNode":
        return self._require_graph().add(self, other)

    def __radd__(self, other: Operand) -> "IRNode":
        return self._require_graph().add(other, self)

    def __sub__(self, other: Operand) -> "IRNode":
        return self._require_graph().sub(self, other)

    def __rsub__(self, other: Operand) -> "IRNode":
        return self._require_graph().sub(other, self)

    def __mul__(self, other: Operand) -> "IRNode":
        return self._require_graph().mul(self, other)

    def __rmul__(self, other: Operand) -> "IRNode":
        return self._require_graph().mul(other, self)

    def __truediv__(self, other: Operand) -> "IRNode":
        return self._require_graph().div(self, other)

    def __rtruediv__(self, other: Operand) -> "IRNode":
        return self._require_graph().div(other, self)

    def __neg__(self) -> "IRNode":
        return self._require_graph().neg(self)

    def __matmul__(self, other: "IRNode") -> "IRNode":
        return self._require_graph().matmul(self, other)

    def square(self) -> "IRNode":
        return self._require_graph().square(self)

    def sum(self) -> "IRNode":
        return self._require_graph().reduce_sum(self)

    def mean(self) -> "IRNode":
        return self._require_graph().reduce_mean(self)


class ConstantNode(IRNode):
    """Node representing a constant value"""

    def __init__(self, value: np.ndarray, name: str = None):
        super().__init__(
            op_type="Constant",
            inputs=[],
            attributes={"value": value},
            name=name,
        )
        self.shape = tuple(value.shape)
        self.dtype = DataType.from_numpy(value.dtype)


class VariableNode(IRNode):
    """
    Node representing a mutable variable

    The node doubles as its own read: evaluating it yields the variable's
    current value in a session.
    """

    def __init__(
        self,
        shape: Tuple[int, ...],
        dtype: DataType = DataType.FLOAT32,
        name: str = None,
        trainable: bool = True,
    ):
        super().__init__(
            op_type="Variable",
            inputs=[],
            attributes={"trainable": trainable},
            name=name,
        )
        self.shape = tuple(shape)
        self.dtype = dtype
        self.initializer: Optional[IRNode] = None

    @property
    def trainable(self) -> bool:
        return self.attributes["trainable"]


class PlaceholderNode(IRNode):
    """Node representing an input placeholder"""

    def __init__(
        self,
        shape: Tuple[int, ...],
        dtype: DataType = DataType.FLOAT32,
        name: str = None,
    ):
        super().__init__(
            op_type="Placeholder",
            inputs=[],
            attributes={},
            name=name,
        )
        self.shape = tuple(shape)
        self.dtype = dtype


ASSIGN_OPS = ("Assign", "AssignAdd", "AssignSub")


class IRGraph:
    """
    Computation graph representation

    Builds nodes eagerly: every op method returns a node whose shape and dtype
    are already inferred. Names are unique within a graph and prefixed by the
    active name scopes.
    """

    def __init__(self, name: str = "graph"):
        self.name = name
        self.nodes: Dict[str, IRNode] = {}
        self.inputs: List[IRNode] = []
        self.variables: List[VariableNode] = []
        self.initializers: List[IRNode] = []
        self._scope_stack: List[str] = []
        self._device_stack: List[str] = []
        self._names: Dict[str, int] = {}

    # Naming and placement

    @contextmanager
    def name_scope(self, name: str):
        """Prefix every node created inside the block with ``name/``"""
        self._scope_stack.append(name)
        try:
            yield "/".join(self._scope_stack)
        finally:
            self._scope_stack.pop()

    @contextmanager
    def device(self, device: str):
        """Place every node created inside the block on ``device``"""
        self._device_stack.append(device)
        try:
            yield device
        finally:
            self._device_stack.pop()

    @property
    def current_scope(self) -> str:
        return "/".join(self._scope_stack)

    def unique_name(self, base: str) -> str:
        full = "/".join(self._scope_stack + [base])
        count = self._names.get(full, 0)
        self._names[full] = count + 1
        if count == 0:
            return full
        return f"{full}_{count}"

    def _current_device(self) -> str:
        if self._device_stack:
            return self._device_stack[-1]
        from optgraph.core.config import config
        return config.default_device

    def add_node(self, node: IRNode) -> IRNode:
        """Add a node to the graph"""
        node.graph = self
        if node.device is None:
            node.device = self._current_device()
        self.nodes[node.id] = node
        return node

    def get_node_by_name(self, name: str) -> IRNode:
        for node in self.nodes.values():
            if node.name == name:
                return node
        raise GraphError(f"No node named '{name}' in graph '{self.name}'")

    # Leaves

    def placeholder(
        self,
        shape: Tuple[int, ...],
        dtype: DataType = None,
        name: str = None,
    ) -> PlaceholderNode:
        """Add an input placeholder node"""
        node = PlaceholderNode(shape, self._resolve_dtype(dtype), self.unique_name(name or "Placeholder"))
        self.add_node(node)
        self.inputs.append(node)
        return node

    def constant(
        self,
        value,
        shape: Optional[Sequence[int]] = None,
        dtype: DataType = None,
        name: str = None,
    ) -> ConstantNode:
        """
        Add a constant node

        With ``shape`` the scalar ``value`` is broadcast to that shape. Python
        scalars default to the configured dtype.
        """
        np_dtype = None
        if dtype is not None:
            np_dtype = DataType.from_numpy(dtype).to_numpy()
        elif not isinstance(value, np.ndarray):
            arr = np.asarray(value)
            if arr.dtype.kind == "f":
                np_dtype = self._resolve_dtype(None).to_numpy()
            elif arr.dtype.kind in "iu":
                np_dtype = arr.dtype if isinstance(value, np.generic) else np.int64

        if shape is not None:
            data = np.full(tuple(shape), value, dtype=np_dtype)
        else:
            data = np.array(value, dtype=np_dtype)
        node = ConstantNode(data, name=self.unique_name(name or "Const"))
        return self.add_node(node)

    def zeros(self, shape: Sequence[int], dtype: DataType = None, name: str = None) -> ConstantNode:
        return self.constant(0, shape=shape, dtype=self._resolve_dtype(dtype), name=name or "zeros")

    def fill(self, shape: Sequence[int], value, dtype: DataType = None, name: str = None) -> ConstantNode:
        return self.constant(value, shape=shape, dtype=self._resolve_dtype(dtype), name=name or "Fill")

    def variable(
        self,
        initial_value,
        trainable: bool = True,
        name: str = None,
        dtype: DataType = None,
    ) -> VariableNode:
        """
        Add a variable initialized from ``initial_value``

        The initializer is registered with the graph and runs on
        ``Session.initialize()``.
        """
        if not isinstance(initial_value, IRNode):
            initial_value = self.constant(initial_value, dtype=dtype, name=f"{name or 'Variable'}/initial_value")
        elif dtype is not None and initial_value.dtype != DataType.from_numpy(dtype):
            initial_value = self.cast(initial_value, dtype)

        var = self.variable_v2(initial_value.shape, initial_value.dtype, name=name, trainable=trainable)
        with self.name_scope(var.name.split("/")[-1]):
            init_op = self.assign(var, initial_value, name="Assign")
        self.register_initializer(init_op)
        return var

    def variable_v2(
        self,
        shape: Sequence[int],
        dtype: DataType = None,
        name: str = None,
        trainable: bool = False,
    ) -> VariableNode:
        """Add a variable with no initializer attached"""
        var = VariableNode(shape, self._resolve_dtype(dtype), self.unique_name(name or "Variable"), trainable)
        self.add_node(var)
        self.variables.append(var)
        return var

    def register_initializer(self, op: IRNode) -> IRNode:
        """Mark ``op`` as an initializer for the variable it assigns"""
        if op.op_type not in ASSIGN_OPS:
            raise GraphError(f"Initializer must be an assign op, got {op.op_type}", nodes=[op])
        op.inputs[0].initializer = op
        self.initializers.append(op)
        return op

    def get_trainable_variables(self) -> List[VariableNode]:
        return [v for v in self.variables if v.trainable]

    def get_tensor_shape(self, node: IRNode) -> Tuple[int, ...]:
        if node.shape is None:
            raise ShapeError(f"Shape of {node.name} is unknown", nodes=[node])
        return tuple(node.shape)

    # Op construction

    def _resolve_dtype(self, dtype) -> DataType:
        if dtype is None:
            from optgraph.core.config import config
            return config.default_dtype
        return DataType.from_numpy(dtype)

    def _as_node(self, value: Operand, like: IRNode = None) -> IRNode:
        if isinstance(value, IRNode):
            return value
        dtype = like.dtype if like is not None else None
        return self.constant(value, dtype=dtype)

    def add_op(
        self,
        op_type: str,
        inputs: List[IRNode],
        attributes: Dict[str, Any] = None,
        name: str = None,
        dtype: DataType = None,
    ) -> IRNode:
        """Create an op node, inferring its shape from the registry"""
        from optgraph.core.utils.op_registry import registry

        node = IRNode(
            op_type=op_type,
            inputs=inputs,
            attributes=attributes,
            name=self.unique_name(name or op_type),
        )
        input_shapes = [inp.shape for inp in inputs]
        try:
            node.shape = registry.infer_shape(node, input_shapes)
        except ValueError as e:
            raise ShapeError(
                f"Incompatible shapes for {op_type}: {input_shapes}",
                nodes=inputs,
                operation=op_type,
                cause=e,
            ) from e
        node.dtype = dtype if dtype is not None else (inputs[0].dtype if inputs else None)
        return self.add_node(node)

    def _binary(self, op_type: str, x: Operand, y: Operand, name: str = None) -> IRNode:
        if not isinstance(x, IRNode) and not isinstance(y, IRNode):
            x = self._as_node(x)
        x = self._as_node(x, like=y if isinstance(y, IRNode) else None)
        y = self._as_node(y, like=x)
        if x.dtype != y.dtype:
            raise DTypeError(
                f"{op_type} operands must share a dtype",
                expected_dtype=x.dtype.value,
                actual_dtype=y.dtype.value,
                operation=op_type,
                nodes=[x, y],
            )
        return self.add_op(op_type, [x, y], name=name)

    def add(self, x: Operand, y: Operand, name: str = None) -> IRNode:
        return self._binary("Add", x, y, name)

    def sub(self, x: Operand, y: Operand, name: str = None) -> IRNode:
        return self._binary("Sub", x, y, name)

    def mul(self, x: Operand, y: Operand, name: str = None) -> IRNode:
        return self._binary("Mul", x, y, name)

    def div(self, x: Operand, y: Operand, name: str = None) -> IRNode:
        return self._binary("Div", x, y, name)

    def matmul(self, x: IRNode, y: IRNode, name: str = None) -> IRNode:
        return self._binary("MatMul", x, y, name)

    def neg(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("Neg", [x], name=name)

    def square(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("Square", [x], name=name)

    def sqrt(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("Sqrt", [x], name=name)

    def identity(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("Identity", [x], name=name)

    def cast(self, x: IRNode, dtype, name: str = None) -> IRNode:
        dtype = DataType.from_numpy(dtype)
        return self.add_op("Cast", [x], attributes={"to": dtype}, name=name, dtype=dtype)

    def reduce_sum(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("ReduceSum", [x], name=name)

    def reduce_mean(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("ReduceMean", [x], name=name)

    def broadcast_to(self, x: IRNode, shape: Sequence[int], name: str = None) -> IRNode:
        return self.add_op("BroadcastTo", [x], attributes={"shape": tuple(shape)}, name=name)

    def reduce_to_shape(self, x: IRNode, shape: Sequence[int], name: str = None) -> IRNode:
        """Sum ``x`` over broadcast axes so that it has ``shape``"""
        return self.add_op("ReduceToShape", [x], attributes={"shape": tuple(shape)}, name=name)

    def transpose(self, x: IRNode, name: str = None) -> IRNode:
        return self.add_op("Transpose", [x], name=name)

    # Variable updates

    def _assign_like(self, op_type: str, variable: VariableNode, value: Operand, name: str = None) -> IRNode:
        if not isinstance(variable, VariableNode):
            raise GraphError(f"{op_type} target must be a variable", nodes=[variable], operation=op_type)
        value = self._as_node(value, like=variable)
        if value.dtype != variable.dtype:
            raise DTypeError(
                f"Cannot {op_type} to {variable.name}",
                expected_dtype=variable.dtype.value,
                actual_dtype=value.dtype.value,
                operation=op_type,
                nodes=[variable, value],
            )
        if tuple(value.shape) != tuple(variable.shape):
            raise ShapeError(
                f"Cannot {op_type} to {variable.name}",
                expected_shape=tuple(variable.shape),
                actual_shape=tuple(value.shape),
                operation=op_type,
                nodes=[variable, value],
            )
        return self.add_op(op_type, [variable, value], name=name)

    def assign(self, variable: VariableNode, value: Operand, name: str = None) -> IRNode:
        return self._assign_like("Assign", variable, value, name)

    def assign_add(self, variable: VariableNode, value: Operand, name: str = None) -> IRNode:
        return self._assign_like("AssignAdd", variable, value, name)

    def assign_sub(self, variable: VariableNode, value: Operand, name: str = None) -> IRNode:
        return self._assign_like("AssignSub", variable, value, name)

    def topological_sort(self, outputs: Sequence[IRNode]) -> List[IRNode]:
        """Sort the ancestors of ``outputs`` in topological order"""
        visited: Set[str] = set()
        topo_order: List[IRNode] = []

        def visit(node: IRNode):
            if node.id in visited:
                return
            visited.add(node.id)
            for input_node in node.inputs:
                visit(input_node)
            topo_order.append(node)

        for output_node in outputs:
            visit(output_node)

        return topo_order
